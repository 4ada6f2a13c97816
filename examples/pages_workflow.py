# pages_workflow.py
# The shipline.yml deploy pipeline written with the Python DSL:
#   shipline run --workflow examples/pages_workflow.py
from shipline.dsl import job, pipeline, sh, uses
from shipline.model import EnvironmentRule


def workflow():
    build = job(
        "build",
        uses("Checkout repository", "checkout@v1"),
        sh("Build site", "mkdir -p dist && cp -R examples/site/. dist/"),
        uses("Upload artifact", "upload-artifact@v1", name="dist", path="dist"),
        display_name="Build",
    )

    deploy = job(
        "deploy",
        uses("Deploy to pages", "deploy@v1", id="deployment", artifact="dist"),
        needs=["build"],
        environment="pages",
        url="${{ steps.deployment.outputs.page_url }}",
        display_name="Deploy",
    )

    return pipeline(
        "Deploy",
        build,
        deploy,
        branches=["main"],
        permissions={"contents": "read", "pages": "write", "id-token": "write"},
        concurrency="deploy",
        environments={"pages": EnvironmentRule(branches=("main",), requires_success=("build",))},
    )
