"""Tests for the Python pipeline DSL."""

import pytest

from shipline.dsl import JobBuilder, build, job, pipeline, sh, uses
from shipline.model import ActionRef, Command, Step


class TestHelpers:
    def test_sh(self):
        step = sh("Build", "make", cwd="web", id="b", scopes=["read:contents"], env={"A": "1"})
        assert isinstance(step, Command)
        assert (step.run, step.cwd, step.step_id, step.scopes) == ("make", "web", "b", ("read:contents",))

    def test_uses_splits_version(self):
        step = uses("Upload", "upload-artifact@v2", name="dist", path="dist")
        assert isinstance(step, ActionRef)
        assert (step.uses, step.version) == ("upload-artifact", "v2")
        assert step.inputs == {"name": "dist", "path": "dist"}
        assert uses("x", "deploy").version == "v1"

    def test_job_applies_default_cwd(self):
        j = job("build", sh("a", "make"), sh("b", "make", cwd="other"), cwd="web")
        assert [s.cwd for s in j.steps] == ["web", "other"]

    def test_job_environment_binding(self):
        j = job("deploy", uses("d", "deploy"), environment="prod", url="${{ steps.d.outputs.url }}")
        assert j.environment.name == "prod"
        assert j.environment.url == "${{ steps.d.outputs.url }}"

    def test_job_without_steps(self):
        with pytest.raises(ValueError):
            job("empty")


class TestBuilder:
    def test_build(self):
        j = (
            build("deploy")
            .depends_on("build")
            .use_action("Deploy", "deploy@v1", id="deployment")
            .grant(pages="write", id_token="write")
            .deploy_to("prod", url="${{ steps.deployment.outputs.url }}")
            .with_env(RETRIES=3)
            .titled("Deploy")
            .build()
        )
        assert j.needs == ["build"]
        assert j.permissions == {"pages": "write", "id-token": "write"}
        assert j.environment.name == "prod"
        assert j.env == {"RETRIES": "3"}
        assert j.title == "Deploy"
        assert j.required is True

    def test_optional(self):
        j = JobBuilder("lint").define_step("ruff", "ruff check .").optional().build()
        assert j.required is False

    def test_no_steps(self):
        with pytest.raises(ValueError):
            JobBuilder("x").build()


def test_pipeline():
    p = pipeline(
        "Deploy",
        job("build", sh("make", "make")),
        branches=["main"],
        permissions={"contents": "read"},
        concurrency="deploy",
        cancel_in_progress=True,
    )
    assert p.trigger.matches("push", "refs/heads/main")
    assert not p.trigger.matches("push", "dev")
    assert p.concurrency.group == "deploy"
    assert p.concurrency.cancel_in_progress is True
    assert pipeline("x", job("a", sh("a", "true"))).concurrency is None


def test_step_is_abstract():
    with pytest.raises(TypeError):
        Step("bare")
