"""End-to-end pipeline runs through the Engine."""

import threading
import time

import pytest

from shipline.actions import default_registry
from shipline.dsl import job, pipeline, sh, uses
from shipline.engine import Engine
from shipline.errors import DefinitionError, GraphError
from shipline.loader import parse_pipeline
from shipline.model import JobStatus, RunStatus

DEPLOY_PIPELINE = {
    "name": "Deploy",
    True: {"push": {"branches": ["main"]}},
    "permissions": {"contents": "read", "pages": "write", "id-token": "write"},
    "concurrency": {"group": "deploy", "cancel-in-progress": False},
    "jobs": {
        "build": {
            "steps": [
                {"uses": "checkout@v1"},
                {"run": "mkdir -p dist && cp index.html dist/"},
                {"uses": "upload-artifact@v1", "with": {"name": "dist", "path": "dist"}},
            ],
        },
        "deploy": {
            "needs": "build",
            "environment": {"name": "pages", "url": "${{ steps.deployment.outputs.page_url }}"},
            "steps": [{"id": "deployment", "uses": "deploy@v1"}],
        },
    },
}


@pytest.fixture
def source(tmp_path):
    src = tmp_path / "repo"
    src.mkdir()
    (src / "index.html").write_text("<h1>shipline</h1>")
    return src


class TestDeployPipeline:
    def test_build_then_deploy(self, engine, settings, source):
        run = engine.trigger(parse_pipeline(DEPLOY_PIPELINE), ref="refs/heads/main", source=source)

        assert run.status == RunStatus.SUCCESS
        assert list(run.jobs) == ["build", "deploy"]
        assert run.jobs["build"].ended_at <= run.jobs["deploy"].started_at

        url = run.environments["pages"]
        assert url.endswith("/pages/")
        assert engine.environments.get("pages").url == url
        assert (settings.publish_dir / "pages" / "index.html").read_text() == "<h1>shipline</h1>"

    def test_artifacts_and_workspaces_are_gone_after_the_run(self, engine, settings, source):
        run = engine.trigger(parse_pipeline(DEPLOY_PIPELINE), source=source)
        assert not (settings.artifacts_dir / run.run_id).exists()
        assert not (settings.workspaces_dir / run.run_id).exists()

    def test_report_is_saved(self, engine, source):
        run = engine.trigger(parse_pipeline(DEPLOY_PIPELINE), source=source)
        report = engine.load_report(run.run_id)
        assert report["status"] == "success"
        assert report["jobs"]["deploy"]["steps"][0]["outputs"]["url"] == run.environments["pages"]
        (artifact,) = report["artifacts"]
        assert (artifact["name"], artifact["job"]) == ("dist", "build")

    def test_build_failure_skips_deploy_and_keeps_url(self, engine, source):
        first = engine.trigger(parse_pipeline(DEPLOY_PIPELINE), source=source)
        previous = engine.environments.get("pages").url

        (source / "index.html").unlink()
        second = engine.trigger(parse_pipeline(DEPLOY_PIPELINE), source=source)

        assert second.status == RunStatus.FAILED
        assert second.jobs["build"].error_kind == "step_failure"
        assert second.jobs["deploy"].status == JobStatus.SKIPPED
        assert second.environments == {}
        assert engine.environments.get("pages").url == previous
        assert engine.environments.get("pages").last_run_id == first.run_id

    def test_missing_deploy_scope_is_permission_denied(self, engine, source):
        data = dict(DEPLOY_PIPELINE)
        data["permissions"] = {"contents": "read", "pages": "write"}
        run = engine.trigger(parse_pipeline(data), source=source)
        assert run.status == RunStatus.FAILED
        assert run.jobs["build"].ok
        assert run.jobs["deploy"].error_kind == "permission_denied"
        assert engine.environments.get("pages").url is None


class TestTriggering:
    def test_other_branch_does_not_run(self, engine, source):
        assert engine.trigger(parse_pipeline(DEPLOY_PIPELINE), ref="feature", source=source) is None

    def test_other_event_does_not_run(self, engine, source):
        assert engine.trigger(parse_pipeline(DEPLOY_PIPELINE), event="tag", source=source) is None


class TestValidation:
    def test_cycle_rejected_before_any_step(self, engine, tmp_path):
        marker = tmp_path / "ran"
        p = pipeline(
            "p",
            job("a", sh("touch", f"touch {marker}"), needs=["b"]),
            job("b", sh("touch", f"touch {marker}"), needs=["a"]),
        )
        with pytest.raises(GraphError):
            engine.trigger(p)
        assert not marker.exists()

    def test_unknown_action_rejected(self, engine):
        p = pipeline("p", job("a", uses("x", "no-such-action@v1")))
        with pytest.raises(DefinitionError, match="no-such-action"):
            engine.trigger(p)

    def test_invalid_scope_rejected(self, engine):
        p = pipeline("p", job("a", sh("x", "true", scopes=["root"])))
        with pytest.raises(DefinitionError):
            engine.trigger(p)


class TestRunStatus:
    def test_optional_job_failure_does_not_fail_run(self, engine):
        p = pipeline("p", job("lint", sh("x", "exit 1"), required=False), job("build", sh("y", "true")))
        run = engine.trigger(p)
        assert run.jobs["lint"].status == JobStatus.FAILED
        assert run.status == RunStatus.SUCCESS

    def test_parallel_jobs_both_run(self, engine):
        p = pipeline("p", job("a", sh("x", "true")), job("b", sh("y", "true")), job("c", sh("z", "true"), needs=["a", "b"]))
        run = engine.trigger(p)
        assert run.status == RunStatus.SUCCESS
        assert all(r.ok for r in run.jobs.values())

    def test_cancel_after_last_step_still_succeeds(self, settings):
        """A cancel that arrives once every step is done stops nothing."""
        actions = default_registry()
        engine = Engine(settings, actions=actions)

        @actions.action("cancel-self")
        def cancel_self(context, inputs):
            engine.cancel(context.run.run_id, "too late")
            return 0

        run = engine.trigger(pipeline("p", job("build", sh("x", "true"), uses("last", "cancel-self@v1"))))
        assert run.jobs["build"].status == JobStatus.SUCCESS
        assert run.status == RunStatus.SUCCESS
        assert run.error is None


class TestConcurrencyGroups:
    def _slow_pipeline(self, cancel_in_progress, ran):
        """A slow first step, then a step that records it ran."""
        return pipeline(
            "p",
            job(
                "build",
                sh("wait", "sleep 0.5"),
                sh("mark", f"echo x >> {ran}"),
            ),
            concurrency="deploy",
            cancel_in_progress=cancel_in_progress,
        )

    def test_queued_run_starts_after_first_finishes(self, engine, tmp_path):
        ran = tmp_path / "ran"
        p = self._slow_pipeline(False, ran)
        runs = {}

        t = threading.Thread(target=lambda: runs.setdefault("first", engine.trigger(p, run_id="r1")))
        t.start()
        assert _wait_until(lambda: engine.serializer.state("deploy").active == "r1")
        second = engine.trigger(p, run_id="r2")
        t.join(10)

        assert runs["first"].status == RunStatus.SUCCESS
        assert second.status == RunStatus.SUCCESS
        assert runs["first"].ended_at <= second.started_at
        assert ran.read_text().splitlines() == ["x", "x"]

    def test_cancel_in_progress_stops_first_at_step_boundary(self, engine, tmp_path):
        ran = tmp_path / "ran"
        p = self._slow_pipeline(True, ran)
        runs = {}

        t = threading.Thread(target=lambda: runs.setdefault("first", engine.trigger(p, run_id="r1")))
        t.start()
        assert _wait_until(lambda: engine.serializer.state("deploy").active == "r1")
        second = engine.trigger(p, run_id="r2")
        t.join(10)

        first = runs["first"]
        assert first.status == RunStatus.CANCELLED
        assert first.jobs["build"].status == JobStatus.CANCELLED
        assert first.error == "superseded by run r2"
        assert second.status == RunStatus.SUCCESS
        # only the second run reached the marking step
        assert ran.read_text().splitlines() == ["x"]

    def test_cancel_by_run_id(self, engine, tmp_path):
        ran = tmp_path / "ran"
        p = self._slow_pipeline(False, ran)
        runs = {}
        t = threading.Thread(target=lambda: runs.setdefault("run", engine.trigger(p, run_id="r1")))
        t.start()
        assert _wait_until(lambda: engine.serializer.state("deploy").active == "r1")
        assert engine.cancel("r1", "stopped by user")
        t.join(10)
        assert runs["run"].status == RunStatus.CANCELLED
        assert not ran.exists()
        assert engine.cancel("r1") is False


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False
