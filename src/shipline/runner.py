# runner.py
from __future__ import annotations

import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from . import expressions
from .actions import ActionRegistry, default_registry
from .artifacts import ArtifactHandle, ArtifactStore
from .concurrency import CancelToken
from .environments import DeploymentGate
from .errors import Cancelled, PermissionDenied, ShiplineError, StepFailure
from .model import Job, JobResult, JobStatus, Pipeline, Step, StepResult, StepStatus, utcnow
from .permissions import effective_grant, format_grant, missing_scope
from .ui.console import get_console

# Tail kept per output stream, so huge build logs don't bloat run reports.
MAX_STREAM_CHARS = 4000

DEFAULT_WORKSPACE_DIR = ".shipline/workspaces"


@dataclass
class RunContext:
    """What a job can see of the run it belongs to."""
    run_id: str
    pipeline: Pipeline
    ref: str
    event: str = "push"
    source: Optional[Path] = None
    token: CancelToken = field(default_factory=CancelToken)
    statuses: Dict[str, JobStatus] = field(default_factory=dict)
    environments: Dict[str, str] = field(default_factory=dict)

    def expression_scope(self) -> Dict[str, Any]:
        return {
            "run": {
                "id": self.run_id,
                "ref": self.ref,
                "event": self.event,
                "pipeline": self.pipeline.name,
            }
        }


class StepContext:
    """
    Everything a single step may touch: its job's workspace, environment
    variables, artifacts (scoped to the job) and the deployment gate.
    """

    def __init__(
        self,
        runner: "JobRunner",
        run: RunContext,
        job: Job,
        workspace: Path,
        grant: Mapping[str, str],
        step_outputs: Mapping[str, Dict[str, str]],
        result: StepResult,
        output_file: Path,
    ):
        self.runner = runner
        self.run = run
        self.job = job
        self.workspace = workspace
        self.grant = dict(grant)
        self.step_outputs = step_outputs
        self.result = result
        self.output_file = output_file

    @property
    def actions(self) -> ActionRegistry:
        return self.runner.actions

    # ---- logging / outputs ----

    def log(self, line: str) -> None:
        self.result.log.append(line)

    def log_output(self, stdout: Optional[str], stderr: Optional[str]) -> None:
        for stream in (stdout, stderr):
            if stream:
                self.result.log.extend(stream[-MAX_STREAM_CHARS:].splitlines())

    def set_output(self, key: str, value: str) -> None:
        self.result.outputs[key] = value

    def collect_outputs(self) -> None:
        """Read key=value lines a command appended to $SHIPLINE_OUTPUT."""
        if not self.output_file.exists():
            return
        for line in self.output_file.read_text(encoding="utf-8").splitlines():
            key, sep, value = line.partition("=")
            if sep and key.strip():
                self.result.outputs[key.strip()] = value

    # ---- environment / expressions ----

    def env_vars(self) -> Dict[str, str]:
        env: Dict[str, str] = {}
        env.update(self.run.pipeline.env)
        env.update(self.job.env)
        return env

    def environ(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.env_vars())
        env.update({k: str(self.resolve(v)) for k, v in (extra or {}).items()})
        env.update({
            "CI": "true",
            "SHIPLINE": "true",
            "SHIPLINE_RUN_ID": self.run.run_id,
            "SHIPLINE_REF": self.run.ref,
            "SHIPLINE_EVENT": self.run.event,
            "SHIPLINE_JOB": self.job.name,
            "SHIPLINE_WORKSPACE": str(self.workspace),
            "SHIPLINE_OUTPUT": str(self.output_file),
            "SHIPLINE_SCOPES": format_grant(self.grant),
        })
        return env

    def expression_scope(self) -> Dict[str, Any]:
        scope = self.run.expression_scope()
        scope["env"] = self.env_vars()
        scope["steps"] = {sid: {"outputs": outs} for sid, outs in self.step_outputs.items()}
        return scope

    def resolve(self, value: Any) -> Any:
        return expressions.resolve(value, self.expression_scope())

    # ---- artifacts / deployment ----

    def publish_artifact(self, name: str, path_root: Path) -> ArtifactHandle:
        return self.runner.artifacts.publish(self.run.run_id, self.job.name, name, path_root)

    def fetch_artifact(self, name: str) -> bytes:
        return self.runner.artifacts.fetch(self.run.run_id, name, self.job.name)

    def extract_artifact(self, name: str, dest: Path) -> List[str]:
        return self.runner.artifacts.extract(self.run.run_id, name, self.job.name, dest)

    def deploy(self, environment: str, artifact_name: str) -> str:
        if self.runner.gate is None:
            raise ShiplineError("No deployment gate configured")
        # binding check happens before the artifact is even read
        self.runner.gate.check(
            environment, job=self.job, ref=self.run.ref, job_statuses=self.run.statuses
        )
        handle = self.runner.artifacts.handle(self.run.run_id, artifact_name, self.job.name)
        blob = self.fetch_artifact(artifact_name)
        # publishing cannot be undone; last chance to honour a cancel
        self.run.token.raise_if_cancelled()
        return self.runner.gate.deploy(
            environment,
            handle,
            blob,
            run_id=self.run.run_id,
            job=self.job,
            ref=self.run.ref,
            job_statuses=self.run.statuses,
        )


class JobRunner:
    """
    Executes one job's steps, in order, in a fresh workspace.

    First failing step fails the job; remaining steps are skipped. The
    cancellation token is only honoured between steps.
    """

    def __init__(
        self,
        artifacts: ArtifactStore,
        gate: Optional[DeploymentGate] = None,
        *,
        workspace_root: str | Path = DEFAULT_WORKSPACE_DIR,
        actions: Optional[ActionRegistry] = None,
        keep_workspaces: bool = False,
    ):
        self.artifacts = artifacts
        self.gate = gate
        self.workspace_root = Path(workspace_root).resolve()
        self.actions = actions or default_registry()
        self.keep_workspaces = keep_workspaces

    def _provision(self, run_id: str, job_name: str) -> Path:
        ws = self.workspace_root / run_id / job_name
        if ws.exists():
            shutil.rmtree(ws)
        ws.mkdir(parents=True)
        return ws

    def _output_file(self, run_id: str, job_name: str, index: int) -> Path:
        d = self.workspace_root / run_id / "_outputs" / job_name
        d.mkdir(parents=True, exist_ok=True)
        return d / f"{index}.env"

    def cleanup_run(self, run_id: str) -> None:
        if not self.keep_workspaces:
            shutil.rmtree(self.workspace_root / run_id, ignore_errors=True)

    def run(self, job: Job, run: RunContext) -> JobResult:
        console = get_console()
        result = JobResult(name=job.name, status=JobStatus.RUNNING, started_at=utcnow())

        if run.token.cancelled:
            result.status = JobStatus.CANCELLED
            result.error = run.token.reason
            result.error_kind = Cancelled.kind
            result.ended_at = utcnow()
            return result

        console.print_job_start(job.title)
        workspace = self._provision(run.run_id, job.name)
        grant = effective_grant(run.pipeline.permissions, job.permissions)
        step_outputs: Dict[str, Dict[str, str]] = {}

        try:
            for index, step in enumerate(job.steps):
                if run.token.cancelled:
                    result.status = JobStatus.CANCELLED
                    result.error = run.token.reason
                    result.error_kind = Cancelled.kind
                    self._skip_rest(result, job.steps[index:])
                    console.print_job_cancelled(job.name, run.token.reason or "cancelled")
                    break

                step_result = StepResult(name=step.name, status=StepStatus.SUCCESS)
                result.steps.append(step_result)
                ctx = StepContext(
                    self, run, job, workspace, grant, step_outputs, step_result,
                    self._output_file(run.run_id, job.name, index),
                )
                self._run_step(job, step, ctx, result)

                if step.step_id:
                    step_outputs[step.step_id] = step_result.outputs

                if result.status != JobStatus.RUNNING:
                    self._skip_rest(result, job.steps[index + 1:])
                    break

            if result.status == JobStatus.RUNNING:
                result.status = JobStatus.SUCCESS
        finally:
            self._finish_deployment(job, run, result, step_outputs)
            if not self.keep_workspaces:
                shutil.rmtree(workspace, ignore_errors=True)
            result.ended_at = utcnow()

        if result.status == JobStatus.SUCCESS:
            console.print_success(job.name)
        elif result.status == JobStatus.FAILED:
            console.print_failure(job.name, result.error or "", is_job=True)
        return result

    def _run_step(self, job: Job, step: Step, ctx: StepContext, result: JobResult) -> None:
        console = get_console()
        step_result = ctx.result
        console.print_step(job.name, step.name)
        started = time.monotonic()
        try:
            missing = missing_scope(ctx.grant, step.required_scopes(ctx))
            if missing is not None:
                raise PermissionDenied(job=job.name, step=step.name, scope=missing)

            exit_code = step.execute(ctx)
            ctx.collect_outputs()
            step_result.exit_code = exit_code
            if exit_code != 0:
                raise StepFailure(job=job.name, step=step.name, cmd=step.describe(), exit_code=exit_code)
        except Cancelled as e:
            step_result.status = StepStatus.FAILED
            step_result.error = str(e)
            result.status = JobStatus.CANCELLED
            result.error = str(e)
            result.error_kind = e.kind
        except ShiplineError as e:
            step_result.status = StepStatus.FAILED
            step_result.error = str(e)
            result.status = JobStatus.FAILED
            result.error = str(e)
            result.error_kind = e.kind
            console.print_failure(step.name, str(e), exit_code=getattr(e, "exit_code", None))
        except Exception as e:
            step_result.status = StepStatus.FAILED
            step_result.error = f"{type(e).__name__}: {e}"
            result.status = JobStatus.FAILED
            result.error = step_result.error
            result.error_kind = "error"
            console.print_failure(step.name, step_result.error)
        finally:
            step_result.duration = time.monotonic() - started
            if console.debug:
                for line in step_result.log:
                    console.print_debug(f"[{job.name}] {line}")

    @staticmethod
    def _skip_rest(result: JobResult, steps: List[Step]) -> None:
        for s in steps:
            result.steps.append(StepResult(name=s.name, status=StepStatus.SKIPPED))

    def _finish_deployment(
        self,
        job: Job,
        run: RunContext,
        result: JobResult,
        step_outputs: Mapping[str, Dict[str, str]],
    ) -> None:
        if self.gate is None:
            return
        if result.status != JobStatus.SUCCESS:
            self.gate.discard(run.run_id, job.name)
            return

        url = None
        if job.environment is not None and job.environment.url:
            scope = run.expression_scope()
            scope["env"] = {**run.pipeline.env, **job.env}
            scope["steps"] = {sid: {"outputs": outs} for sid, outs in step_outputs.items()}
            url = expressions.resolve(job.environment.url, scope) or None

        env = self.gate.commit(run.run_id, job, url=url)
        if env is not None:
            run.environments[env.name] = env.url
            get_console().print_deployed(env.name, env.url)
