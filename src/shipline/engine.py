# engine.py
from __future__ import annotations

import json
import threading
import uuid
from pathlib import Path
from typing import Dict, Optional

from .actions import ActionRegistry, default_registry
from .artifacts import ArtifactStore
from .concurrency import CancelToken, ConcurrencySerializer, GroupRegistry, GroupState
from .dag import build_dag
from .environments import DeploymentGate, DirectoryPublisher, EnvironmentRegistry, HttpPublisher, Publisher
from .errors import DefinitionError
from .model import (
    ActionRef,
    Job,
    JobResult,
    JobStatus,
    Pipeline,
    PipelineRun,
    RunStatus,
    normalize_ref,
    utcnow,
)
from .permissions import parse_scope, validate_grant
from .runner import JobRunner, RunContext
from .scheduler import JobGraphScheduler
from .settings import Settings
from .ui.console import get_console


def new_run_id() -> str:
    return uuid.uuid4().hex


def validate_pipeline(pipeline: Pipeline, actions: ActionRegistry) -> None:
    """
    Reject a malformed pipeline before any step runs: graph shape,
    grants, scope syntax and action references.
    """
    build_dag(pipeline.jobs)
    validate_grant(pipeline.permissions)
    for job in pipeline.jobs:
        if not job.steps:
            raise DefinitionError(f"Job '{job.name}' has no steps")
        if job.permissions is not None:
            validate_grant(job.permissions)
        for step in job.steps:
            for scope in getattr(step, "scopes", ()) or ():
                parse_scope(scope)
            if isinstance(step, ActionRef):
                act = actions.resolve(step.uses, step.version)
                for scope in act.scopes:
                    parse_scope(scope)


class Engine:
    """
    Wires the serializer, scheduler, runner, artifact store and deployment
    gate together and drives a pipeline run from trigger to terminal state.

    One Engine is meant to be shared by every run in the process: the
    concurrency groups, artifact store and environments live here.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        runner=None,
        scheduler: Optional[JobGraphScheduler] = None,
        serializer: Optional[ConcurrencySerializer] = None,
        artifacts: Optional[ArtifactStore] = None,
        environments: Optional[EnvironmentRegistry] = None,
        publisher: Optional[Publisher] = None,
        gate: Optional[DeploymentGate] = None,
        actions: Optional[ActionRegistry] = None,
        save_reports: bool = True,
    ):
        self.settings = settings or Settings.from_env()
        s = self.settings

        self.environments = environments or EnvironmentRegistry(s.environments_file)
        self.artifacts = artifacts or ArtifactStore(s.artifacts_dir)
        if publisher is None:
            if s.publish_endpoint:
                publisher = HttpPublisher(s.publish_endpoint)
            else:
                publisher = DirectoryPublisher(s.publish_dir, s.pages_url)
        self.gate = gate or DeploymentGate(self.environments, publisher)
        self.actions = actions or default_registry()
        self.runner = runner or JobRunner(
            self.artifacts,
            self.gate,
            workspace_root=s.workspaces_dir,
            actions=self.actions,
            keep_workspaces=s.keep_workspaces,
        )
        self.scheduler = scheduler or JobGraphScheduler(s.max_workers)
        self.serializer = serializer or ConcurrencySerializer(GroupRegistry())
        self.save_reports = save_reports

        self._lock = threading.Lock()
        self._tokens: Dict[str, CancelToken] = {}

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self, pipeline: Pipeline) -> None:
        validate_pipeline(pipeline, self.actions)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def trigger(
        self,
        pipeline: Pipeline,
        *,
        event: str = "push",
        ref: str = "main",
        source: str | Path | None = None,
        run_id: Optional[str] = None,
    ) -> Optional[PipelineRun]:
        """
        Start a run for a trigger event. Returns None if the pipeline does not
        run on this event; raises DefinitionError/GraphError (with nothing
        executed) if the pipeline is malformed. Blocks until the run is
        terminal, including any time spent queued behind its concurrency group.
        """
        console = get_console()
        if not pipeline.trigger.matches(event, ref):
            console.print_not_triggered(pipeline.name, event, ref)
            return None

        run = PipelineRun(
            run_id=run_id or new_run_id(),
            pipeline=pipeline.name,
            ref=normalize_ref(ref),
            event=event,
            group=pipeline.concurrency.group if pipeline.concurrency else None,
        )

        try:
            self.validate(pipeline)
        except DefinitionError as e:
            run.status = RunStatus.FAILED
            run.error = str(e)
            run.ended_at = utcnow()
            self._save_report(run)
            raise

        return self._execute(pipeline, run, Path(source).resolve() if source else None)

    def cancel(self, run_id: str, reason: str = "cancelled by user") -> bool:
        with self._lock:
            token = self._tokens.get(run_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    def _execute(self, pipeline: Pipeline, run: PipelineRun, source: Optional[Path]) -> PipelineRun:
        console = get_console()
        token = CancelToken()
        with self._lock:
            self._tokens[run.run_id] = token

        try:
            if pipeline.concurrency is not None:
                def on_queued(state: GroupState) -> None:
                    if state.cancel_in_progress:
                        console.print_cancel_requested(state.name, state.active or "-")
                    console.print_queued(state.name, state.active, len(state.waitlist) - 1)

                admitted = self.serializer.enter(
                    pipeline.concurrency.group,
                    run.run_id,
                    token,
                    cancel_in_progress=pipeline.concurrency.cancel_in_progress,
                    on_queued=on_queued,
                )
                if not admitted:
                    run.status = RunStatus.CANCELLED
                    run.error = token.reason
                    for job in pipeline.jobs:
                        run.jobs[job.name] = JobResult(
                            name=job.name,
                            status=JobStatus.CANCELLED,
                            error=token.reason,
                            error_kind="cancelled",
                        )
                    run.ended_at = utcnow()
                    self._save_report(run)
                    return run

            try:
                self._run_admitted(pipeline, run, source, token)
            finally:
                if pipeline.concurrency is not None:
                    self.serializer.leave(pipeline.concurrency.group, run.run_id)
        finally:
            with self._lock:
                self._tokens.pop(run.run_id, None)

        return run

    def _run_admitted(
        self,
        pipeline: Pipeline,
        run: PipelineRun,
        source: Optional[Path],
        token: CancelToken,
    ) -> None:
        console = get_console()
        run.status = RunStatus.RUNNING
        run.started_at = utcnow()
        console.print_run_started(run.run_id, pipeline.name, run.ref, len(pipeline.jobs))

        ctx = RunContext(
            run_id=run.run_id,
            pipeline=pipeline,
            ref=run.ref,
            event=run.event,
            source=source,
            token=token,
            statuses={j.name: JobStatus.PENDING for j in pipeline.jobs},
        )

        def execute_job(job: Job) -> JobResult:
            ctx.statuses[job.name] = JobStatus.RUNNING
            return self.runner.run(job, ctx)

        def on_complete(res: JobResult) -> None:
            run.jobs[res.name] = res
            ctx.statuses[res.name] = res.status

        self.environments.apply_rules(pipeline.environments)
        self.artifacts.open_run(run.run_id, pipeline.jobs)
        try:
            self.scheduler.run(pipeline.jobs, execute_job, token, on_complete)
            run.jobs = {j.name: run.jobs[j.name] for j in pipeline.jobs}
            run.environments.update(ctx.environments)
            run.status = self._final_status(pipeline, run)
            if run.status == RunStatus.CANCELLED:
                run.error = token.reason
        except Exception as e:
            run.status = RunStatus.FAILED
            run.error = f"{type(e).__name__}: {e}"
            raise
        finally:
            run.artifacts = [h.to_dict() for h in self.artifacts.published(run.run_id)]
            self.artifacts.close_run(run.run_id)
            cleanup = getattr(self.runner, "cleanup_run", None)
            if cleanup is not None:
                cleanup(run.run_id)
            run.ended_at = utcnow()
            self._save_report(run)

    @staticmethod
    def _final_status(pipeline: Pipeline, run: PipelineRun) -> RunStatus:
        required = [j.name for j in pipeline.jobs if j.required]
        for name in required:
            if run.jobs[name].status in (JobStatus.FAILED, JobStatus.SKIPPED):
                return RunStatus.FAILED
        # a cancel that lands after the last step stopped nothing
        if any(r.status == JobStatus.CANCELLED for r in run.jobs.values()):
            return RunStatus.CANCELLED
        return RunStatus.SUCCESS

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _save_report(self, run: PipelineRun) -> None:
        if not self.save_reports:
            return
        runs_dir = self.settings.runs_dir
        runs_dir.mkdir(parents=True, exist_ok=True)
        path = runs_dir / f"{run.run_id}.json"
        path.write_text(json.dumps(run.to_dict(), indent=2), encoding="utf-8")

    def load_report(self, run_id: str) -> dict:
        path = self.settings.runs_dir / f"{run_id}.json"
        return json.loads(path.read_text(encoding="utf-8"))
