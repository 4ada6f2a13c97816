# model.py
from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .runner import StepContext


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Step(ABC):
    """A single instruction inside a job. Subclasses implement execute()."""
    name: str

    @abstractmethod
    def execute(self, context: "StepContext") -> int:
        raise NotImplementedError

    @property
    def step_id(self) -> Optional[str]:
        return getattr(self, "id", None)

    def required_scopes(self, context: "StepContext") -> Tuple[str, ...]:
        return tuple(getattr(self, "scopes", ()) or ())

    def describe(self) -> str:
        return self.name


@dataclass(frozen=True)
class Command(Step):
    """Opaque shell invocation. The engine only looks at its exit code."""
    run: str
    cwd: Optional[str] = None
    id: Optional[str] = None
    scopes: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    def execute(self, context: "StepContext") -> int:
        cwd = (context.workspace / (self.cwd or ".")).resolve()
        if not cwd.exists():
            raise FileNotFoundError(f"[{context.job.name}] step '{self.name}' cwd not found: {cwd}")

        proc = subprocess.run(
            self.run,
            shell=True,
            cwd=str(cwd),
            env=context.environ(self.env),
            text=True,
            capture_output=True,
        )
        context.log_output(proc.stdout, proc.stderr)
        return proc.returncode

    def describe(self) -> str:
        return self.run


@dataclass(frozen=True)
class ActionRef(Step):
    """Reference to a reusable action, executed as a black box."""
    uses: str
    version: str = "v1"
    inputs: Mapping[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    scopes: Tuple[str, ...] = ()

    def execute(self, context: "StepContext") -> int:
        action = context.actions.resolve(self.uses, self.version)
        inputs = {k: context.resolve(v) for k, v in self.inputs.items()}
        return action(context, inputs)

    def required_scopes(self, context: "StepContext") -> Tuple[str, ...]:
        action = context.actions.resolve(self.uses, self.version)
        return tuple(action.scopes) + tuple(self.scopes)

    def describe(self) -> str:
        return f"{self.uses}@{self.version}"


# ---------------------------------------------------------------------
# Jobs and pipelines
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class EnvironmentBinding:
    """Binds a job to a deployment environment. `url` may hold an expression."""
    name: str
    url: Optional[str] = None


@dataclass
class Job:
    """
    A pipeline job: ordered steps + dependencies + grants.

    `permissions` of None means "inherit the pipeline grant"; an explicit
    mapping narrows it.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    permissions: Optional[Dict[str, str]] = None
    environment: Optional[EnvironmentBinding] = None
    env: Dict[str, str] = field(default_factory=dict)
    display_name: Optional[str] = None
    required: bool = True

    @property
    def title(self) -> str:
        return self.display_name or self.name


@dataclass(frozen=True)
class Trigger:
    event: str = "push"
    branches: Optional[Tuple[str, ...]] = None

    def matches(self, event: str, ref: str) -> bool:
        if event != self.event:
            return False
        if not self.branches:
            return True
        return normalize_ref(ref) in self.branches


@dataclass(frozen=True)
class Concurrency:
    group: str
    cancel_in_progress: bool = False


@dataclass(frozen=True)
class EnvironmentRule:
    """Protection rules for a deployment environment."""
    branches: Optional[Tuple[str, ...]] = None
    requires_success: Tuple[str, ...] = ()


@dataclass
class Pipeline:
    name: str
    jobs: list[Job]
    trigger: Trigger = field(default_factory=Trigger)
    permissions: Dict[str, str] = field(default_factory=dict)
    concurrency: Optional[Concurrency] = None
    env: Dict[str, str] = field(default_factory=dict)
    environments: Dict[str, EnvironmentRule] = field(default_factory=dict)


def normalize_ref(ref: str) -> str:
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass
class StepResult:
    name: str
    status: StepStatus
    exit_code: Optional[int] = None
    error: Optional[str] = None
    log: list[str] = field(default_factory=list)
    outputs: Dict[str, str] = field(default_factory=dict)
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "error": self.error,
            "log": self.log,
            "outputs": self.outputs,
            "duration": round(self.duration, 3),
        }


@dataclass
class JobResult:
    name: str
    status: JobStatus
    steps: list[StepResult] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == JobStatus.SUCCESS

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "status": self.status.value,
            "error": self.error,
            "error_kind": self.error_kind,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class PipelineRun:
    """One trigger-to-completion execution of a pipeline."""
    run_id: str
    pipeline: str
    ref: str
    event: str = "push"
    group: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    environments: Dict[str, str] = field(default_factory=dict)
    artifacts: list[dict] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "ref": self.ref,
            "event": self.event,
            "group": self.group,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error": self.error,
            "environments": dict(self.environments),
            "artifacts": list(self.artifacts),
            "jobs": {name: r.to_dict() for name, r in self.jobs.items()},
        }
