# errors.py
"""
Error types raised by the shipline engine.

Every error is job-fatal: there are no automatic retries. The runner turns
each one into a failed (or cancelled) JobResult tagged with `kind`, so the
reporting surface can tell policy misconfiguration apart from a broken build.
"""
from __future__ import annotations

from dataclasses import dataclass


class ShiplineError(Exception):
    """Base exception for shipline."""
    kind = "error"


class DefinitionError(ShiplineError):
    """The pipeline definition itself is malformed (bad file, unknown action)."""
    kind = "definition_error"


class GraphError(DefinitionError):
    """Malformed or cyclic job graph. Raised before any step executes."""
    kind = "graph_error"


@dataclass(eq=False)
class StepFailure(ShiplineError):
    job: str
    step: str
    cmd: str
    exit_code: int

    kind = "step_failure"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}): {self.cmd}"


@dataclass(eq=False)
class PermissionDenied(ShiplineError):
    job: str
    step: str
    scope: str

    kind = "permission_denied"

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' requires scope '{self.scope}' which the job was not granted"


class ArtifactError(ShiplineError):
    kind = "artifact_error"


class ArtifactNotFound(ArtifactError):
    pass


class ArtifactAccessDenied(ArtifactError):
    pass


class ArtifactConflict(ArtifactError):
    pass


class EnvironmentMismatch(ShiplineError):
    """A job tried to deploy to an environment it is not bound to."""
    kind = "environment_mismatch"


class ProtectionRuleViolation(ShiplineError):
    """The target environment's protection rules reject this run."""
    kind = "protection_rule"


class DeploymentFailed(ShiplineError):
    """The hosting collaborator did not accept the artifact."""
    kind = "deployment_failed"


class Cancelled(ShiplineError):
    """Cooperative stop requested by the concurrency serializer. Not a failure."""
    kind = "cancelled"
