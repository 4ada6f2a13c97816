"""Tests for the shipline error hierarchy."""

import pytest

from shipline.errors import (
    ArtifactAccessDenied,
    ArtifactConflict,
    ArtifactError,
    ArtifactNotFound,
    Cancelled,
    DefinitionError,
    DeploymentFailed,
    EnvironmentMismatch,
    GraphError,
    PermissionDenied,
    ProtectionRuleViolation,
    ShiplineError,
    StepFailure,
)


class TestHierarchy:
    """Every engine error is a ShiplineError."""

    @pytest.mark.parametrize("cls", [
        DefinitionError, GraphError, ArtifactError, ArtifactNotFound,
        ArtifactAccessDenied, ArtifactConflict, EnvironmentMismatch,
        ProtectionRuleViolation, DeploymentFailed, Cancelled,
    ])
    def test_is_shipline_error(self, cls):
        assert issubclass(cls, ShiplineError)

    def test_graph_error_is_definition_error(self):
        """Graph problems are caught wherever definition errors are."""
        with pytest.raises(DefinitionError):
            raise GraphError("cycle")

    def test_artifact_errors_share_kind(self):
        assert ArtifactNotFound.kind == ArtifactConflict.kind == "artifact_error"


class TestStepFailure:
    def test_message_names_job_step_and_exit_code(self):
        err = StepFailure(job="build", step="compile", cmd="make", exit_code=2)
        assert str(err) == "[build] step 'compile' failed (exit=2): make"
        assert err.kind == "step_failure"

    def test_can_be_raised(self):
        with pytest.raises(ShiplineError) as info:
            raise StepFailure(job="a", step="b", cmd="false", exit_code=1)
        assert info.value.exit_code == 1


class TestPermissionDenied:
    def test_kind_differs_from_step_failure(self):
        """Policy misconfiguration is distinguishable from a broken build."""
        err = PermissionDenied(job="deploy", step="publish", scope="write:id-token")
        assert err.kind == "permission_denied"
        assert err.kind != StepFailure.kind
        assert "write:id-token" in str(err)
