"""Tests for cluster, node, backup and restore state machines."""
import pytest

from src.core.state_machine import (
    BackupStateMachine,
    BackupStep,
    ClusterStateMachine,
    InvalidStateTransition,
    NodeStateMachine,
    ProvisioningStep,
    RestoreStateMachine,
    RestoreStatus,
    RestoreStep,
)


class TestClusterStateMachine:
    """Test cluster lifecycle transitions."""

    def test_pending_to_creating_allowed(self):
        """Provisioning start moves pending to creating."""
        assert ClusterStateMachine.can_transition("pending", "creating") is True

    def test_creating_to_running_allowed(self):
        """A finished pipeline moves creating to running."""
        assert ClusterStateMachine.can_transition("creating", "running") is True

    def test_pending_to_running_not_allowed(self):
        """Cannot skip provisioning."""
        assert ClusterStateMachine.can_transition("pending", "running") is False

    def test_error_to_creating_allowed(self):
        """A failed cluster can be retried."""
        assert ClusterStateMachine.can_transition("error", "creating") is True

    def test_every_live_state_can_be_deleted(self):
        """Deletion is allowed from every non-deleted state."""
        for state in ["pending", "creating", "running", "error"]:
            assert ClusterStateMachine.can_transition(state, "deleting") is True

    def test_deleted_is_terminal(self):
        """Nothing leaves deleted."""
        assert ClusterStateMachine.get_valid_transitions("deleted") == []
        assert ClusterStateMachine.is_terminal("deleted") is True

    def test_transition_raises_on_invalid(self):
        """transition() raises InvalidStateTransition naming both states."""
        with pytest.raises(InvalidStateTransition) as exc_info:
            ClusterStateMachine.transition("running", "creating")
        assert exc_info.value.from_state == "running"
        assert exc_info.value.to_state == "creating"

    def test_transition_accepts_enum_members(self):
        """Enum members and raw values are interchangeable."""
        from src.core.state_machine import ClusterStatus

        assert ClusterStateMachine.transition(ClusterStatus.CREATING, ClusterStatus.ERROR) == "error"


class TestNodeStateMachine:
    """Test node transitions."""

    def test_creating_to_starting_allowed(self):
        """SSH readiness moves a node to starting."""
        assert NodeStateMachine.can_transition("creating", "starting") is True

    def test_error_recovers(self):
        """A node in error can be started again or found running on resume."""
        assert NodeStateMachine.transition("error", "starting") == "starting"
        assert NodeStateMachine.transition("error", "running") == "running"
        assert NodeStateMachine.can_transition("deleting", "error") is False

    def test_deleting_is_final(self):
        """A node being deleted never comes back."""
        assert NodeStateMachine.get_valid_transitions("deleting") == []


class TestBackupStateMachine:
    """Test backup transitions."""

    def test_completed_only_expires_or_deletes(self):
        """A completed backup can only expire or be deleted."""
        assert sorted(BackupStateMachine.get_valid_transitions("completed")) == ["deleted", "expired"]

    def test_completed_cannot_fail(self):
        """A completed backup is never marked failed."""
        assert BackupStateMachine.can_transition("completed", "failed") is False

    def test_pending_can_fail(self):
        """A backup can fail before it starts."""
        assert BackupStateMachine.can_transition("pending", "failed") is True

    def test_terminal_states(self):
        """Progress updates are refused for terminal states."""
        for state in ["completed", "failed", "expired", "deleted"]:
            assert BackupStateMachine.is_terminal(state) is True
        assert BackupStateMachine.is_terminal("in_progress") is False


class TestRestoreStateMachine:
    """Test restore transitions."""

    def test_cancel_from_pending_and_in_progress(self):
        """Active jobs can be cancelled."""
        assert RestoreStateMachine.can_transition("pending", "cancelled") is True
        assert RestoreStateMachine.can_transition("in_progress", "cancelled") is True

    def test_completed_cannot_be_cancelled(self):
        """Finished jobs stay finished."""
        with pytest.raises(InvalidStateTransition):
            RestoreStateMachine.transition(RestoreStatus.COMPLETED, RestoreStatus.CANCELLED)


class TestStepPercentages:
    """Test step ordinals and progress percentages."""

    def test_provisioning_steps_are_numbered_in_order(self):
        """Steps are 1..6 in declaration order."""
        assert [s.number for s in ProvisioningStep] == [1, 2, 3, 4, 5, 6]

    def test_provisioning_percent(self):
        """percent = round(step / 6 * 100)."""
        assert ProvisioningStep.CREATING_SERVERS.percent == 17
        assert ProvisioningStep.BUILDING_CONFIG.percent == 50
        assert ProvisioningStep.CREATING_DNS.percent == 100

    def test_parse_none(self):
        """A cluster that never started has no step."""
        assert ProvisioningStep.parse(None) is None

    def test_backup_step_percents(self):
        """Backup steps map to fixed percentages."""
        assert [BackupStep(s).percent for s in ["preparing", "backing_up", "uploading", "verifying", "completed"]] == [
            10, 30, 70, 90, 100,
        ]

    def test_restore_percent_increases(self):
        """Restore step percentages strictly increase and stay below 100."""
        percents = [s.percent for s in RestoreStep]
        assert percents == sorted(percents)
        assert len(set(percents)) == len(percents)
        assert percents[-1] < 100
