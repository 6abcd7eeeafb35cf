"""State machines for cluster, node, backup and restore lifecycles."""
from enum import Enum
from typing import ClassVar


class InvalidStateTransition(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from '{from_state}' to '{to_state}'"
        )


class ClusterStatus(str, Enum):
    PENDING = "pending"
    CREATING = "creating"
    RUNNING = "running"
    ERROR = "error"
    DELETING = "deleting"
    DELETED = "deleted"


class ProvisioningStep(str, Enum):
    """Fixed provisioning pipeline. Order of declaration is execution order."""

    CREATING_SERVERS = "creating_servers"
    WAITING_SSH = "waiting_ssh"
    BUILDING_CONFIG = "building_config"
    STARTING_CONTAINERS = "starting_containers"
    ELECTING_LEADER = "electing_leader"
    CREATING_DNS = "creating_dns"

    @property
    def number(self) -> int:
        """1-based position in the pipeline."""
        return list(ProvisioningStep).index(self) + 1

    @property
    def percent(self) -> int:
        return round(self.number * 100 / len(ProvisioningStep))

    @classmethod
    def parse(cls, value: str | None) -> "ProvisioningStep | None":
        if value is None:
            return None
        return cls(value)


class NodeStatus(str, Enum):
    CREATING = "creating"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"
    DELETING = "deleting"


class NodeRole(str, Enum):
    LEADER = "leader"
    REPLICA = "replica"


class BackupStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    DELETED = "deleted"


class BackupStep(str, Enum):
    PENDING = "pending"
    PREPARING = "preparing"
    BACKING_UP = "backing_up"
    UPLOADING = "uploading"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def percent(self) -> int:
        return BACKUP_STEP_PERCENT[self]


BACKUP_STEP_PERCENT: dict[BackupStep, int] = {
    BackupStep.PENDING: 0,
    BackupStep.PREPARING: 10,
    BackupStep.BACKING_UP: 30,
    BackupStep.UPLOADING: 70,
    BackupStep.VERIFYING: 90,
    BackupStep.COMPLETED: 100,
    BackupStep.FAILED: 0,
}


class BackupType(str, Enum):
    """Physical backup type as understood by pgBackRest."""

    FULL = "full"
    DIFF = "diff"
    INCR = "incr"


class RetentionType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MANUAL = "manual"


class RestoreStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RestoreType(str, Enum):
    FULL = "full"
    PITR = "pitr"


class RestoreStep(str, Enum):
    CREATING_CLUSTER = "creating_cluster"
    DOWNLOADING_BACKUP = "downloading_backup"
    EXTRACTING_BACKUP = "extracting_backup"
    DOWNLOADING_WAL = "downloading_wal"
    CONFIGURING_RECOVERY = "configuring_recovery"
    STARTING_POSTGRES = "starting_postgres"
    VERIFYING = "verifying"

    @property
    def percent(self) -> int:
        steps = list(RestoreStep)
        return round((steps.index(self) + 1) * 100 / (len(steps) + 1))


class ExportStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StateMachine:
    """Table driven state machine.

    Subclasses declare STATES and TRANSITIONS. States are compared by their
    string value so callers may pass either enum members or raw column values.
    """

    STATES: ClassVar[list[str]] = []
    TRANSITIONS: ClassVar[dict[str, list[str]]] = {}
    TERMINAL: ClassVar[set[str]] = set()

    @classmethod
    def _value(cls, state) -> str:
        return state.value if isinstance(state, Enum) else state

    @classmethod
    def can_transition(cls, from_state, to_state) -> bool:
        """Check if a state transition is valid.

        Args:
            from_state: Current state
            to_state: Target state

        Returns:
            True if transition is valid, False otherwise
        """
        return cls._value(to_state) in cls.TRANSITIONS.get(cls._value(from_state), [])

    @classmethod
    def transition(cls, from_state, to_state) -> str:
        """Perform a state transition.

        Returns:
            The new state

        Raises:
            InvalidStateTransition: If the transition is not valid
        """
        if not cls.can_transition(from_state, to_state):
            raise InvalidStateTransition(cls._value(from_state), cls._value(to_state))
        return cls._value(to_state)

    @classmethod
    def get_valid_transitions(cls, from_state) -> list[str]:
        """Get list of valid transitions from a state."""
        return list(cls.TRANSITIONS.get(cls._value(from_state), []))

    @classmethod
    def is_terminal(cls, state) -> bool:
        return cls._value(state) in cls.TERMINAL


class ClusterStateMachine(StateMachine):
    """State machine for cluster lifecycle.

    States:
        pending: Persisted, waiting for the provisioning workflow
        creating: Provisioning workflow running
        running: All nodes up with exactly one leader
        error: A provisioning step failed, resources left in place
        deleting: Teardown requested or running
        deleted: Logically retired, row kept for backup/restore history
    """

    STATES: ClassVar[list[str]] = [s.value for s in ClusterStatus]

    TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        "pending": ["creating", "error", "deleting"],
        "creating": ["running", "error", "deleting"],
        "running": ["deleting", "error"],
        "error": ["creating", "deleting"],
        "deleting": ["deleted", "error"],
        "deleted": [],
    }

    TERMINAL: ClassVar[set[str]] = {"deleted"}


class NodeStateMachine(StateMachine):
    """State machine for a single virtual machine in a cluster."""

    STATES: ClassVar[list[str]] = [s.value for s in NodeStatus]

    TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        "creating": ["starting", "error", "deleting"],
        "starting": ["running", "error", "deleting"],
        "running": ["error", "deleting", "starting"],
        "error": ["starting", "running", "deleting"],
        "deleting": [],
    }


class BackupStateMachine(StateMachine):
    """State machine for backups. Completed backups only expire or get deleted."""

    STATES: ClassVar[list[str]] = [s.value for s in BackupStatus]

    TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        "pending": ["in_progress", "failed"],
        "in_progress": ["completed", "failed"],
        "completed": ["expired", "deleted"],
        "expired": ["deleted"],
        "failed": ["deleted"],
        "deleted": [],
    }

    TERMINAL: ClassVar[set[str]] = {"completed", "failed", "expired", "deleted"}


class RestoreStateMachine(StateMachine):
    """State machine for restore jobs.

    cancelled is only ever entered through an explicit cancel request.
    """

    STATES: ClassVar[list[str]] = [s.value for s in RestoreStatus]

    TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        "pending": ["in_progress", "failed", "cancelled"],
        "in_progress": ["completed", "failed", "cancelled"],
        "completed": [],
        "failed": [],
        "cancelled": [],
    }

    TERMINAL: ClassVar[set[str]] = {"completed", "failed", "cancelled"}
