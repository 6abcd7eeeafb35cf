"""Point-in-time recovery timeline resolution.

Each completed backup, together with the WAL archived after it, makes a
half-open interval ``[earliest_recovery_time, latest_recovery_time)``
restorable. Given a requested target time the resolver either picks the
backup to restore from or explains why the time cannot be reached.
"""
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from src.core.state_machine import BackupStatus
from src.db.models import Backup


class PitrErrorCode(str, Enum):
    TARGET_BEFORE_EARLIEST = "TARGET_BEFORE_EARLIEST"
    TARGET_AFTER_LATEST = "TARGET_AFTER_LATEST"
    TARGET_IN_GAP = "TARGET_IN_GAP"
    TARGET_NOT_RECOVERABLE = "TARGET_NOT_RECOVERABLE"


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class PitrFailure:
    """Structured reason a target time cannot be restored."""

    code: PitrErrorCode
    requested_target_time: datetime
    nearest_before: datetime | None = None
    nearest_after: datetime | None = None
    earliest_pitr_time: datetime | None = None
    latest_pitr_time: datetime | None = None

    @property
    def message(self) -> str:
        target = _iso(self.requested_target_time)
        if self.code == PitrErrorCode.TARGET_BEFORE_EARLIEST:
            if self.earliest_pitr_time is None:
                return "No completed backups are available for point-in-time recovery"
            return f"Target time {target} is before the earliest recoverable time {_iso(self.earliest_pitr_time)}"
        if self.code == PitrErrorCode.TARGET_AFTER_LATEST:
            return f"Target time {target} is at or after the latest recoverable time {_iso(self.latest_pitr_time)}"
        if self.code == PitrErrorCode.TARGET_IN_GAP:
            return (
                f"Target time {target} falls in a gap in backup coverage between "
                f"{_iso(self.nearest_before)} and {_iso(self.nearest_after)}"
            )
        return f"The backup covering {target} has an incomplete WAL chain and cannot be restored"

    def to_dict(self) -> dict:
        """Payload for API clients. Only fields relevant to the code are set."""
        payload = {
            "code": self.code.value,
            "message": self.message,
            "requestedTargetTime": _iso(self.requested_target_time),
        }
        optional = {
            "nearestBefore": self.nearest_before,
            "nearestAfter": self.nearest_after,
            "earliestPitrTime": self.earliest_pitr_time,
            "latestPitrTime": self.latest_pitr_time,
        }
        payload.update({k: _iso(v) for k, v in optional.items() if v is not None})
        return payload


class PitrValidationError(Exception):
    """Raised when a requested target time is not recoverable."""

    def __init__(self, failure: PitrFailure):
        self.failure = failure
        super().__init__(failure.message)


@dataclass(frozen=True)
class Coverage:
    """Recovery interval contributed by one backup."""

    backup: Backup
    earliest: datetime
    latest: datetime
    created_at: datetime | None

    def contains(self, when: datetime) -> bool:
        return self.earliest <= when < self.latest

    @property
    def sort_key(self) -> tuple:
        created = self.created_at or datetime.min.replace(tzinfo=timezone.utc)
        return (self.earliest, self.latest, created)


class PitrTimelineResolver:
    """Pure resolution over a snapshot of a cluster's backup catalog.

    The catalog is read once at construction; a backup completing afterwards
    does not affect the result.
    """

    def __init__(self, backups: Iterable[Backup]):
        coverage = []
        for backup in backups:
            if backup.status != BackupStatus.COMPLETED.value:
                continue
            earliest = as_utc(backup.earliest_recovery_time)
            latest = as_utc(backup.latest_recovery_time)
            # empty or inverted intervals make nothing restorable
            if earliest is None or latest is None or earliest >= latest:
                continue
            coverage.append(Coverage(backup, earliest, latest, as_utc(backup.created_at)))
        self.coverage = sorted(coverage, key=lambda c: c.sort_key)

    @property
    def earliest(self) -> datetime | None:
        return self.coverage[0].earliest if self.coverage else None

    @property
    def latest(self) -> datetime | None:
        return max((c.latest for c in self.coverage), default=None)

    def window(self) -> dict:
        return {
            "available": bool(self.coverage),
            "earliest": self.earliest,
            "latest": self.latest,
        }

    def check(self, target_time: datetime) -> Backup | PitrFailure:
        """Return the backup to restore from, or the reason there is none."""
        target = as_utc(target_time)
        earliest, latest = self.earliest, self.latest

        if earliest is None or target < earliest:
            return PitrFailure(
                PitrErrorCode.TARGET_BEFORE_EARLIEST,
                target,
                earliest_pitr_time=earliest,
                latest_pitr_time=latest,
            )
        if target >= latest:
            return PitrFailure(
                PitrErrorCode.TARGET_AFTER_LATEST,
                target,
                earliest_pitr_time=earliest,
                latest_pitr_time=latest,
            )

        containing = [c for c in self.coverage if c.contains(target)]
        if not containing:
            nearest_before = max(c.latest for c in self.coverage if c.latest <= target)
            nearest_after = min(c.earliest for c in self.coverage if c.earliest > target)
            return PitrFailure(
                PitrErrorCode.TARGET_IN_GAP,
                target,
                nearest_before=nearest_before,
                nearest_after=nearest_after,
                earliest_pitr_time=earliest,
                latest_pitr_time=latest,
            )

        # Latest start minimises WAL replay; later end, then newer row break ties
        chosen = max(containing, key=lambda c: c.sort_key)
        if chosen.backup.recoverable is False:
            return PitrFailure(
                PitrErrorCode.TARGET_NOT_RECOVERABLE,
                target,
                earliest_pitr_time=earliest,
                latest_pitr_time=latest,
            )
        return chosen.backup

    def resolve(self, target_time: datetime) -> Backup:
        """Like ``check`` but raises on failure.

        Raises:
            PitrValidationError: If the target time cannot be restored.
        """
        result = self.check(target_time)
        if isinstance(result, PitrFailure):
            raise PitrValidationError(result)
        return result
