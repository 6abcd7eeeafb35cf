"""Backup creation, execution, retention and deletion."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.config.settings import BackupSettings, Settings
from src.core.dispatcher import AsyncTaskDispatcher
from src.core.pitr import PitrTimelineResolver, as_utc
from src.core.progress import ProgressService
from src.core.state_machine import (
    BackupStateMachine,
    BackupStatus,
    BackupStep,
    BackupType,
    ClusterStatus,
    RetentionType,
)
from src.db.models import Backup, Cluster
from src.services.patroni import PatroniService
from src.services.pgbackrest import BackupError, BackupInfo, PgBackRestService
from src.services.s3_storage import S3Storage
from src.utils.credentials import format_bytes

logger = logging.getLogger(__name__)

ACTIVE_BACKUP_STATES = (BackupStatus.PENDING.value, BackupStatus.IN_PROGRESS.value)

TYPE_ALIASES = {
    "full": BackupType.FULL,
    "diff": BackupType.DIFF,
    "differential": BackupType.DIFF,
    "incr": BackupType.INCR,
    "incremental": BackupType.INCR,
}

# The dependents of a backup end at the next backup of one of these types
ANCHOR_TYPES = {
    BackupType.FULL.value: {BackupType.FULL.value},
    BackupType.DIFF.value: {BackupType.FULL.value, BackupType.DIFF.value},
    BackupType.INCR.value: {BackupType.FULL.value, BackupType.DIFF.value},
}


class BackupRequestError(ValueError):
    """A backup request or deletion was rejected."""
    pass


class BackupConfirmationRequired(BackupRequestError):
    """Deleting this backup also deletes dependents and needs confirmation."""

    def __init__(self, info: "DeletionInfo"):
        self.info = info
        super().__init__(info.warning)


def normalize_backup_type(value: str | None) -> BackupType | None:
    """Map user input to a backup type. None and blank mean automatic."""
    if value is None or not value.strip():
        return None
    try:
        return TYPE_ALIASES[value.strip().lower()]
    except KeyError:
        raise BackupRequestError(
            f"Invalid backup type: {value}. Valid types: full, diff, incr"
        ) from None


def effective_backup_type(requested: str | None, retention: str) -> BackupType:
    """Explicit request wins, otherwise the schedule decides."""
    if requested:
        return BackupType(requested)
    if retention in (RetentionType.WEEKLY.value, RetentionType.MONTHLY.value):
        return BackupType.FULL
    if retention == RetentionType.DAILY.value:
        return BackupType.DIFF
    return BackupType.INCR


def compute_expiry(retention: str, now: datetime, config: BackupSettings) -> datetime | None:
    """Expiry for a retention class. Manual backups never expire."""
    if retention == RetentionType.DAILY.value:
        return now + timedelta(days=config.daily_retention_days)
    if retention == RetentionType.WEEKLY.value:
        return now + timedelta(days=config.weekly_retention_weeks * 7)
    if retention == RetentionType.MONTHLY.value:
        return now + timedelta(days=config.monthly_retention_months * 30)
    return None


def trigger_for(retention: str) -> str:
    if retention == RetentionType.MANUAL.value:
        return "manual"
    return f"scheduled_{retention}"


def _order_key(backup: Backup) -> datetime:
    return as_utc(backup.started_at or backup.created_at) or datetime.min.replace(tzinfo=timezone.utc)


def find_dependents(backup: Backup, completed: list[Backup]) -> list[Backup]:
    """Completed backups that can only be restored through ``backup``.

    Those are the weaker-typed backups taken after it and before the next
    backup that could serve as their base instead.
    """
    if backup.backup_type not in ANCHOR_TYPES:
        return []
    start = _order_key(backup)
    later = sorted(
        (b for b in completed if b.id != backup.id and _order_key(b) > start),
        key=_order_key,
    )
    anchors = ANCHOR_TYPES[backup.backup_type]
    dependents = []
    for candidate in later:
        if candidate.backup_type in anchors:
            break
        dependents.append(candidate)
    return dependents


@dataclass
class DeletionInfo:
    """What deleting a backup would remove."""

    backup_id: str
    backup_type: str | None
    backup_size_bytes: int = 0
    dependents: list[Backup] = field(default_factory=list)
    is_only_full: bool = False

    @property
    def total_count(self) -> int:
        return 1 + len(self.dependents)

    @property
    def total_size_bytes(self) -> int:
        return self.backup_size_bytes + sum(b.size_bytes or 0 for b in self.dependents)

    @property
    def requires_confirmation(self) -> bool:
        return bool(self.dependents)

    @property
    def warning(self) -> str | None:
        if not self.dependents:
            return None
        return (
            f"This backup has {len(self.dependents)} dependent backup(s) that will also be "
            f"deleted ({format_bytes(sum(b.size_bytes or 0 for b in self.dependents))})"
        )

    def to_dict(self) -> dict:
        total = self.total_size_bytes
        return {
            "backup_id": self.backup_id,
            "backup_type": self.backup_type,
            "dependent_backups": [
                {"id": b.id, "backup_type": b.backup_type, "size_bytes": b.size_bytes}
                for b in self.dependents
            ],
            "total_count": self.total_count,
            "total_size_bytes": total,
            "total_size_formatted": format_bytes(total),
            "requires_confirmation": self.requires_confirmation,
            "warning": self.warning,
        }


class BackupOrchestrator:
    """Runs pgBackRest backups and keeps the backup catalog in sync."""

    def __init__(
        self,
        session_factory,
        pgbackrest: PgBackRestService,
        patroni: PatroniService,
        storage: S3Storage,
        progress: ProgressService,
        task_dispatcher: AsyncTaskDispatcher,
        config: Settings,
    ):
        self._session_factory = session_factory
        self.pgbackrest = pgbackrest
        self.patroni = patroni
        self.storage = storage
        self.progress = progress
        self.dispatcher = task_dispatcher
        self.config = config

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def create_backup(
        self,
        db: AsyncSession,
        cluster: Cluster,
        requested_type: str | None = None,
        retention: RetentionType = RetentionType.MANUAL,
    ) -> Backup:
        """Persist a pending backup and schedule it to run after commit.

        Raises:
            BackupRequestError: If storage is unconfigured, the cluster is not
                running, a backup is already active or the type is invalid.
        """
        if not self.storage.is_configured:
            raise BackupRequestError("Backup storage is not configured")
        if cluster.status != ClusterStatus.RUNNING.value:
            raise BackupRequestError("Cluster must be running to create a backup")
        normalized = normalize_backup_type(requested_type)

        active = await db.execute(
            select(Backup.id).where(
                Backup.cluster_id == cluster.id, Backup.status.in_(ACTIVE_BACKUP_STATES)
            )
        )
        if active.first() is not None:
            raise BackupRequestError("A backup is already in progress for this cluster")

        backup = Backup(
            cluster_id=cluster.id,
            status=BackupStatus.PENDING.value,
            trigger=trigger_for(retention.value),
            retention_type=retention.value,
            requested_backup_type=normalized.value if normalized else None,
            current_step=BackupStep.PENDING.value,
            progress_percent=0,
        )
        db.add(backup)
        await db.flush()
        self.dispatcher.defer(
            db, "backup-execute", f"backup:{backup.id}", self.execute_backup, backup.id
        )
        logger.info(
            f"Backup {backup.id} requested for cluster {cluster.slug} "
            f"({retention.value}, type {normalized.value if normalized else 'auto'})"
        )
        return backup

    async def resume_interrupted(self, db: AsyncSession) -> int:
        """Defer pending backups and fail the ones a stopped process was running.

        pgBackRest may or may not have finished an interrupted run, so it is
        not recorded as completed; the next scheduled backup takes its place.
        """
        result = await db.execute(select(Backup).where(Backup.status.in_(ACTIVE_BACKUP_STATES)))
        resumed = 0
        for backup in result.scalars().all():
            if backup.status == BackupStatus.IN_PROGRESS.value:
                logger.warning(f"Backup {backup.id} was interrupted at {backup.current_step}")
                backup.status = BackupStateMachine.transition(backup.status, BackupStatus.FAILED)
                backup.current_step = BackupStep.FAILED.value
                backup.error_message = "Interrupted by a control plane restart"
                backup.completed_at = datetime.now(timezone.utc)
                continue
            self.dispatcher.defer(
                db, "backup-execute", f"backup:{backup.id}", self.execute_backup, backup.id
            )
            resumed += 1
        if resumed:
            logger.info(f"Resuming {resumed} pending backups")
        return resumed

    async def list_backups(
        self, db: AsyncSession, cluster_id: str, include_deleted: bool = False
    ) -> list[Backup]:
        query = select(Backup).where(Backup.cluster_id == cluster_id)
        if not include_deleted:
            query = query.where(Backup.status != BackupStatus.DELETED.value)
        result = await db.execute(query.order_by(Backup.created_at.desc()))
        return list(result.scalars().all())

    async def _completed(self, db: AsyncSession, cluster_id: str) -> list[Backup]:
        result = await db.execute(
            select(Backup).where(
                Backup.cluster_id == cluster_id, Backup.status == BackupStatus.COMPLETED.value
            )
        )
        return list(result.scalars().all())

    async def get_deletion_info(self, db: AsyncSession, backup: Backup) -> DeletionInfo:
        if backup.status == BackupStatus.DELETED.value:
            raise BackupRequestError("This backup is already deleted")
        completed = await self._completed(db, backup.cluster_id)
        fulls = [b for b in completed if b.backup_type == BackupType.FULL.value]
        return DeletionInfo(
            backup_id=backup.id,
            backup_type=backup.backup_type,
            backup_size_bytes=backup.size_bytes or 0,
            dependents=find_dependents(backup, completed),
            is_only_full=(
                backup.backup_type == BackupType.FULL.value
                and len(fulls) == 1
                and fulls[0].id == backup.id
            ),
        )

    async def delete_backup(self, db: AsyncSession, backup: Backup, confirm: bool = False) -> DeletionInfo:
        """Expire a backup in pgBackRest and mark it and its dependents deleted.

        Raises:
            BackupRequestError: If deletion is not possible.
            BackupConfirmationRequired: If dependents exist and confirm is False.
        """
        if backup.status in ACTIVE_BACKUP_STATES:
            raise BackupRequestError("A backup that is still running cannot be deleted")
        info = await self.get_deletion_info(db, backup)
        if info.is_only_full and info.dependents:
            raise BackupRequestError(
                "Cannot delete the only full backup while other backups depend on it. "
                "Create a new full backup first."
            )
        if info.requires_confirmation and not confirm:
            raise BackupConfirmationRequired(info)

        cluster = await self._load_cluster(db, backup.cluster_id)
        if backup.status == BackupStatus.COMPLETED.value and backup.pgbackrest_label:
            if cluster.status != ClusterStatus.RUNNING.value:
                raise BackupRequestError(
                    f"Cluster must be running to delete backups (status {cluster.status})"
                )
            leader = await self._leader(cluster)
            await self.pgbackrest.expire(leader, cluster.slug, backup.pgbackrest_label)

        for target in [backup, *info.dependents]:
            target.status = BackupStateMachine.transition(target.status, BackupStatus.DELETED)
        await db.flush()
        logger.info(
            f"Backup {backup.id} deleted with {len(info.dependents)} dependents "
            f"(cluster {cluster.slug})"
        )
        return info

    async def get_pitr_window(self, db: AsyncSession, cluster: Cluster) -> dict:
        return PitrTimelineResolver(await self._completed(db, cluster.id)).window()

    async def get_backup_metrics(self, db: AsyncSession, cluster: Cluster) -> dict:
        completed = await self._completed(db, cluster.id)
        total = sum(b.size_bytes or 0 for b in completed)
        window = PitrTimelineResolver(completed).window()
        created = sorted(as_utc(b.created_at) for b in completed if b.created_at)
        return {
            "total_size_bytes": total,
            "formatted_total_size": format_bytes(total),
            "backup_count": len(completed),
            "oldest_backup": created[0] if created else None,
            "newest_backup": created[-1] if created else None,
            "earliest_pitr_time": window["earliest"],
            "latest_pitr_time": window["latest"],
        }

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    async def execute_backup(self, backup_id: str) -> None:
        """Run a pending backup to completion. Failures land on the row."""
        async with self._session_factory() as db:
            backup = await db.get(Backup, backup_id)
            if backup is None or backup.status != BackupStatus.PENDING.value:
                logger.warning(f"Backup {backup_id} is not pending, skipping")
                return
            requested = backup.requested_backup_type
            retention = backup.retention_type
            cluster = await self._load_cluster(db, backup.cluster_id)

        try:
            await self.progress.update_backup_step(
                backup_id,
                BackupStep.PREPARING,
                status=BackupStatus.IN_PROGRESS.value,
                started_at=datetime.now(timezone.utc),
                s3_base_path=f"pgbackrest/{cluster.id}",
            )
            leader = await self._leader(cluster)
            stanza = cluster.slug

            await self.progress.update_backup_step(backup_id, BackupStep.BACKING_UP)
            backup_type = effective_backup_type(requested, retention)
            if backup_type != BackupType.FULL and not await self.pgbackrest.has_full_backup(leader, stanza):
                logger.info(f"No full backup for {stanza} yet, taking full instead of {backup_type.value}")
                backup_type = BackupType.FULL
            info = await self.pgbackrest.run_backup(
                leader,
                stanza,
                backup_type.value,
                timeout=self.config.backup.backup_timeout_minutes * 60,
            )

            # pgBackRest may have changed the type; what it recorded is authoritative
            actual = TYPE_ALIASES.get((info.type or "").lower(), BackupType.FULL)
            await self.progress.update_backup_step(
                backup_id,
                BackupStep.UPLOADING,
                backup_type=actual.value,
                pgbackrest_label=info.label,
                size_bytes=info.size_bytes or 0,
                wal_start_lsn=info.wal_start_lsn,
                wal_end_lsn=info.wal_stop_lsn,
            )

            await self.progress.update_backup_step(backup_id, BackupStep.VERIFYING)
            if not info.label:
                raise BackupError("pgBackRest recorded a backup without a label")
            problem = await self._verify(leader, stanza, info)
            if problem:
                logger.warning(f"Backup {backup_id} of {stanza} is not recoverable: {problem}")
            await self._complete(backup_id, info.start_time, info.stop_time, retention, problem)
        except Exception as e:
            logger.exception(f"Backup {backup_id} for cluster {cluster.slug} failed")
            await self._fail(backup_id, str(e))
            return

        logger.info(f"Backup {backup_id} completed ({actual.value}, label {info.label})")

    async def _verify(self, leader, stanza: str, info: BackupInfo) -> str | None:
        """Why the backup cannot be restored to a consistent point, if it cannot."""
        if not info.wal_start_lsn or not info.wal_stop_lsn:
            return "pgBackRest recorded no WAL range for the backup"
        if not await self.pgbackrest.check(leader, stanza):
            return "WAL archive check failed"
        return None

    async def _complete(
        self,
        backup_id: str,
        start_time: datetime | None,
        stop_time: datetime | None,
        retention: str,
        problem: str | None = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as db:
            backup = await db.get(Backup, backup_id)
            backup.status = BackupStateMachine.transition(backup.status, BackupStatus.COMPLETED)
            backup.earliest_recovery_time = start_time or backup.started_at
            backup.latest_recovery_time = stop_time or now
            backup.expires_at = compute_expiry(retention, now, self.config.backup)
            backup.current_step = BackupStep.COMPLETED.value
            backup.progress_percent = 100
            backup.completed_at = now
            if problem:
                backup.recoverable = False
                backup.error_message = f"Not recoverable: {problem}"
            await db.commit()

    async def _fail(self, backup_id: str, message: str) -> None:
        async with self._session_factory() as db:
            backup = await db.get(Backup, backup_id)
            if backup is None or not BackupStateMachine.can_transition(backup.status, BackupStatus.FAILED):
                return
            backup.status = BackupStatus.FAILED.value
            backup.current_step = BackupStep.FAILED.value
            backup.error_message = message[:4000]
            backup.completed_at = datetime.now(timezone.utc)
            await db.commit()

    # ------------------------------------------------------------------
    # Scheduled jobs
    # ------------------------------------------------------------------

    async def run_scheduled_backups(self, retention: RetentionType) -> int:
        """Create a backup of the given class for every running cluster."""
        if not self.storage.is_configured:
            logger.debug("Backup storage not configured, skipping scheduled backups")
            return 0
        created = 0
        async with self._session_factory() as db:
            result = await db.execute(
                select(Cluster).where(Cluster.status == ClusterStatus.RUNNING.value)
            )
            for cluster in result.scalars().all():
                try:
                    await self.create_backup(db, cluster, retention=retention)
                    created += 1
                except BackupRequestError as e:
                    logger.info(f"Skipping scheduled {retention.value} backup of {cluster.slug}: {e}")
            await self.dispatcher.commit(db)
        logger.info(f"Scheduled {retention.value} backups created for {created} clusters")
        return created

    async def cleanup_expired_backups(self, now: datetime | None = None) -> int:
        """Expire completed backups past their expiry and reclaim storage.

        A running cluster expires the set through pgBackRest so the WAL chain
        stays consistent. pgBackRest removes the set's dependents with it, so
        a base is held back while any dependent has not expired yet, and
        otherwise its dependents are expired in the same transaction. A
        deleted cluster's repository is removed once it holds no unexpired
        backups.
        """
        if not self.storage.is_configured:
            return 0
        now = now or datetime.now(timezone.utc)
        async with self._session_factory() as db:
            result = await db.execute(
                select(Backup)
                .options(selectinload(Backup.cluster).selectinload(Cluster.nodes))
                .where(
                    Backup.status == BackupStatus.COMPLETED.value,
                    Backup.expires_at.is_not(None),
                )
            )
            expired = sorted(
                (b for b in result.scalars().all() if as_utc(b.expires_at) <= now),
                key=_order_key,
            )
            completed = {}
            for cluster_id in {b.cluster_id for b in expired}:
                completed[cluster_id] = await self._completed(db, cluster_id)

        due = {b.id for b in expired}
        handled: set[str] = set()
        processed = 0
        for backup in expired:
            if backup.id in handled:
                continue
            dependents = find_dependents(backup, completed[backup.cluster_id])
            unexpired = [d.id for d in dependents if d.id not in due]
            if unexpired:
                logger.info(
                    f"Backup {backup.id} is past expiry but kept: "
                    f"backups {', '.join(unexpired)} still depend on it"
                )
                continue
            try:
                await self._reclaim(backup, dependents)
            except Exception as e:
                logger.error(f"Failed to clean up backup {backup.id}: {e}")
                continue
            async with self._session_factory() as db:
                for backup_id in [backup.id, *(d.id for d in dependents)]:
                    row = await db.get(Backup, backup_id)
                    row.status = BackupStateMachine.transition(row.status, BackupStatus.EXPIRED)
                    if backup_id != backup.id:
                        row.recoverable = False
                await db.commit()
            handled.update(d.id for d in dependents)
            processed += 1 + len(dependents)
            if dependents:
                logger.info(
                    f"Backup {backup.id} expired with its dependents "
                    f"{', '.join(d.id for d in dependents)}"
                )
            else:
                logger.info(f"Backup {backup.id} expired")
        logger.info(f"Expiry sweep processed {processed} of {len(expired)} backups")
        return processed

    async def _reclaim(self, backup: Backup, dependents: list[Backup]) -> None:
        cluster = backup.cluster
        if cluster.status == ClusterStatus.RUNNING.value and backup.pgbackrest_label:
            leader = await self._leader(cluster)
            await self.pgbackrest.expire(leader, cluster.slug, backup.pgbackrest_label)
            return
        if cluster.status == ClusterStatus.DELETED.value and backup.s3_base_path:
            going = [backup.id, *(d.id for d in dependents)]
            async with self._session_factory() as db:
                remaining = await db.execute(
                    select(Backup.id).where(
                        Backup.cluster_id == cluster.id,
                        Backup.id.not_in(going),
                        Backup.status == BackupStatus.COMPLETED.value,
                    )
                )
                if remaining.first() is None:
                    await self.storage.delete_prefix(backup.s3_base_path)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_cluster(self, db: AsyncSession, cluster_id: str) -> Cluster:
        result = await db.execute(
            select(Cluster).options(selectinload(Cluster.nodes)).where(Cluster.id == cluster_id)
        )
        return result.scalar_one()

    async def _leader(self, cluster: Cluster):
        leader = await self.patroni.find_leader(cluster.nodes)
        if leader is None:
            raise BackupError(f"No leader node found for cluster {cluster.slug}")
        return leader
