"""Restore workflows: in place on the source cluster or into a new cluster."""
import asyncio
import logging
from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.config.settings import Settings
from src.core.bootstrapper import NodeBootstrapper
from src.core.dispatcher import AsyncTaskDispatcher
from src.core.node_config import RecoverySource
from src.core.pitr import PitrTimelineResolver, as_utc
from src.core.progress import ProgressService, RestoreCancelledError
from src.core.provisioning import ProvisioningOrchestrator
from src.core.state_machine import (
    BackupStatus,
    ClusterStateMachine,
    ClusterStatus,
    ProvisioningStep,
    RestoreStateMachine,
    RestoreStatus,
    RestoreStep,
    RestoreType,
)
from src.db.models import Backup, Cluster, RestoreJob, VpsNode
from src.services.patroni import PatroniService
from src.services.pgbackrest import BackupError, PgBackRestService
from src.utils.credentials import generate_password, slugify
from src.utils.crypto import EncryptionService

logger = logging.getLogger(__name__)

ACTIVE_RESTORE_STATES = (RestoreStatus.PENDING.value, RestoreStatus.IN_PROGRESS.value)


class RestoreRequestError(ValueError):
    """A restore request was rejected."""
    pass


def default_restore_name(slug: str, today: date | None = None) -> str:
    today = today or datetime.now(timezone.utc).date()
    return f"{slug}-restored-{today:%Y%m%d}"


class RestoreOrchestrator:
    """Validates restore requests and drives restore jobs step by step."""

    def __init__(
        self,
        session_factory,
        provisioning: ProvisioningOrchestrator,
        bootstrapper: NodeBootstrapper,
        pgbackrest: PgBackRestService,
        patroni: PatroniService,
        encryption: EncryptionService,
        progress: ProgressService,
        task_dispatcher: AsyncTaskDispatcher,
        config: Settings,
    ):
        self._session_factory = session_factory
        self.provisioning = provisioning
        self.bootstrapper = bootstrapper
        self.pgbackrest = pgbackrest
        self.patroni = patroni
        self.encryption = encryption
        self.progress = progress
        self.dispatcher = task_dispatcher
        self.config = config

    @property
    def restore_timeout(self) -> float:
        return self.config.backup.restore_timeout_minutes * 60

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def create_restore(
        self,
        db: AsyncSession,
        cluster: Cluster,
        backup_id: str | None = None,
        target_time: datetime | None = None,
        create_new_cluster: bool = True,
        new_cluster_name: str | None = None,
    ) -> RestoreJob:
        """Validate a restore request, persist the job and schedule it.

        Raises:
            PitrValidationError: If target_time cannot be restored. Nothing
                is persisted in that case.
            RestoreRequestError: For every other rejected request.
        """
        if cluster.status in (ClusterStatus.DELETING.value, ClusterStatus.DELETED.value):
            raise RestoreRequestError("Cannot restore from a cluster that is being deleted")
        if not create_new_cluster and cluster.status != ClusterStatus.RUNNING.value:
            raise RestoreRequestError("Cluster must be running to restore in place")

        result = await db.execute(
            select(Backup).where(
                Backup.cluster_id == cluster.id, Backup.status == BackupStatus.COMPLETED.value
            )
        )
        completed = list(result.scalars().all())

        explicit = None
        if backup_id is not None:
            explicit = next((b for b in completed if b.id == backup_id), None)
            if explicit is None:
                raise RestoreRequestError("Backup not found or not completed")

        if target_time is not None:
            resolver = PitrTimelineResolver([explicit] if explicit else completed)
            backup = resolver.resolve(target_time)
            restore_type = RestoreType.PITR
        else:
            backup = explicit or self._latest(completed)
            if backup is None:
                raise RestoreRequestError("No completed backups to restore from")
            if not backup.recoverable:
                raise RestoreRequestError("Backup has an incomplete WAL chain")
            restore_type = RestoreType.FULL

        active = await db.execute(
            select(RestoreJob.id).where(
                RestoreJob.source_cluster_id == cluster.id,
                RestoreJob.status.in_(ACTIVE_RESTORE_STATES),
            )
        )
        if active.first() is not None:
            raise RestoreRequestError("A restore operation is already in progress for this cluster")

        target = None
        if create_new_cluster:
            name = (new_cluster_name or "").strip() or default_restore_name(cluster.slug)
            target = Cluster(
                owner_id=cluster.owner_id,
                name=name,
                slug=slugify(name),
                plan=cluster.plan,
                status=ClusterStatus.PENDING.value,
                postgres_version=cluster.postgres_version,
                node_count=cluster.node_count,
                node_size=cluster.node_size,
                region=cluster.region,
                node_regions=cluster.node_regions,
                postgres_password=self.encryption.encrypt(generate_password()),
                storage_gb=cluster.storage_gb,
                memory_mb=cluster.memory_mb,
                cpu_cores=cluster.cpu_cores,
            )
            db.add(target)
            await db.flush()

        job = RestoreJob(
            source_cluster_id=cluster.id,
            backup_id=backup.id,
            target_cluster_id=target.id if target else cluster.id,
            restore_type=restore_type.value,
            target_time=as_utc(target_time) if target_time else None,
            create_new_cluster=create_new_cluster,
            new_cluster_name=target.name if target else None,
            status=RestoreStatus.PENDING.value,
            progress_percent=0,
        )
        db.add(job)
        await db.flush()
        self.dispatcher.defer(db, "restore-execute", f"restore:{job.id}", self.execute_restore, job.id)
        logger.info(
            f"Restore job {job.id} created for cluster {cluster.slug} from backup {backup.id} "
            f"({restore_type.value}, new cluster: {create_new_cluster})"
        )
        return job

    @staticmethod
    def _latest(backups: list[Backup]) -> Backup | None:
        usable = [b for b in backups if b.recoverable]
        if not usable:
            return None
        return max(usable, key=lambda b: as_utc(b.completed_at or b.created_at))

    async def cancel_restore(self, db: AsyncSession, job: RestoreJob) -> RestoreJob:
        """Cancel a job. A running workflow stops at its next step boundary."""
        job.status = RestoreStateMachine.transition(job.status, RestoreStatus.CANCELLED)
        job.completed_at = datetime.now(timezone.utc)
        job.error_message = "Cancelled by user"
        await db.flush()
        logger.info(f"Restore job {job.id} cancelled")
        return job

    async def list_restores(self, db: AsyncSession, cluster_id: str) -> list[RestoreJob]:
        result = await db.execute(
            select(RestoreJob)
            .where(RestoreJob.source_cluster_id == cluster_id)
            .order_by(RestoreJob.created_at.desc())
        )
        return list(result.scalars().all())

    async def resume_interrupted(self, db: AsyncSession) -> int:
        """Defer restore jobs a previous process left unfinished.

        Pending jobs and in-place restores start again from the first step.
        A restore into a new cluster cannot be picked up halfway, so it is
        failed and its target cluster marked error.
        """
        result = await db.execute(select(RestoreJob).where(RestoreJob.status.in_(ACTIVE_RESTORE_STATES)))
        resumed = 0
        for job in result.scalars().all():
            if job.status == RestoreStatus.IN_PROGRESS.value and job.create_new_cluster:
                job.status = RestoreStateMachine.transition(job.status, RestoreStatus.FAILED)
                job.error_message = "Interrupted by a control plane restart"
                job.completed_at = datetime.now(timezone.utc)
                target = await db.get(Cluster, job.target_cluster_id) if job.target_cluster_id else None
                if target is not None and ClusterStateMachine.can_transition(target.status, ClusterStatus.ERROR):
                    target.status = ClusterStatus.ERROR.value
                    target.error_message = "Restore was interrupted by a control plane restart"
                logger.warning(f"Restore job {job.id} was interrupted and cannot be resumed")
                continue
            self.dispatcher.defer(
                db, "restore-execute", f"restore:{job.id}", self.execute_restore, job.id, resume=True
            )
            logger.info(f"Resuming {job.status} restore job {job.id}")
            resumed += 1
        return resumed

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    async def execute_restore(self, job_id: str, resume: bool = False) -> None:
        """Run a pending restore job. With resume, an interrupted in-place job runs again."""
        runnable = [RestoreStatus.PENDING.value]
        if resume:
            runnable.append(RestoreStatus.IN_PROGRESS.value)
        async with self._session_factory() as db:
            job = await db.get(RestoreJob, job_id)
            if job is None or job.status not in runnable:
                logger.info(f"Restore job {job_id} is not pending, skipping")
                return
            if job.status != RestoreStatus.IN_PROGRESS.value:
                job.status = RestoreStateMachine.transition(job.status, RestoreStatus.IN_PROGRESS)
            job.started_at = datetime.now(timezone.utc)
            await db.commit()
            new_cluster = job.create_new_cluster
            target_id = job.target_cluster_id

        try:
            if new_cluster:
                await self._restore_to_new_cluster(job_id)
            else:
                await self._restore_in_place(job_id)
        except RestoreCancelledError:
            logger.info(f"Restore job {job_id} stopped after cancellation")
            if new_cluster:
                await self.progress.mark_cluster_error(target_id, "Restore was cancelled")
            return
        except Exception as e:
            logger.exception(f"Restore job {job_id} failed")
            await self.progress.finish_restore(job_id, RestoreStatus.FAILED, str(e))
            if new_cluster:
                await self.progress.mark_cluster_error(target_id, f"Restore failed: {e}")
            return

        await self.progress.finish_restore(job_id, RestoreStatus.COMPLETED)
        logger.info(f"Restore job {job_id} completed")

    async def _restore_in_place(self, job_id: str) -> None:
        job = await self._load_job(job_id)
        cluster, backup = job.source_cluster, job.backup
        stanza = cluster.slug
        pitr = job.restore_type == RestoreType.PITR.value

        await self.progress.update_restore_step(job_id, RestoreStep.CREATING_CLUSTER)
        leader = await self.patroni.find_leader(cluster.nodes)
        if leader is None:
            raise BackupError(f"No leader node found for cluster {cluster.slug}")
        replicas = [n for n in cluster.nodes if n.id != leader.id]

        await self.progress.update_restore_step(job_id, RestoreStep.DOWNLOADING_BACKUP)
        await self._require_label(leader, stanza, backup.pgbackrest_label)

        await self.progress.update_restore_step(job_id, RestoreStep.EXTRACTING_BACKUP)
        await self.patroni.set_paused(leader, cluster.slug, True)
        try:
            await self.pgbackrest.restore(
                leader,
                stanza,
                label=backup.pgbackrest_label,
                target_time=job.target_time if pitr else None,
                timeout=self.restore_timeout,
            )

            if pitr:
                await self.progress.update_restore_step(job_id, RestoreStep.DOWNLOADING_WAL)
                await self.patroni.wait_for_recovery_end(leader, timeout=self.restore_timeout)

            await self.progress.update_restore_step(job_id, RestoreStep.CONFIGURING_RECOVERY)
        except (Exception, asyncio.CancelledError):
            await self._resume_failover(leader, cluster.slug)
            raise
        await self.patroni.set_paused(leader, cluster.slug, False)
        await self.patroni.apply_archive_settings(leader, stanza)

        await self.progress.update_restore_step(job_id, RestoreStep.STARTING_POSTGRES)
        await self.patroni.wait_for_recovery_end(leader, timeout=self.restore_timeout)
        for replica in replicas:
            await self.patroni.reinit(replica, cluster.slug)

        await self.progress.update_restore_step(job_id, RestoreStep.VERIFYING)
        elected = await self.bootstrapper.verify_roles(cluster.nodes)
        await self.provisioning.record_roles(cluster.id, elected.id)

    async def _restore_to_new_cluster(self, job_id: str) -> None:
        job = await self._load_job(job_id)
        source, backup = job.source_cluster, job.backup
        target_id = job.target_cluster_id
        pitr = job.restore_type == RestoreType.PITR.value

        await self.progress.update_restore_step(job_id, RestoreStep.CREATING_CLUSTER)
        ready = await self.provisioning.provision(target_id, stop_after=ProvisioningStep.WAITING_SSH)
        if not ready:
            raise BackupError("Creating servers for the restored cluster failed")
        target = await self._load_cluster(target_id)
        nodes = target.nodes
        first = nodes[0]

        # New nodes read the source repository until recovery finishes
        await self.progress.update_restore_step(job_id, RestoreStep.DOWNLOADING_BACKUP)
        for node in nodes:
            await self.pgbackrest.configure(node, source)

        await self.progress.update_restore_step(job_id, RestoreStep.EXTRACTING_BACKUP)
        recovery = RecoverySource(
            stanza=source.slug,
            backup_label=backup.pgbackrest_label,
            target_time=job.target_time if pitr else None,
        )
        await self.provisioning.run_step(target_id, ProvisioningStep.BUILDING_CONFIG, recovery=recovery)
        await self.progress.update_cluster_step(target_id, ProvisioningStep.STARTING_CONTAINERS)
        await self.bootstrapper.start_etcd(nodes)
        await self.bootstrapper.start_members([first])

        # WAL replay up to the target happens while the first member recovers
        if pitr:
            await self.progress.update_restore_step(job_id, RestoreStep.DOWNLOADING_WAL)
        await self.patroni.wait_until_leader(first, timeout=self.restore_timeout)

        await self.progress.update_restore_step(job_id, RestoreStep.CONFIGURING_RECOVERY)
        for node in nodes:
            await self.pgbackrest.configure(node, target)
        if self.config.s3_enabled:
            try:
                await self.patroni.apply_archive_settings(first, target.slug)
                await self.pgbackrest.create_stanza(first, target.slug)
            except Exception as e:
                logger.warning(f"Backups not initialised for restored cluster {target.slug}: {e}")

        await self.progress.update_restore_step(job_id, RestoreStep.STARTING_POSTGRES)
        if len(nodes) > 1:
            await self.bootstrapper.start_members(nodes[1:])

        await self.progress.update_restore_step(job_id, RestoreStep.VERIFYING)
        await self.provisioning.run_step(target_id, ProvisioningStep.ELECTING_LEADER)
        await self.provisioning.run_step(target_id, ProvisioningStep.CREATING_DNS)
        await self.progress.mark_cluster_running(target_id)

    async def _resume_failover(self, leader: VpsNode, scope: str) -> None:
        try:
            await self.patroni.set_paused(leader, scope, False)
        except Exception as e:
            logger.error(f"Could not take {scope} out of maintenance mode, failover stays disabled: {e}")

    async def _require_label(self, node: VpsNode, stanza: str, label: str | None) -> None:
        if not label:
            raise BackupError("Backup has no pgBackRest label")
        available = {b.label for b in await self.pgbackrest.info(node, stanza)}
        if label not in available:
            raise BackupError(f"Backup set {label} is not in the {stanza} repository")

    async def _load_job(self, job_id: str) -> RestoreJob:
        async with self._session_factory() as db:
            result = await db.execute(
                select(RestoreJob)
                .options(
                    selectinload(RestoreJob.source_cluster).selectinload(Cluster.nodes),
                    selectinload(RestoreJob.backup),
                )
                .where(RestoreJob.id == job_id)
            )
            return result.scalar_one()

    async def _load_cluster(self, cluster_id: str) -> Cluster:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Cluster).options(selectinload(Cluster.nodes)).where(Cluster.id == cluster_id)
            )
            return result.scalar_one()
