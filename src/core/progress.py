"""Progress persistence for long running workflows.

Every update runs in its own short transaction so progress is visible to
readers while the workflow is still running. Progress never goes backwards
and terminal entities are never touched.
"""
import logging
from datetime import datetime, timezone

from src.core.state_machine import (
    BackupStateMachine,
    BackupStep,
    ClusterStateMachine,
    ClusterStatus,
    ProvisioningStep,
    RestoreStateMachine,
    RestoreStatus,
    RestoreStep,
)
from src.db.models import Backup, Cluster, RestoreJob

logger = logging.getLogger(__name__)

DELETION_STATES = {ClusterStatus.DELETING.value, ClusterStatus.DELETED.value}


class ClusterDeletingError(Exception):
    """The cluster was marked for deletion while a workflow was running."""

    def __init__(self, cluster_id: str):
        self.cluster_id = cluster_id
        super().__init__(f"Cluster {cluster_id} is being deleted")


class RestoreCancelledError(Exception):
    """The restore job was cancelled by an explicit request."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Restore job {job_id} was cancelled")


def step_entry_percent(step: ProvisioningStep) -> int:
    """Progress recorded when a step starts: share of the steps already done."""
    return round((step.number - 1) * 100 / len(ProvisioningStep))


class ProgressService:
    """Monotonic step and percent updates for clusters, backups and restores."""

    def __init__(self, session_factory):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    async def abort_if_deleting(self, cluster_id: str) -> None:
        async with self._session_factory() as db:
            cluster = await db.get(Cluster, cluster_id)
            if cluster is None or cluster.status in DELETION_STATES:
                raise ClusterDeletingError(cluster_id)

    async def update_cluster_step(self, cluster_id: str, step: ProvisioningStep) -> None:
        """Persist that step is about to run.

        Raises:
            ClusterDeletingError: If deletion was requested meanwhile.
        """
        async with self._session_factory() as db:
            cluster = await db.get(Cluster, cluster_id)
            if cluster is None or cluster.status in DELETION_STATES:
                raise ClusterDeletingError(cluster_id)
            current = ProvisioningStep.parse(cluster.provisioning_step)
            if current is not None and current.number > step.number:
                logger.warning(
                    f"Ignoring step regression for cluster {cluster.slug}: "
                    f"{current.value} -> {step.value}"
                )
                return
            cluster.provisioning_step = step.value
            cluster.provisioning_progress = max(
                cluster.provisioning_progress or 0, step_entry_percent(step)
            )
            await db.commit()
        logger.info(f"Cluster {cluster_id}: step {step.number}/{len(ProvisioningStep)} {step.value}")

    async def mark_cluster_running(self, cluster_id: str) -> None:
        async with self._session_factory() as db:
            cluster = await db.get(Cluster, cluster_id)
            if cluster is None or cluster.status in DELETION_STATES:
                raise ClusterDeletingError(cluster_id)
            cluster.status = ClusterStateMachine.transition(cluster.status, ClusterStatus.RUNNING)
            cluster.provisioning_progress = 100
            cluster.error_message = None
            await db.commit()

    async def mark_cluster_error(self, cluster_id: str, message: str) -> None:
        """Record a failed step. The step itself is left in place for resumption."""
        async with self._session_factory() as db:
            cluster = await db.get(Cluster, cluster_id)
            if cluster is None:
                return
            if cluster.status in DELETION_STATES:
                logger.info(f"Cluster {cluster.slug} is being deleted, not recording error")
                return
            if ClusterStateMachine.can_transition(cluster.status, ClusterStatus.ERROR):
                cluster.status = ClusterStatus.ERROR.value
            cluster.error_message = message[:4000]
            await db.commit()

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    async def update_backup_step(self, backup_id: str, step: BackupStep, **fields) -> bool:
        """Advance a running backup. Returns False if the backup is already terminal."""
        async with self._session_factory() as db:
            backup = await db.get(Backup, backup_id)
            if backup is None or BackupStateMachine.is_terminal(backup.status):
                return False
            if step.percent < (backup.progress_percent or 0):
                logger.warning(f"Ignoring progress regression for backup {backup_id}")
            else:
                backup.current_step = step.value
                backup.progress_percent = step.percent
            for name, value in fields.items():
                setattr(backup, name, value)
            await db.commit()
        return True

    # ------------------------------------------------------------------
    # Restores
    # ------------------------------------------------------------------

    async def update_restore_step(self, job_id: str, step: RestoreStep, **fields) -> None:
        """Advance a restore job, checking for cancellation at the boundary.

        Raises:
            RestoreCancelledError: If the job was cancelled.
        """
        async with self._session_factory() as db:
            job = await db.get(RestoreJob, job_id)
            if job is None or job.status == RestoreStatus.CANCELLED.value:
                raise RestoreCancelledError(job_id)
            if RestoreStateMachine.is_terminal(job.status):
                return
            if step.percent >= (job.progress_percent or 0):
                job.current_step = step.value
                job.progress_percent = step.percent
            for name, value in fields.items():
                setattr(job, name, value)
            await db.commit()
        logger.info(f"Restore {job_id}: {step.value}")

    async def finish_restore(self, job_id: str, status: RestoreStatus, message: str | None = None) -> None:
        async with self._session_factory() as db:
            job = await db.get(RestoreJob, job_id)
            if job is None or not RestoreStateMachine.can_transition(job.status, status):
                return
            job.status = status.value
            job.completed_at = datetime.now(timezone.utc)
            if status == RestoreStatus.COMPLETED:
                job.progress_percent = 100
            if message:
                job.error_message = message[:4000]
            await db.commit()
