"""Tests for workflow progress persistence."""
import pytest

from src.core.progress import (
    ClusterDeletingError,
    ProgressService,
    RestoreCancelledError,
    step_entry_percent,
)
from src.core.state_machine import BackupStep, ProvisioningStep, RestoreStatus, RestoreStep
from src.db.models import Backup, Cluster, RestoreJob


@pytest.fixture
def progress(session_factory):
    return ProgressService(session_factory)


async def _reload(session_factory, model, entity_id):
    async with session_factory() as db:
        return await db.get(model, entity_id)


class TestClusterProgress:
    """Test cluster step updates."""

    def test_entry_percent(self):
        """A step records the share of steps completed before it."""
        assert step_entry_percent(ProvisioningStep.CREATING_SERVERS) == 0
        assert step_entry_percent(ProvisioningStep.BUILDING_CONFIG) == 33
        assert step_entry_percent(ProvisioningStep.CREATING_DNS) == 83

    @pytest.mark.asyncio
    async def test_update_step_persists(self, progress, make_cluster, session_factory):
        """The step about to run is written with its entry percent."""
        cluster = await make_cluster(status="creating")

        await progress.update_cluster_step(cluster.id, ProvisioningStep.BUILDING_CONFIG)

        row = await _reload(session_factory, Cluster, cluster.id)
        assert row.provisioning_step == "building_config"
        assert row.provisioning_progress == 33

    @pytest.mark.asyncio
    async def test_step_regression_ignored(self, progress, make_cluster, session_factory):
        """An earlier step never overwrites a later one."""
        cluster = await make_cluster(status="creating", provisioning_step="electing_leader")

        await progress.update_cluster_step(cluster.id, ProvisioningStep.WAITING_SSH)

        row = await _reload(session_factory, Cluster, cluster.id)
        assert row.provisioning_step == "electing_leader"

    @pytest.mark.asyncio
    async def test_update_step_aborts_when_deleting(self, progress, make_cluster):
        """A deletion request stops the workflow at the next boundary."""
        cluster = await make_cluster(status="deleting")

        with pytest.raises(ClusterDeletingError):
            await progress.update_cluster_step(cluster.id, ProvisioningStep.CREATING_DNS)

    @pytest.mark.asyncio
    async def test_mark_running_sets_full_progress(self, progress, make_cluster, session_factory):
        """A running cluster is at 100 percent with no error."""
        cluster = await make_cluster(status="creating", error_message="old")

        await progress.mark_cluster_running(cluster.id)

        row = await _reload(session_factory, Cluster, cluster.id)
        assert row.status == "running"
        assert row.provisioning_progress == 100
        assert row.error_message is None

    @pytest.mark.asyncio
    async def test_mark_error_keeps_step(self, progress, make_cluster, session_factory):
        """The failed step stays recorded for resumption."""
        cluster = await make_cluster(status="creating", provisioning_step="waiting_ssh")

        await progress.mark_cluster_error(cluster.id, "ssh timed out")

        row = await _reload(session_factory, Cluster, cluster.id)
        assert row.status == "error"
        assert row.provisioning_step == "waiting_ssh"
        assert row.error_message == "ssh timed out"

    @pytest.mark.asyncio
    async def test_mark_error_ignored_while_deleting(self, progress, make_cluster, session_factory):
        """A failure during deletion does not resurrect the cluster."""
        cluster = await make_cluster(status="deleting")

        await progress.mark_cluster_error(cluster.id, "boom")

        row = await _reload(session_factory, Cluster, cluster.id)
        assert row.status == "deleting"
        assert row.error_message is None


class TestBackupProgress:
    """Test backup step updates."""

    @pytest.mark.asyncio
    async def test_percent_is_monotonic(self, progress, make_cluster, make_backup, session_factory):
        """A lower step percent is ignored, extra fields still apply."""
        cluster = await make_cluster()
        backup = await make_backup(cluster.id, status="in_progress")

        assert await progress.update_backup_step(backup.id, BackupStep.UPLOADING) is True
        assert await progress.update_backup_step(backup.id, BackupStep.PREPARING, size_bytes=42) is True

        row = await _reload(session_factory, Backup, backup.id)
        assert row.current_step == "uploading"
        assert row.progress_percent == 70
        assert row.size_bytes == 42

    @pytest.mark.asyncio
    async def test_terminal_backup_untouched(self, progress, make_cluster, make_backup, session_factory):
        """Completed backups are not updated."""
        cluster = await make_cluster()
        backup = await make_backup(cluster.id, status="completed", progress_percent=100)

        assert await progress.update_backup_step(backup.id, BackupStep.PREPARING) is False

        row = await _reload(session_factory, Backup, backup.id)
        assert row.current_step == "completed"


class TestRestoreProgress:
    """Test restore step updates and cancellation checks."""

    async def _job(self, session_factory, make_cluster, make_backup, status="in_progress"):
        cluster = await make_cluster()
        backup = await make_backup(cluster.id)
        async with session_factory() as db:
            job = RestoreJob(source_cluster_id=cluster.id, backup_id=backup.id, status=status)
            db.add(job)
            await db.commit()
            return job.id

    @pytest.mark.asyncio
    async def test_step_advances(self, progress, session_factory, make_cluster, make_backup):
        """Each step records its percent."""
        job_id = await self._job(session_factory, make_cluster, make_backup)

        await progress.update_restore_step(job_id, RestoreStep.EXTRACTING_BACKUP)

        row = await _reload(session_factory, RestoreJob, job_id)
        assert row.current_step == "extracting_backup"
        assert row.progress_percent == RestoreStep.EXTRACTING_BACKUP.percent

    @pytest.mark.asyncio
    async def test_cancelled_job_raises(self, progress, session_factory, make_cluster, make_backup):
        """A cancelled job stops at the next step boundary."""
        job_id = await self._job(session_factory, make_cluster, make_backup, status="cancelled")

        with pytest.raises(RestoreCancelledError):
            await progress.update_restore_step(job_id, RestoreStep.VERIFYING)

    @pytest.mark.asyncio
    async def test_finish_completed(self, progress, session_factory, make_cluster, make_backup):
        """Completion sets 100 percent and a completion time."""
        job_id = await self._job(session_factory, make_cluster, make_backup)

        await progress.finish_restore(job_id, RestoreStatus.COMPLETED)

        row = await _reload(session_factory, RestoreJob, job_id)
        assert row.status == "completed"
        assert row.progress_percent == 100
        assert row.completed_at is not None

    @pytest.mark.asyncio
    async def test_finish_does_not_override_cancel(self, progress, session_factory, make_cluster, make_backup):
        """A cancelled job is never marked failed afterwards."""
        job_id = await self._job(session_factory, make_cluster, make_backup, status="cancelled")

        await progress.finish_restore(job_id, RestoreStatus.FAILED, "late failure")

        row = await _reload(session_factory, RestoreJob, job_id)
        assert row.status == "cancelled"
        assert row.error_message is None
