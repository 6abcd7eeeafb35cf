"""Tests for restore requests and workflows."""
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

from src.core.pitr import PitrErrorCode, PitrValidationError
from src.core.progress import ProgressService
from src.core.restore import RestoreOrchestrator, RestoreRequestError, default_restore_name
from src.db.models import Cluster, RestoreJob, VpsNode
from src.services.pgbackrest import BackupInfo

T0 = datetime(2026, 4, 1, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def provisioning(session_factory):
    """Provisioning stand-in that creates the target nodes like step 1 would."""
    provisioning = MagicMock()

    async def provision(cluster_id, recovery=None, stop_after=None):
        async with session_factory() as db:
            cluster = await db.get(Cluster, cluster_id)
            cluster.status = "creating"
            cluster.provisioning_step = "waiting_ssh"
            for i in range(cluster.node_count):
                db.add(
                    VpsNode(
                        cluster_id=cluster_id,
                        name=f"{cluster.slug}-node-{i + 1}",
                        provider_id=str(7000 + i),
                        public_ip=f"192.0.2.{i + 1}",
                        server_type=cluster.node_size,
                        region=cluster.region,
                        status="starting",
                    )
                )
            await db.commit()
        return True

    provisioning.provision = AsyncMock(side_effect=provision)
    provisioning.run_step = AsyncMock()
    provisioning.record_roles = AsyncMock()
    return provisioning


@pytest.fixture
def bootstrapper():
    bootstrapper = MagicMock()
    bootstrapper.start_etcd = AsyncMock()
    bootstrapper.start_members = AsyncMock()
    bootstrapper.verify_roles = AsyncMock(side_effect=lambda nodes: nodes[0])
    return bootstrapper


@pytest.fixture
def pgbackrest():
    service = MagicMock()
    service.info = AsyncMock(return_value=[BackupInfo(label="F1", type="full")])
    service.restore = AsyncMock()
    service.configure = AsyncMock()
    service.create_stanza = AsyncMock()
    return service


@pytest.fixture
def patroni():
    service = MagicMock()
    service.find_leader = AsyncMock(side_effect=lambda nodes: nodes[0])
    for name in ("set_paused", "wait_for_recovery_end", "apply_archive_settings", "reinit", "wait_until_leader"):
        setattr(service, name, AsyncMock())
    return service


@pytest.fixture
def orchestrator(
    session_factory, provisioning, bootstrapper, pgbackrest, patroni, encryption, task_dispatcher, test_settings
):
    return RestoreOrchestrator(
        session_factory,
        provisioning,
        bootstrapper,
        pgbackrest,
        patroni,
        encryption,
        ProgressService(session_factory),
        task_dispatcher,
        test_settings,
    )


@pytest.fixture
def covered_cluster(make_cluster, make_backup):
    """Running cluster with a backup covering [T0, T0+2h)."""

    async def _make(**fields):
        cluster = await make_cluster(**fields)
        backup = await make_backup(
            cluster.id,
            pgbackrest_label="F1",
            earliest_recovery_time=T0,
            latest_recovery_time=T0 + timedelta(hours=2),
            completed_at=T0 + timedelta(minutes=10),
        )
        return cluster, backup

    return _make


async def _job(session_factory, job_id) -> RestoreJob:
    async with session_factory() as db:
        return await db.get(RestoreJob, job_id)


class TestDefaultName:
    """Test generated names for restored clusters."""

    def test_name_includes_date(self):
        """The default name is slug, marker and date."""
        assert default_restore_name("orders", date(2026, 4, 2)) == "orders-restored-20260402"


class TestCreateRestore:
    """Test restore request validation."""

    @pytest.mark.asyncio
    async def test_latest_backup_new_cluster(self, orchestrator, covered_cluster, make_backup, db, task_dispatcher):
        """Without a backup id the latest completed backup is used."""
        cluster, _ = await covered_cluster()
        newer = await make_backup(cluster.id, pgbackrest_label="F2", completed_at=T0 + timedelta(days=1))

        job = await orchestrator.create_restore(db, cluster)

        assert job.backup_id == newer.id
        assert job.restore_type == "full"
        assert job.status == "pending"
        assert job.target_cluster_id != cluster.id
        target = await db.get(Cluster, job.target_cluster_id)
        assert target.status == "pending"
        assert target.name.startswith("orders-restored-")
        assert target.node_count == cluster.node_count
        assert target.postgres_password != cluster.postgres_password
        call = task_dispatcher.defer.call_args
        assert call.args[1] == "restore-execute"
        assert call.args[2] == f"restore:{job.id}"

    @pytest.mark.asyncio
    async def test_pitr_resolves_covering_backup(self, orchestrator, covered_cluster, db):
        """A target inside coverage becomes a PITR job on the covering backup."""
        cluster, backup = await covered_cluster()

        job = await orchestrator.create_restore(
            db, cluster, target_time=T0 + timedelta(hours=1), create_new_cluster=False
        )

        assert job.restore_type == "pitr"
        assert job.backup_id == backup.id
        assert job.target_cluster_id == cluster.id

    @pytest.mark.asyncio
    async def test_pitr_failure_persists_nothing(self, orchestrator, covered_cluster, db, task_dispatcher):
        """An unreachable target raises before anything is written."""
        cluster, _ = await covered_cluster()

        with pytest.raises(PitrValidationError) as exc_info:
            await orchestrator.create_restore(db, cluster, target_time=T0 + timedelta(hours=3))

        assert exc_info.value.failure.code == PitrErrorCode.TARGET_AFTER_LATEST
        assert (await db.execute(select(RestoreJob))).first() is None
        assert len((await db.execute(select(Cluster))).all()) == 1
        task_dispatcher.defer.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_backup(self, orchestrator, covered_cluster, make_backup, db):
        """A backup id that is not completed is rejected."""
        cluster, _ = await covered_cluster()
        failed = await make_backup(cluster.id, status="failed")

        with pytest.raises(RestoreRequestError, match="not found or not completed"):
            await orchestrator.create_restore(db, cluster, backup_id=failed.id)

    @pytest.mark.asyncio
    async def test_no_backups(self, orchestrator, make_cluster, db):
        """A cluster without backups cannot be restored."""
        cluster = await make_cluster()

        with pytest.raises(RestoreRequestError, match="No completed backups"):
            await orchestrator.create_restore(db, cluster)

    @pytest.mark.asyncio
    async def test_in_place_requires_running(self, orchestrator, covered_cluster, db):
        """In-place restores need a running cluster."""
        cluster, _ = await covered_cluster(status="error")

        with pytest.raises(RestoreRequestError, match="running"):
            await orchestrator.create_restore(db, cluster, create_new_cluster=False)

    @pytest.mark.asyncio
    async def test_deleting_source_rejected(self, orchestrator, covered_cluster, db):
        """A cluster being deleted cannot be a restore source."""
        cluster, _ = await covered_cluster(status="deleting")

        with pytest.raises(RestoreRequestError, match="deleted"):
            await orchestrator.create_restore(db, cluster)

    @pytest.mark.asyncio
    async def test_one_active_restore(self, orchestrator, covered_cluster, session_factory):
        """A second restore is refused while one is active."""
        cluster, _ = await covered_cluster()
        async with session_factory() as db:
            await orchestrator.create_restore(db, cluster, create_new_cluster=False)
            await db.commit()

        async with session_factory() as db:
            with pytest.raises(RestoreRequestError, match="already in progress"):
                await orchestrator.create_restore(db, cluster, create_new_cluster=False)

    @pytest.mark.asyncio
    async def test_cancel(self, orchestrator, covered_cluster, db):
        """Cancelling records who stopped the job."""
        cluster, _ = await covered_cluster()
        job = await orchestrator.create_restore(db, cluster, create_new_cluster=False)

        await orchestrator.cancel_restore(db, job)

        assert job.status == "cancelled"
        assert job.error_message == "Cancelled by user"
        assert job.completed_at is not None


class TestExecuteInPlace:
    """Test in-place restore workflow."""

    async def _create(self, orchestrator, session_factory, cluster, **kwargs):
        async with session_factory() as db:
            job = await orchestrator.create_restore(db, cluster, create_new_cluster=False, **kwargs)
            await db.commit()
            return job.id

    @pytest.mark.asyncio
    async def test_full_restore(self, orchestrator, covered_cluster, session_factory, pgbackrest, patroni, provisioning):
        """The leader restores the set, replicas reinitialise and roles are recorded."""
        cluster, _ = await covered_cluster()
        job_id = await self._create(orchestrator, session_factory, cluster)

        await orchestrator.execute_restore(job_id)

        job = await _job(session_factory, job_id)
        assert job.status == "completed"
        assert job.progress_percent == 100
        restore = pgbackrest.restore.await_args
        assert restore.kwargs["label"] == "F1"
        assert restore.kwargs["target_time"] is None
        assert patroni.reinit.await_count == 2
        assert [c.args[2] for c in patroni.set_paused.await_args_list] == [True, False]
        provisioning.record_roles.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pitr_restore_passes_target(self, orchestrator, covered_cluster, session_factory, pgbackrest):
        """A PITR job restores to its target time."""
        cluster, _ = await covered_cluster()
        target = T0 + timedelta(minutes=45)
        job_id = await self._create(orchestrator, session_factory, cluster, target_time=target)

        await orchestrator.execute_restore(job_id)

        restored_to = pgbackrest.restore.await_args.kwargs["target_time"]
        assert restored_to.replace(tzinfo=timezone.utc) == target
        job = await _job(session_factory, job_id)
        assert job.status == "completed"

    @pytest.mark.asyncio
    async def test_missing_set_fails(self, orchestrator, covered_cluster, session_factory, pgbackrest):
        """A label absent from the repository fails the job at that step."""
        pgbackrest.info.return_value = [BackupInfo(label="OTHER", type="full")]
        cluster, _ = await covered_cluster()
        job_id = await self._create(orchestrator, session_factory, cluster)

        await orchestrator.execute_restore(job_id)

        job = await _job(session_factory, job_id)
        assert job.status == "failed"
        assert job.current_step == "downloading_backup"
        assert "F1" in job.error_message
        pgbackrest.restore.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_mid_run(self, orchestrator, covered_cluster, session_factory, pgbackrest, patroni):
        """Cancellation during a step stops the workflow at the next boundary."""
        cluster, _ = await covered_cluster()
        job_id = await self._create(orchestrator, session_factory, cluster)

        async def cancel(*args, **kwargs):
            async with session_factory() as db:
                job = await db.get(RestoreJob, job_id)
                await orchestrator.cancel_restore(db, job)
                await db.commit()

        pgbackrest.restore.side_effect = cancel

        await orchestrator.execute_restore(job_id)

        job = await _job(session_factory, job_id)
        assert job.status == "cancelled"
        patroni.reinit.assert_not_called()
        assert [c.args[2] for c in patroni.set_paused.await_args_list] == [True, False]

    @pytest.mark.asyncio
    async def test_failed_restore_unpauses(self, orchestrator, covered_cluster, session_factory, pgbackrest, patroni):
        """A failing restore takes the cluster back out of maintenance mode."""
        pgbackrest.restore.side_effect = RuntimeError("repository unreachable")
        cluster, _ = await covered_cluster()
        job_id = await self._create(orchestrator, session_factory, cluster)

        await orchestrator.execute_restore(job_id)

        job = await _job(session_factory, job_id)
        assert job.status == "failed"
        assert "repository unreachable" in job.error_message
        assert [c.args[2] for c in patroni.set_paused.await_args_list] == [True, False]
        patroni.apply_archive_settings.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_pending_skipped(self, orchestrator, covered_cluster, session_factory, patroni):
        """A cancelled job never starts."""
        cluster, _ = await covered_cluster()
        job_id = await self._create(orchestrator, session_factory, cluster)
        async with session_factory() as db:
            job = await db.get(RestoreJob, job_id)
            job.status = "cancelled"
            await db.commit()

        await orchestrator.execute_restore(job_id)

        patroni.find_leader.assert_not_called()


class TestExecuteNewCluster:
    """Test restore into a new cluster."""

    async def _create(self, orchestrator, session_factory, cluster, **kwargs):
        async with session_factory() as db:
            job = await orchestrator.create_restore(db, cluster, **kwargs)
            await db.commit()
            return job.id, job.target_cluster_id

    @pytest.mark.asyncio
    async def test_new_cluster_restore(
        self, orchestrator, covered_cluster, session_factory, provisioning, bootstrapper, pgbackrest, patroni
    ):
        """The new cluster bootstraps from the source repository and ends up running."""
        cluster, _ = await covered_cluster()
        job_id, target_id = await self._create(orchestrator, session_factory, cluster)

        await orchestrator.execute_restore(job_id)

        job = await _job(session_factory, job_id)
        assert job.status == "completed"
        async with session_factory() as db:
            target = await db.get(Cluster, target_id)
        assert target.status == "running"

        provisioning.provision.assert_awaited_once()
        build = provisioning.run_step.await_args_list[0]
        recovery = build.kwargs["recovery"]
        assert recovery.stanza == "orders"
        assert recovery.backup_label == "F1"
        assert recovery.target_time is None
        steps = [c.args[1].value for c in provisioning.run_step.await_args_list]
        assert steps == ["building_config", "electing_leader", "creating_dns"]

        configured = [c.args[1].slug for c in pgbackrest.configure.await_args_list]
        assert configured[:3] == ["orders"] * 3
        assert configured[3:] == [target.slug] * 3
        assert len(bootstrapper.start_members.await_args_list[0].args[0]) == 1
        assert len(bootstrapper.start_members.await_args_list[1].args[0]) == 2
        pgbackrest.create_stanza.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_provisioning_failure_fails_job(
        self, orchestrator, covered_cluster, session_factory, provisioning
    ):
        """Failing to create servers fails the job and the target cluster."""
        provisioning.provision.side_effect = None
        provisioning.provision.return_value = False
        cluster, _ = await covered_cluster()
        job_id, target_id = await self._create(orchestrator, session_factory, cluster)

        await orchestrator.execute_restore(job_id)

        job = await _job(session_factory, job_id)
        assert job.status == "failed"
        assert job.current_step == "creating_cluster"
        async with session_factory() as db:
            target = await db.get(Cluster, target_id)
        assert target.status == "error"

    @pytest.mark.asyncio
    async def test_stanza_failure_is_not_fatal(
        self, orchestrator, covered_cluster, session_factory, pgbackrest
    ):
        """The restored cluster runs even when its own backups cannot be initialised."""
        pgbackrest.create_stanza.side_effect = RuntimeError("bucket unreachable")
        cluster, _ = await covered_cluster()
        job_id, _ = await self._create(orchestrator, session_factory, cluster)

        await orchestrator.execute_restore(job_id)

        job = await _job(session_factory, job_id)
        assert job.status == "completed"


class TestResumeInterrupted:
    """Test picking up restore jobs after a restart."""

    async def _job_row(self, session_factory, cluster, backup, **fields) -> str:
        async with session_factory() as db:
            job = RestoreJob(source_cluster_id=cluster.id, backup_id=backup.id, **fields)
            db.add(job)
            await db.commit()
            return job.id

    @pytest.mark.asyncio
    async def test_jobs_redispatched(self, orchestrator, covered_cluster, make_cluster, session_factory, task_dispatcher):
        """Pending and in-place jobs run again; a half-built new cluster is failed."""
        cluster, backup = await covered_cluster()
        target = await make_cluster(slug="orders-restored", status="creating", nodes=False)
        pending = await self._job_row(session_factory, cluster, backup, status="pending", target_cluster_id=target.id)
        in_place = await self._job_row(
            session_factory, cluster, backup, status="in_progress", create_new_cluster=False, target_cluster_id=cluster.id
        )
        other_target = await make_cluster(slug="orders-copy", status="creating", nodes=False)
        stranded = await self._job_row(
            session_factory, cluster, backup, status="in_progress", target_cluster_id=other_target.id
        )

        async with session_factory() as db:
            assert await orchestrator.resume_interrupted(db) == 2
            await db.commit()

        deferred = {c.args[2]: c.kwargs for c in task_dispatcher.defer.call_args_list}
        assert deferred == {f"restore:{pending}": {"resume": True}, f"restore:{in_place}": {"resume": True}}
        job = await _job(session_factory, stranded)
        assert job.status == "failed"
        assert "restart" in job.error_message
        async with session_factory() as db:
            assert (await db.get(Cluster, other_target.id)).status == "error"
            assert (await db.get(Cluster, target.id)).status == "creating"

    @pytest.mark.asyncio
    async def test_interrupted_in_place_runs_again(self, orchestrator, covered_cluster, session_factory, pgbackrest):
        """An in-progress job only runs again when resumed."""
        cluster, backup = await covered_cluster()
        job_id = await self._job_row(
            session_factory, cluster, backup, status="in_progress", create_new_cluster=False, target_cluster_id=cluster.id
        )

        await orchestrator.execute_restore(job_id)
        pgbackrest.restore.assert_not_called()

        await orchestrator.execute_restore(job_id, resume=True)

        job = await _job(session_factory, job_id)
        assert job.status == "completed"
        pgbackrest.restore.assert_awaited_once()
