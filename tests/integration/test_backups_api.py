"""Integration tests for backup API endpoints."""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestCreateBackup:
    """Test manual backup requests."""

    def test_create_backup(self, client: TestClient, seed, task_dispatcher):
        """A manual backup starts pending with the normalized type."""
        cluster = seed.cluster()

        response = client.post(
            f"/api/v1/clusters/{cluster.id}/backups", json={"backup_type": "incremental"}
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == "pending"
        assert data["requested_backup_type"] == "incr"
        assert data["retention_type"] == "manual"
        assert task_dispatcher.defer.call_args.args[1] == "backup-execute"

    def test_create_without_body(self, client: TestClient, seed):
        """The type may be omitted entirely."""
        cluster = seed.cluster()

        response = client.post(f"/api/v1/clusters/{cluster.id}/backups")

        assert response.status_code == 201
        assert response.json()["data"]["requested_backup_type"] is None

    def test_invalid_type(self, client: TestClient, seed):
        """Unknown backup types are rejected."""
        cluster = seed.cluster()

        response = client.post(f"/api/v1/clusters/{cluster.id}/backups", json={"backup_type": "weekly"})

        assert response.status_code == 400

    def test_one_active_backup(self, client: TestClient, seed):
        """A second backup is refused while one runs."""
        cluster = seed.cluster()
        seed.backup(cluster.id, status="in_progress")

        response = client.post(f"/api/v1/clusters/{cluster.id}/backups")

        assert response.status_code == 400
        assert "already in progress" in response.json()["detail"]

    def test_cluster_not_running(self, client: TestClient, seed):
        """Only running clusters are backed up."""
        cluster = seed.cluster(status="creating")

        assert client.post(f"/api/v1/clusters/{cluster.id}/backups").status_code == 400


class TestReadBackups:
    """Test listing, PITR window and metrics."""

    def test_list_hides_deleted(self, client: TestClient, seed):
        """Deleted backups are only listed on request."""
        cluster = seed.cluster()
        seed.backup(cluster.id)
        seed.backup(cluster.id, status="deleted")

        listed = client.get(f"/api/v1/clusters/{cluster.id}/backups").json()
        everything = client.get(
            f"/api/v1/clusters/{cluster.id}/backups", params={"include_deleted": True}
        ).json()

        assert listed["total"] == 1
        assert everything["total"] == 2

    def test_get_backup_of_other_cluster(self, client: TestClient, seed):
        """Backups are only visible through their own cluster."""
        first = seed.cluster(slug="first")
        second = seed.cluster(slug="second")
        backup = seed.backup(first.id)

        assert client.get(f"/api/v1/clusters/{first.id}/backups/{backup.id}").status_code == 200
        assert client.get(f"/api/v1/clusters/{second.id}/backups/{backup.id}").status_code == 404

    def test_pitr_window(self, client: TestClient, seed):
        """The window spans the recoverable range of completed backups."""
        cluster = seed.cluster()
        seed.backup(
            cluster.id,
            earliest_recovery_time=T0,
            latest_recovery_time=T0 + timedelta(hours=2),
        )

        data = client.get(f"/api/v1/clusters/{cluster.id}/pitr-window").json()["data"]

        assert data["available"] is True
        assert data["earliest"].startswith("2026-03-01T12:00:00")
        assert data["latest"].startswith("2026-03-01T14:00:00")

    def test_pitr_window_empty(self, client: TestClient, seed):
        """Clusters without backups have no window."""
        cluster = seed.cluster()

        data = client.get(f"/api/v1/clusters/{cluster.id}/pitr-window").json()["data"]

        assert data == {"available": False, "earliest": None, "latest": None}

    def test_backup_metrics(self, client: TestClient, seed):
        """Metrics sum completed backups only."""
        cluster = seed.cluster()
        seed.backup(cluster.id, size_bytes=1024)
        seed.backup(cluster.id, backup_type="incr", size_bytes=1024)
        seed.backup(cluster.id, status="failed", size_bytes=4096)

        data = client.get(f"/api/v1/clusters/{cluster.id}/backup-metrics").json()["data"]

        assert data["backup_count"] == 2
        assert data["total_size_bytes"] == 2048
        assert data["formatted_total_size"] == "2.0 KB"


class TestDeleteBackup:
    """Test backup deletion."""

    def test_requires_confirmation(self, client: TestClient, seed, control_plane):
        """Deleting a full with dependents asks for confirmation first."""
        cluster = seed.cluster()
        seed.backup(cluster.id, pgbackrest_label="F1", started_at=T0)
        full = seed.backup(cluster.id, pgbackrest_label="F2", started_at=T0 + timedelta(days=1))
        seed.backup(
            cluster.id,
            backup_type="incr",
            pgbackrest_label="F2_I1",
            started_at=T0 + timedelta(days=1, hours=6),
            size_bytes=100,
        )
        control_plane.patroni.find_leader = AsyncMock(side_effect=lambda nodes: nodes[0])
        control_plane.pgbackrest.expire = AsyncMock()

        info = client.get(f"/api/v1/clusters/{cluster.id}/backups/{full.id}/deletion-info").json()["data"]
        refused = client.delete(f"/api/v1/clusters/{cluster.id}/backups/{full.id}")
        confirmed = client.delete(
            f"/api/v1/clusters/{cluster.id}/backups/{full.id}", params={"confirm": True}
        )

        assert info["total_count"] == 2
        assert info["requires_confirmation"] is True
        assert refused.status_code == 409
        assert refused.json()["detail"]["total_count"] == 2
        assert confirmed.status_code == 200
        assert confirmed.json()["message"] == "Deleted 2 backup(s)"
        control_plane.pgbackrest.expire.assert_awaited_once()
        assert control_plane.pgbackrest.expire.await_args.args[2] == "F2"

    def test_only_full_with_dependents(self, client: TestClient, seed):
        """The only full backup cannot go while others depend on it."""
        cluster = seed.cluster()
        full = seed.backup(cluster.id, pgbackrest_label="F1", started_at=T0)
        seed.backup(cluster.id, backup_type="diff", started_at=T0 + timedelta(hours=6))

        response = client.delete(
            f"/api/v1/clusters/{cluster.id}/backups/{full.id}", params={"confirm": True}
        )

        assert response.status_code == 400
        assert "only full backup" in response.json()["detail"]

    def test_failed_backup_deleted_locally(self, client: TestClient, seed, control_plane):
        """Failed backups have nothing to expire in the repository."""
        cluster = seed.cluster()
        failed = seed.backup(cluster.id, status="failed")
        control_plane.pgbackrest.expire = AsyncMock()

        response = client.delete(f"/api/v1/clusters/{cluster.id}/backups/{failed.id}")

        assert response.status_code == 200
        control_plane.pgbackrest.expire.assert_not_awaited()
