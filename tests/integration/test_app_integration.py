"""Integration tests for full application."""
from fastapi.testclient import TestClient

from src.db.database import async_session


async def _resume(control_plane) -> int:
    async with async_session() as db:
        return await control_plane.resume_workflows(db)


class TestApplicationIntegration:
    """Test full application integration."""

    def test_health_check(self, client: TestClient):
        """Health endpoint reports the database and background machinery."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] is True
        assert data["dispatcher_running"] is True
        assert data["dispatcher_workers"] >= 1
        assert data["scheduler_running"] is False
        assert data["control_plane_ready"] is True

    def test_openapi_docs_available(self, client: TestClient):
        """OpenAPI docs are generated with every resource."""
        response = client.get("/openapi.json")

        assert response.status_code == 200
        schema = response.json()
        assert schema["info"]["title"] == "pgcluster"
        paths = schema["paths"]
        for path in (
            "/api/v1/clusters",
            "/api/v1/clusters/{cluster_id}/backups",
            "/api/v1/clusters/{cluster_id}/restores",
            "/api/v1/clusters/{cluster_id}/exports",
            "/api/v1/internal/scrape-targets",
        ):
            assert path in paths

    def test_unknown_route(self, client: TestClient):
        """Unknown paths are 404."""
        assert client.get("/api/v1/nodes").status_code == 404

    def test_resume_workflows(self, client: TestClient, seed, control_plane, task_dispatcher):
        """Unfinished clusters and backups are dispatched again and committed."""
        cluster = seed.cluster(status="creating", provisioning_step="waiting_ssh")
        seed.cluster(slug="billing")
        backup = seed.backup(cluster.id, status="pending", backup_type=None)

        assert client.portal.call(_resume, control_plane) == 2

        keys = [c.args[2] for c in task_dispatcher.defer.call_args_list]
        assert keys == [f"cluster:{cluster.id}", f"backup:{backup.id}"]
        task_dispatcher.commit.assert_awaited_once()
