"""Integration tests for monitoring and internal endpoints."""
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from src.config import settings
from src.services.metrics import Sample

INTERNAL = {"X-Internal-Api-Key": "test-internal-key"}


class TestScrapeTargets:
    """Test Prometheus target discovery."""

    def test_targets_for_running_clusters(self, client: TestClient, seed):
        """Nodes of running clusters are listed unwrapped."""
        seed.cluster(slug="orders")
        seed.cluster(slug="pending", status="creating")

        response = client.get("/api/v1/internal/scrape-targets", headers=INTERNAL)

        assert response.status_code == 200
        targets = response.json()
        assert isinstance(targets, list)
        assert len(targets) == 3
        assert {t["labels"]["cluster_slug"] for t in targets} == {"orders"}
        assert targets[0]["targets"][0].endswith(":9100")

    def test_missing_key(self, client: TestClient):
        """Requests without the key are rejected."""
        assert client.get("/api/v1/internal/scrape-targets").status_code == 401

    def test_wrong_key(self, client: TestClient):
        """A wrong key is rejected."""
        response = client.get(
            "/api/v1/internal/scrape-targets", headers={"X-Internal-Api-Key": "guess"}
        )

        assert response.status_code == 401

    def test_key_not_configured(self, client: TestClient, monkeypatch):
        """Without a configured key the endpoint is unavailable."""
        monkeypatch.setattr(settings, "internal_api_key", None)

        response = client.get("/api/v1/internal/scrape-targets", headers=INTERNAL)

        assert response.status_code == 503


class TestHostKeys:
    """Test host key invalidation."""

    def test_invalidate(self, client: TestClient, control_plane):
        """Operators can forget a pinned key."""
        response = client.delete("/api/v1/internal/host-keys/203.0.113.7", headers=INTERNAL)

        assert response.status_code == 200
        assert response.json()["data"] == {"host": "203.0.113.7", "removed": True}
        control_plane.host_keys.invalidate_host.assert_awaited_once_with("203.0.113.7")

    def test_requires_key(self, client: TestClient, control_plane):
        """Invalidation is internal only."""
        assert client.delete("/api/v1/internal/host-keys/203.0.113.7").status_code == 401
        control_plane.host_keys.invalidate_host.assert_not_awaited()


class TestClusterMetrics:
    """Test per-cluster metrics."""

    def test_metrics(self, client: TestClient, seed, control_plane):
        """Every figure is queried for the cluster."""
        cluster = seed.cluster()
        control_plane.prometheus.instant_query = AsyncMock(
            return_value=[Sample(labels={"node_name": "orders-node-1"}, value=12.5)]
        )

        response = client.get(f"/api/v1/clusters/{cluster.id}/metrics")

        assert response.status_code == 200
        data = response.json()["data"]
        assert set(data) == {"cpu_percent", "memory_percent", "disk_percent", "connections", "replication_lag"}
        assert data["cpu_percent"][0]["value"] == 12.5
        queries = [c.args[0] for c in control_plane.prometheus.instant_query.await_args_list]
        assert all('cluster_slug="orders"' in q for q in queries)

    def test_backend_down(self, client: TestClient, seed, control_plane):
        """Backend failures are 502."""
        cluster = seed.cluster()
        control_plane.prometheus.instant_query = AsyncMock(side_effect=RuntimeError("down"))

        assert client.get(f"/api/v1/clusters/{cluster.id}/metrics").status_code == 502

    def test_not_running(self, client: TestClient, seed):
        """Only running clusters have metrics."""
        cluster = seed.cluster(status="creating")

        assert client.get(f"/api/v1/clusters/{cluster.id}/metrics").status_code == 409
