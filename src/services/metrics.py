"""Prometheus integration: scrape-target discovery and PromQL queries."""
import logging
from dataclasses import dataclass

import httpx

from src.core.resilience import resilient
from src.db.models import Cluster

logger = logging.getLogger(__name__)

NODE_EXPORTER_PORT = 9100
POSTGRES_EXPORTER_PORT = 9187
PATRONI_PORT = 8008


def build_scrape_targets(clusters: list[Cluster]) -> list[dict]:
    """Prometheus http_sd document: one entry per node of each running cluster."""
    targets = []
    for cluster in clusters:
        if cluster.status != "running":
            continue
        for node in cluster.nodes:
            if not node.public_ip:
                continue
            targets.append(
                {
                    "targets": [
                        f"{node.public_ip}:{NODE_EXPORTER_PORT}",
                        f"{node.public_ip}:{POSTGRES_EXPORTER_PORT}",
                        f"{node.public_ip}:{PATRONI_PORT}",
                    ],
                    "labels": {
                        "cluster_id": cluster.id,
                        "cluster_slug": cluster.slug,
                        "node_name": node.name,
                        "node_role": node.role or "unknown",
                    },
                }
            )
    return targets


def escape_label(value: str | None) -> str:
    """Escape a PromQL label value for use inside double quotes."""
    if value is None:
        return ""
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class PromQL:
    """Per-cluster queries selected by the cluster_slug target label."""

    def __init__(self, cluster_slug: str):
        self.selector = f'cluster_slug="{escape_label(cluster_slug)}"'

    def up(self) -> str:
        return f'up{{job="customer-patroni",{self.selector}}}'

    def cpu_percent(self) -> str:
        return (
            "100 - (avg by (instance, node_name, node_role) "
            f'(rate(node_cpu_seconds_total{{mode="idle",{self.selector}}}[5m])) * 100)'
        )

    def memory_percent(self) -> str:
        return (
            f"(1 - (node_memory_MemAvailable_bytes{{{self.selector}}} / "
            f"node_memory_MemTotal_bytes{{{self.selector}}})) * 100"
        )

    def disk_percent(self) -> str:
        return (
            f'(1 - (node_filesystem_avail_bytes{{mountpoint="/",{self.selector}}} / '
            f'node_filesystem_size_bytes{{mountpoint="/",{self.selector}}})) * 100'
        )

    def connections(self) -> str:
        return f'pg_stat_database_numbackends{{{self.selector},datname="postgres"}}'

    def replication_lag(self) -> str:
        return f'pg_replication_lag_seconds{{{self.selector},node_role="replica"}}'

    def database_size(self) -> str:
        return f'pg_database_size_bytes{{{self.selector},datname="postgres"}}'


@dataclass
class Sample:
    labels: dict[str, str]
    value: float


class PrometheusClient:
    """Instant queries against the metrics backend."""

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    @resilient("prometheus")
    async def instant_query(self, promql: str) -> list[Sample]:
        client = await self._get_client()
        response = await client.get("/api/v1/query", params={"query": promql})
        response.raise_for_status()
        body = response.json()
        if body.get("status") != "success":
            logger.warning(f"Prometheus query failed: {body.get('error')}")
            return []
        samples = []
        for result in body.get("data", {}).get("result", []):
            value = result.get("value") or [None, "nan"]
            samples.append(Sample(labels=result.get("metric", {}), value=float(value[1])))
        return samples

    async def is_healthy(self) -> bool:
        client = await self._get_client()
        try:
            response = await client.get("/-/healthy")
        except httpx.RequestError:
            return False
        return response.status_code == 200
