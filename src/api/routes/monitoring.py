"""Monitoring and operator endpoints."""
import asyncio
import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.api.dependencies.control_plane import get_cluster, get_control_plane, require_internal_key
from src.api.schemas import ApiResponse, HostKeyInvalidateResponse, ScrapeTarget
from src.core.control_plane import ControlPlane
from src.core.state_machine import ClusterStatus
from src.db.database import get_db
from src.db.models import Cluster
from src.services.metrics import PromQL, build_scrape_targets

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/internal/scrape-targets",
    response_model=list[ScrapeTarget],
    dependencies=[Depends(require_internal_key)],
)
async def get_scrape_targets(db: AsyncSession = Depends(get_db)):
    """Prometheus http_sd document. Returned unwrapped as Prometheus expects."""
    result = await db.execute(
        select(Cluster)
        .options(selectinload(Cluster.nodes))
        .where(Cluster.status == ClusterStatus.RUNNING.value)
    )
    return build_scrape_targets(list(result.scalars().all()))


@router.delete(
    "/internal/host-keys/{host}",
    response_model=ApiResponse[HostKeyInvalidateResponse],
    dependencies=[Depends(require_internal_key)],
)
async def invalidate_host_key(
    host: str,
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Forget a pinned host key so a rebuilt machine can be trusted again."""
    removed = await control_plane.host_keys.invalidate_host(host)
    return ApiResponse(
        data=HostKeyInvalidateResponse(host=host, removed=removed),
        message="Host key invalidated" if removed else "No pinned key for host",
    )


@router.get("/clusters/{cluster_id}/metrics", response_model=ApiResponse[dict])
async def get_cluster_metrics(
    cluster: Cluster = Depends(get_cluster),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Current resource and replication figures per node."""
    if cluster.status != ClusterStatus.RUNNING.value:
        raise HTTPException(status_code=409, detail="Metrics are available for running clusters only")
    queries = PromQL(cluster.slug)
    names = ["cpu_percent", "memory_percent", "disk_percent", "connections", "replication_lag"]
    try:
        results = await asyncio.gather(
            *(control_plane.prometheus.instant_query(getattr(queries, name)()) for name in names)
        )
    except Exception as e:
        logger.warning(f"Metrics query for cluster {cluster.slug} failed: {e}")
        raise HTTPException(status_code=502, detail="Metrics backend unavailable")
    return ApiResponse(
        data={
            name: [{"labels": s.labels, "value": s.value} for s in samples]
            for name, samples in zip(names, results)
        }
    )
