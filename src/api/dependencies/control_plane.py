"""Shared route dependencies."""
import secrets

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.config import settings
from src.core.control_plane import ControlPlane
from src.db.database import get_db
from src.db.models import Cluster


def get_control_plane(request: Request) -> ControlPlane:
    """Control plane built by the application lifespan."""
    control_plane = getattr(request.app.state, "control_plane", None)
    if control_plane is None:
        raise HTTPException(status_code=503, detail="Control plane not initialised")
    return control_plane


async def get_cluster(
    cluster_id: str,
    db: AsyncSession = Depends(get_db),
) -> Cluster:
    """Load a cluster with its nodes or fail with 404."""
    result = await db.execute(
        select(Cluster).options(selectinload(Cluster.nodes)).where(Cluster.id == cluster_id)
    )
    cluster = result.scalar_one_or_none()
    if not cluster:
        raise HTTPException(status_code=404, detail="Cluster not found")
    return cluster


async def require_internal_key(
    x_internal_api_key: str | None = Header(None),
) -> None:
    """Guard for endpoints consumed by infrastructure rather than users."""
    expected = settings.internal_api_key
    if not expected:
        raise HTTPException(status_code=503, detail="Internal API key not configured")
    if not x_internal_api_key or not secrets.compare_digest(x_internal_api_key, expected):
        raise HTTPException(status_code=401, detail="Invalid internal API key")
