"""Export API endpoints."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.control_plane import get_cluster, get_control_plane
from src.api.schemas import ApiListResponse, ApiResponse, ExportResponse
from src.core.control_plane import ControlPlane
from src.core.exports import ExportRequestError
from src.db.database import get_db
from src.db.models import Cluster, Export

router = APIRouter()


async def _get_export(db: AsyncSession, cluster: Cluster, export_id: str) -> Export:
    result = await db.execute(
        select(Export).where(Export.id == export_id, Export.cluster_id == cluster.id)
    )
    export = result.scalar_one_or_none()
    if not export:
        raise HTTPException(status_code=404, detail="Export not found")
    return export


@router.get("/clusters/{cluster_id}/exports", response_model=ApiListResponse[ExportResponse])
async def list_exports(
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """List exports of a cluster, newest first."""
    exports = await control_plane.exports.list_exports(db, cluster.id)
    return ApiListResponse(
        data=[ExportResponse.model_validate(e) for e in exports],
        total=len(exports),
    )


@router.post(
    "/clusters/{cluster_id}/exports",
    response_model=ApiResponse[ExportResponse],
    status_code=201,
)
async def create_export(
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Start a pg_dump export of the cluster."""
    try:
        export = await control_plane.exports.create_export(db, cluster)
    except ExportRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await db.refresh(export)
    return ApiResponse(data=ExportResponse.model_validate(export), message="Export started")


@router.get("/clusters/{cluster_id}/exports/{export_id}", response_model=ApiResponse[ExportResponse])
async def get_export(
    export_id: str,
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
):
    """Get one export."""
    export = await _get_export(db, cluster, export_id)
    return ApiResponse(data=ExportResponse.model_validate(export))


@router.post(
    "/clusters/{cluster_id}/exports/{export_id}/refresh-url",
    response_model=ApiResponse[ExportResponse],
)
async def refresh_export_url(
    export_id: str,
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Issue a fresh download link for a completed export."""
    export = await _get_export(db, cluster, export_id)
    try:
        export = await control_plane.exports.refresh_download_url(db, export)
    except ExportRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await db.refresh(export)
    return ApiResponse(data=ExportResponse.model_validate(export))


@router.delete("/clusters/{cluster_id}/exports/{export_id}", response_model=ApiResponse[dict])
async def delete_export(
    export_id: str,
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Delete an export and its stored file."""
    export = await _get_export(db, cluster, export_id)
    try:
        await control_plane.exports.delete_export(db, export)
    except ExportRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ApiResponse(data={"id": export_id}, message="Export deleted")
