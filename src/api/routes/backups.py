"""Backup API endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.control_plane import get_cluster, get_control_plane
from src.api.schemas import (
    ApiListResponse,
    ApiResponse,
    BackupCreate,
    BackupDeletionInfoResponse,
    BackupMetricsResponse,
    BackupResponse,
    PitrWindowResponse,
)
from src.core.backups import BackupConfirmationRequired, BackupRequestError
from src.core.control_plane import ControlPlane
from src.core.state_machine import InvalidStateTransition
from src.db.database import get_db
from src.db.models import Backup, Cluster
from src.services.pgbackrest import BackupError

router = APIRouter()


async def _get_backup(db: AsyncSession, cluster: Cluster, backup_id: str) -> Backup:
    result = await db.execute(
        select(Backup).where(Backup.id == backup_id, Backup.cluster_id == cluster.id)
    )
    backup = result.scalar_one_or_none()
    if not backup:
        raise HTTPException(status_code=404, detail="Backup not found")
    return backup


@router.get("/clusters/{cluster_id}/backups", response_model=ApiListResponse[BackupResponse])
async def list_backups(
    include_deleted: bool = Query(False, description="Include deleted backups"),
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """List backups of a cluster, newest first."""
    backups = await control_plane.backups.list_backups(db, cluster.id, include_deleted=include_deleted)
    return ApiListResponse(
        data=[BackupResponse.model_validate(b) for b in backups],
        total=len(backups),
    )


@router.post(
    "/clusters/{cluster_id}/backups",
    response_model=ApiResponse[BackupResponse],
    status_code=201,
)
async def create_backup(
    request: BackupCreate | None = None,
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Request a manual backup."""
    try:
        backup = await control_plane.backups.create_backup(
            db, cluster, requested_type=request.backup_type if request else None
        )
    except BackupRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await db.refresh(backup)
    return ApiResponse(data=BackupResponse.model_validate(backup), message="Backup started")


@router.get(
    "/clusters/{cluster_id}/backups/{backup_id}",
    response_model=ApiResponse[BackupResponse],
)
async def get_backup(
    backup_id: str,
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
):
    """Get one backup with its progress."""
    backup = await _get_backup(db, cluster, backup_id)
    return ApiResponse(data=BackupResponse.model_validate(backup))


@router.get(
    "/clusters/{cluster_id}/backups/{backup_id}/deletion-info",
    response_model=ApiResponse[BackupDeletionInfoResponse],
)
async def get_deletion_info(
    backup_id: str,
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Preview which backups a deletion would remove."""
    backup = await _get_backup(db, cluster, backup_id)
    try:
        info = await control_plane.backups.get_deletion_info(db, backup)
    except BackupRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ApiResponse(data=BackupDeletionInfoResponse(**info.to_dict()))


@router.delete(
    "/clusters/{cluster_id}/backups/{backup_id}",
    response_model=ApiResponse[BackupDeletionInfoResponse],
)
async def delete_backup(
    backup_id: str,
    confirm: bool = Query(False, description="Confirm deletion of dependent backups"),
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Delete a backup and, once confirmed, the backups that depend on it."""
    backup = await _get_backup(db, cluster, backup_id)
    try:
        info = await control_plane.backups.delete_backup(db, backup, confirm=confirm)
    except BackupConfirmationRequired as e:
        raise HTTPException(status_code=409, detail=e.info.to_dict())
    except (BackupRequestError, InvalidStateTransition) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BackupError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return ApiResponse(
        data=BackupDeletionInfoResponse(**info.to_dict()),
        message=f"Deleted {info.total_count} backup(s)",
    )


@router.get(
    "/clusters/{cluster_id}/pitr-window",
    response_model=ApiResponse[PitrWindowResponse],
)
async def get_pitr_window(
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Earliest and latest restorable instants across completed backups."""
    window = await control_plane.backups.get_pitr_window(db, cluster)
    return ApiResponse(data=PitrWindowResponse(**window))


@router.get(
    "/clusters/{cluster_id}/backup-metrics",
    response_model=ApiResponse[BackupMetricsResponse],
)
async def get_backup_metrics(
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Storage used by completed backups and the restorable window."""
    metrics = await control_plane.backups.get_backup_metrics(db, cluster)
    return ApiResponse(data=BackupMetricsResponse(**metrics))
