"""Restore API endpoints."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.dependencies.control_plane import get_cluster, get_control_plane
from src.api.schemas import ApiListResponse, ApiResponse, RestoreCreate, RestoreResponse
from src.core.control_plane import ControlPlane
from src.core.pitr import PitrValidationError
from src.core.restore import RestoreRequestError
from src.core.state_machine import InvalidStateTransition
from src.db.database import get_db
from src.db.models import Cluster, RestoreJob

router = APIRouter()


@router.get("/clusters/{cluster_id}/restores", response_model=ApiListResponse[RestoreResponse])
async def list_restores(
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """List restore jobs whose source is this cluster."""
    jobs = await control_plane.restores.list_restores(db, cluster.id)
    return ApiListResponse(
        data=[RestoreResponse.model_validate(j) for j in jobs],
        total=len(jobs),
    )


@router.post(
    "/clusters/{cluster_id}/restores",
    response_model=ApiResponse[RestoreResponse],
    status_code=201,
)
async def create_restore(
    request: RestoreCreate,
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Request a full or point-in-time restore.

    An unreachable target time is answered with 422 and a structured reason
    (code, nearest restorable times, overall window).
    """
    try:
        job = await control_plane.restores.create_restore(
            db,
            cluster,
            backup_id=request.backup_id,
            target_time=request.target_time,
            create_new_cluster=request.create_new_cluster,
            new_cluster_name=request.new_cluster_name,
        )
    except PitrValidationError as e:
        raise HTTPException(status_code=422, detail=e.failure.to_dict())
    except RestoreRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await db.refresh(job)
    return ApiResponse(data=RestoreResponse.model_validate(job), message="Restore started")


@router.get("/restores/{job_id}", response_model=ApiResponse[RestoreResponse])
async def get_restore(job_id: str, db: AsyncSession = Depends(get_db)):
    """Get a restore job with its progress."""
    job = await db.get(RestoreJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Restore job not found")
    return ApiResponse(data=RestoreResponse.model_validate(job))


@router.post("/restores/{job_id}/cancel", response_model=ApiResponse[RestoreResponse])
async def cancel_restore(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Cancel a pending or running restore. A running job stops at its next step."""
    job = await db.get(RestoreJob, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Restore job not found")
    try:
        job = await control_plane.restores.cancel_restore(db, job)
    except InvalidStateTransition as e:
        raise HTTPException(status_code=409, detail=str(e))
    await db.refresh(job)
    return ApiResponse(data=RestoreResponse.model_validate(job), message="Restore cancelled")
