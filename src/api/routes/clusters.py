"""Cluster management API endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.api.dependencies.control_plane import get_cluster, get_control_plane
from src.api.schemas import (
    ApiListResponse,
    ApiResponse,
    ClusterCreate,
    ClusterCredentialsResponse,
    ClusterResponse,
)
from src.core.control_plane import ControlPlane
from src.core.dispatcher import WorkflowAlreadyActiveError
from src.core.provisioning import ClusterRequestError
from src.core.state_machine import ClusterStatus, InvalidStateTransition
from src.db.database import get_db
from src.db.models import Cluster

router = APIRouter()


@router.get("/clusters", response_model=ApiListResponse[ClusterResponse])
async def list_clusters(
    status: str | None = Query(None, description="Filter by status"),
    include_deleted: bool = Query(False, description="Include deleted clusters"),
    db: AsyncSession = Depends(get_db),
):
    """List clusters, newest first."""
    query = select(Cluster).options(selectinload(Cluster.nodes))
    if status:
        query = query.where(Cluster.status == status)
    elif not include_deleted:
        query = query.where(Cluster.status != ClusterStatus.DELETED.value)
    result = await db.execute(query.order_by(Cluster.created_at.desc()))
    clusters = result.scalars().all()
    return ApiListResponse(
        data=[ClusterResponse.from_cluster(c) for c in clusters],
        total=len(clusters),
    )


@router.post("/clusters", response_model=ApiResponse[ClusterResponse], status_code=201)
async def create_cluster(
    request: ClusterCreate,
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Request a new cluster. Provisioning starts once the request is committed."""
    try:
        cluster = await control_plane.provisioning.create_cluster(
            db,
            name=request.name,
            node_count=request.node_count,
            node_size=request.node_size,
            regions=request.regions,
            postgres_version=request.postgres_version,
            plan=request.plan,
        )
    except ClusterRequestError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await db.refresh(cluster)
    return ApiResponse(
        data=ClusterResponse.from_cluster(cluster, include_nodes=False),
        message="Cluster creation started",
    )


@router.get("/clusters/{cluster_id}", response_model=ApiResponse[ClusterResponse])
async def get_cluster_detail(cluster: Cluster = Depends(get_cluster)):
    """Get cluster details including nodes and provisioning progress."""
    return ApiResponse(data=ClusterResponse.from_cluster(cluster))


@router.get(
    "/clusters/{cluster_id}/credentials",
    response_model=ApiResponse[ClusterCredentialsResponse],
)
async def get_cluster_credentials(
    cluster: Cluster = Depends(get_cluster),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Superuser connection details."""
    if cluster.status != ClusterStatus.RUNNING.value or not cluster.postgres_password:
        raise HTTPException(status_code=409, detail="Credentials are available once the cluster is running")
    password = control_plane.encryption.decrypt(cluster.postgres_password)
    connection_string = None
    if cluster.hostname:
        connection_string = f"postgresql://postgres@{cluster.hostname}:{cluster.port}/postgres?sslmode=prefer"
    return ApiResponse(
        data=ClusterCredentialsResponse(
            hostname=cluster.hostname,
            port=cluster.port,
            password=password,
            connection_string=connection_string,
        )
    )


@router.delete("/clusters/{cluster_id}", response_model=ApiResponse[ClusterResponse])
async def delete_cluster(
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Request teardown. Allowed from any status except deleted."""
    try:
        cluster = await control_plane.provisioning.request_deletion(db, cluster)
    except ClusterRequestError as e:
        raise HTTPException(status_code=409, detail=str(e))
    await db.refresh(cluster, ["status", "updated_at"])
    return ApiResponse(
        data=ClusterResponse.from_cluster(cluster),
        message="Cluster deletion started",
    )


@router.post("/clusters/{cluster_id}/retry", response_model=ApiResponse[ClusterResponse])
async def retry_cluster(
    cluster: Cluster = Depends(get_cluster),
    db: AsyncSession = Depends(get_db),
    control_plane: ControlPlane = Depends(get_control_plane),
):
    """Resume provisioning of a failed or stranded cluster from its last step."""
    try:
        cluster = await control_plane.provisioning.retry(db, cluster)
    except (ClusterRequestError, InvalidStateTransition, WorkflowAlreadyActiveError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    return ApiResponse(
        data=ClusterResponse.from_cluster(cluster),
        message="Provisioning resumed",
    )
