"""Pydantic schemas for API request/response validation."""
from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")


# ============== Cluster Schemas ==============


class ClusterCreate(BaseModel):
    """Schema for requesting a new cluster.

    Example:
        ```json
        {
            "name": "orders-db",
            "node_count": 3,
            "node_size": "cx33",
            "regions": ["fsn1", "nbg1", "hel1"]
        }
        ```
    """

    name: str = Field(..., min_length=1, max_length=100, examples=["orders-db"])
    node_count: int = Field(3, ge=1, description="Number of machines, odd counts recommended")
    node_size: str | None = Field(None, description="Provider machine type", examples=["cx23", "cx33"])
    regions: list[str] | None = Field(
        None,
        description="One region for every node, or a single region for all of them",
        examples=[["fsn1"], ["fsn1", "nbg1", "hel1"]],
    )
    postgres_version: str | None = Field(None, examples=["16"])
    plan: str = "dedicated"

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Name must not be blank")
        return v


class NodeResponse(BaseModel):
    """Schema for a cluster member."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    provider_id: str | None
    public_ip: str | None
    private_ip: str | None
    server_type: str
    region: str
    status: str
    role: str


class ClusterResponse(BaseModel):
    """Schema for cluster response. Credentials are never included."""

    id: str
    name: str
    slug: str
    plan: str
    status: str
    postgres_version: str
    node_count: int
    node_size: str
    region: str
    regions: list[str]
    hostname: str | None
    port: int
    storage_gb: int | None
    memory_mb: int | None
    cpu_cores: int | None
    provisioning_step: str | None
    provisioning_progress: int
    error_message: str | None
    nodes: list[NodeResponse] = []
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_cluster(cls, cluster, include_nodes: bool = True) -> "ClusterResponse":
        """Create response from Cluster model."""
        return cls(
            id=cluster.id,
            name=cluster.name,
            slug=cluster.slug,
            plan=cluster.plan,
            status=cluster.status,
            postgres_version=cluster.postgres_version,
            node_count=cluster.node_count,
            node_size=cluster.node_size,
            region=cluster.region,
            regions=cluster.regions,
            hostname=cluster.hostname,
            port=cluster.port,
            storage_gb=cluster.storage_gb,
            memory_mb=cluster.memory_mb,
            cpu_cores=cluster.cpu_cores,
            provisioning_step=cluster.provisioning_step,
            provisioning_progress=cluster.provisioning_progress,
            error_message=cluster.error_message,
            nodes=[NodeResponse.model_validate(n) for n in cluster.nodes] if include_nodes else [],
            created_at=cluster.created_at,
            updated_at=cluster.updated_at,
        )


class ClusterCredentialsResponse(BaseModel):
    """Connection details for the cluster superuser."""

    hostname: str | None
    port: int
    username: str = "postgres"
    password: str
    connection_string: str | None


# ============== Backup Schemas ==============


class BackupCreate(BaseModel):
    """Schema for requesting a manual backup."""

    backup_type: str | None = Field(
        None,
        description="full, diff/differential or incr/incremental; omitted means automatic",
        examples=["full", "incr"],
    )


class BackupResponse(BaseModel):
    """Schema for backup response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    cluster_id: str
    status: str
    trigger: str
    backup_type: str | None
    requested_backup_type: str | None
    retention_type: str
    expires_at: datetime | None
    pgbackrest_label: str | None
    size_bytes: int | None
    wal_start_lsn: str | None
    wal_end_lsn: str | None
    earliest_recovery_time: datetime | None
    latest_recovery_time: datetime | None
    recoverable: bool
    current_step: str
    progress_percent: int
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime


class DependentBackup(BaseModel):
    id: str
    backup_type: str | None
    size_bytes: int | None


class BackupDeletionInfoResponse(BaseModel):
    """What deleting a backup would remove."""

    backup_id: str
    backup_type: str | None
    dependent_backups: list[DependentBackup]
    total_count: int
    total_size_bytes: int
    total_size_formatted: str
    requires_confirmation: bool
    warning: str | None


class PitrWindowResponse(BaseModel):
    available: bool
    earliest: datetime | None
    latest: datetime | None


class BackupMetricsResponse(BaseModel):
    total_size_bytes: int
    formatted_total_size: str
    backup_count: int
    oldest_backup: datetime | None
    newest_backup: datetime | None
    earliest_pitr_time: datetime | None
    latest_pitr_time: datetime | None


# ============== Restore Schemas ==============


class RestoreCreate(BaseModel):
    """Schema for requesting a restore.

    Without target_time the backup (or the latest completed one) is restored
    as-is. With target_time the backup covering that instant is chosen.
    """

    backup_id: str | None = None
    target_time: datetime | None = Field(None, description="Point in time to recover to (UTC)")
    create_new_cluster: bool = True
    new_cluster_name: str | None = Field(None, max_length=100)


class RestoreResponse(BaseModel):
    """Schema for restore job response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    source_cluster_id: str
    backup_id: str
    target_cluster_id: str | None
    restore_type: str
    target_time: datetime | None
    create_new_cluster: bool
    new_cluster_name: str | None
    status: str
    current_step: str | None
    progress_percent: int
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime


# ============== Export Schemas ==============


class ExportResponse(BaseModel):
    """Schema for export response."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    cluster_id: str
    status: str
    format: str
    size_bytes: int | None
    download_url: str | None
    download_expires_at: datetime | None
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime


# ============== Monitoring Schemas ==============


class ScrapeTarget(BaseModel):
    """One Prometheus http_sd entry."""

    targets: list[str]
    labels: dict[str, str]


class HostKeyInvalidateResponse(BaseModel):
    host: str
    removed: bool


# ============== Generic Response Schemas ==============


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper."""

    success: bool = True
    data: T
    message: str | None = None


class ApiListResponse(BaseModel, Generic[T]):
    """Generic API list response wrapper."""

    success: bool = True
    data: list[T]
    total: int


class ApiErrorResponse(BaseModel):
    """API error response."""

    success: bool = False
    error: str
    detail: str | None = None
