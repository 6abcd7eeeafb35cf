"""SQLAlchemy database models."""
import uuid
from datetime import datetime

from sqlalchemy import ForeignKey, Index, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Cluster(Base):
    """A replicated PostgreSQL cluster spread over rented machines."""

    __tablename__ = "clusters"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    owner_id: Mapped[str | None] = mapped_column(String(36), index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    slug: Mapped[str] = mapped_column(
        String(100), unique=True, index=True, nullable=False
    )
    plan: Mapped[str] = mapped_column(String(50), default="dedicated")
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)

    postgres_version: Mapped[str] = mapped_column(String(10), default="16")
    node_count: Mapped[int] = mapped_column(default=3)
    node_size: Mapped[str] = mapped_column(String(20), default="cx23")
    region: Mapped[str] = mapped_column(String(20), default="fsn1")
    # Comma separated per-node regions, overrides region when set
    node_regions: Mapped[str | None] = mapped_column(String(255))

    hostname: Mapped[str | None] = mapped_column(String(255))
    port: Mapped[int] = mapped_column(default=5432)
    postgres_password: Mapped[str | None] = mapped_column(Text)  # Fernet ciphertext
    dns_record_id: Mapped[str | None] = mapped_column(String(64))

    storage_gb: Mapped[int | None] = mapped_column()
    memory_mb: Mapped[int | None] = mapped_column()
    cpu_cores: Mapped[int | None] = mapped_column()

    provisioning_step: Mapped[str | None] = mapped_column(String(30))
    provisioning_progress: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    nodes: Mapped[list["VpsNode"]] = relationship(
        back_populates="cluster",
        cascade="all, delete-orphan",
        order_by="VpsNode.created_at, VpsNode.name",
    )

    @property
    def regions(self) -> list[str]:
        """Region for every node index, falling back to the cluster region."""
        explicit = [r for r in (self.node_regions or "").split(",") if r]
        return [
            explicit[i] if i < len(explicit) else self.region
            for i in range(self.node_count)
        ]

    @property
    def leader(self) -> "VpsNode | None":
        for node in self.nodes:
            if node.role == "leader":
                return node
        return None


class VpsNode(Base):
    """Virtual machine that is a member of a cluster."""

    __tablename__ = "vps_nodes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    cluster_id: Mapped[str] = mapped_column(
        ForeignKey("clusters.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    provider_id: Mapped[str | None] = mapped_column(String(64), index=True)
    public_ip: Mapped[str | None] = mapped_column(String(45))
    private_ip: Mapped[str | None] = mapped_column(String(45))
    server_type: Mapped[str] = mapped_column(String(20), nullable=False)
    region: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="creating", nullable=False)
    role: Mapped[str] = mapped_column(String(10), default="replica", nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    cluster: Mapped[Cluster] = relationship(back_populates="nodes")


class Backup(Base):
    """Physical backup taken with pgBackRest."""

    __tablename__ = "backups"
    __table_args__ = (
        Index("ix_backups_cluster_status", "cluster_id", "status"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    cluster_id: Mapped[str] = mapped_column(
        ForeignKey("clusters.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    # manual, scheduled_daily, scheduled_weekly, scheduled_monthly
    trigger: Mapped[str] = mapped_column(String(30), default="manual", nullable=False)
    backup_type: Mapped[str | None] = mapped_column(String(10))
    requested_backup_type: Mapped[str | None] = mapped_column(String(10))
    retention_type: Mapped[str] = mapped_column(String(10), default="manual")
    expires_at: Mapped[datetime | None] = mapped_column()

    pgbackrest_label: Mapped[str | None] = mapped_column(String(100))
    s3_base_path: Mapped[str | None] = mapped_column(String(500))
    size_bytes: Mapped[int | None] = mapped_column()
    wal_start_lsn: Mapped[str | None] = mapped_column(String(30))
    wal_end_lsn: Mapped[str | None] = mapped_column(String(30))
    earliest_recovery_time: Mapped[datetime | None] = mapped_column()
    latest_recovery_time: Mapped[datetime | None] = mapped_column()
    # Set when the WAL chain behind this backup is known to be broken
    recoverable: Mapped[bool] = mapped_column(default=True)

    current_step: Mapped[str] = mapped_column(String(20), default="pending")
    progress_percent: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[str | None] = mapped_column(Text)

    started_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    cluster: Mapped[Cluster] = relationship()


class RestoreJob(Base):
    """Restore of a backup into the source cluster or a new one."""

    __tablename__ = "restore_jobs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    source_cluster_id: Mapped[str] = mapped_column(
        ForeignKey("clusters.id"), nullable=False, index=True
    )
    backup_id: Mapped[str] = mapped_column(ForeignKey("backups.id"), nullable=False)
    target_cluster_id: Mapped[str | None] = mapped_column(ForeignKey("clusters.id"))

    restore_type: Mapped[str] = mapped_column(String(10), default="full")
    target_time: Mapped[datetime | None] = mapped_column()
    create_new_cluster: Mapped[bool] = mapped_column(default=True)
    new_cluster_name: Mapped[str | None] = mapped_column(String(100))

    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    current_step: Mapped[str | None] = mapped_column(String(30))
    progress_percent: Mapped[int] = mapped_column(default=0)
    error_message: Mapped[str | None] = mapped_column(Text)

    started_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    source_cluster: Mapped[Cluster] = relationship(foreign_keys=[source_cluster_id])
    target_cluster: Mapped[Cluster | None] = relationship(
        foreign_keys=[target_cluster_id]
    )
    backup: Mapped[Backup] = relationship()


class Export(Base):
    """Logical pg_dump export uploaded to object storage."""

    __tablename__ = "exports"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    cluster_id: Mapped[str] = mapped_column(
        ForeignKey("clusters.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    format: Mapped[str] = mapped_column(String(20), default="pg_dump")
    size_bytes: Mapped[int | None] = mapped_column()
    s3_path: Mapped[str | None] = mapped_column(String(500))
    download_url: Mapped[str | None] = mapped_column(Text)
    download_expires_at: Mapped[datetime | None] = mapped_column()
    error_message: Mapped[str | None] = mapped_column(Text)

    started_at: Mapped[datetime | None] = mapped_column()
    completed_at: Mapped[datetime | None] = mapped_column()
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    cluster: Mapped[Cluster] = relationship()


class SshHostKey(Base):
    """Pinned host key for trust-on-first-use verification."""

    __tablename__ = "ssh_host_keys"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    host: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    key_type: Mapped[str] = mapped_column(String(50), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(100), nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(default=func.now())
    last_verified_at: Mapped[datetime] = mapped_column(default=func.now())
