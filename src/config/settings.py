"""Application settings using Pydantic."""
from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Database settings."""
    url: str = "sqlite+aiosqlite:///./data/pgcluster.db"
    echo: bool = False  # Log SQL statements


class HetznerSettings(BaseSettings):
    """Virtual machine provider settings."""
    api_token: str = ""
    base_url: str = "https://api.hetzner.cloud/v1"
    # Comma separated SSH key ids registered with the provider
    ssh_key_ids: str = ""
    image: str = "ubuntu-24.04"
    timeout: float = 30.0

    @property
    def ssh_keys(self) -> list[str]:
        """SSH key ids as a list."""
        return [k.strip() for k in self.ssh_key_ids.split(",") if k.strip()]


class CloudflareSettings(BaseSettings):
    """DNS provider settings."""
    api_token: str = ""
    zone_id: str = ""
    base_url: str = "https://api.cloudflare.com/client/v4"
    proxied: bool = False
    timeout: float = 30.0


class SSHSettings(BaseSettings):
    """Remote shell settings."""
    user: str = "root"
    private_key_path: Path = Path("/etc/pgcluster/ssh/id_ed25519")
    port: int = 22
    connect_timeout: float = 10.0
    command_timeout: float = 120.0

    # Readiness polling after machine creation (exponential backoff)
    ready_max_attempts: int = 20
    ready_base_delay: float = 2.0
    ready_max_delay: float = 30.0


class ClusterSettings(BaseSettings):
    """Cluster topology settings."""
    base_domain: str = "db.example.com"
    default_region: str = "fsn1"
    default_node_size: str = "cx23"
    default_postgres_version: str = "16"
    max_nodes: int = 7

    # Leader election wait
    leader_wait_attempts: int = 60
    leader_wait_interval: float = 5.0

    # etcd quorum wait
    etcd_wait_attempts: int = 30
    etcd_wait_interval: float = 2.0


class S3Settings(BaseSettings):
    """Object storage settings for backups and exports."""
    endpoint: str | None = None
    region: str = "eu-central-1"
    bucket: str = "pgcluster-backups"
    access_key: str = ""
    secret_key: str = ""
    export_download_hours: int = 24


class BackupSettings(BaseSettings):
    """Backup retention and scheduling settings."""
    daily_retention_days: int = 7
    weekly_retention_weeks: int = 4
    monthly_retention_months: int = 12

    # Hours (UTC) at which scheduled jobs fire
    daily_hour: int = 2
    weekly_hour: int = 3
    monthly_hour: int = 4
    cleanup_hour: int = 5

    backup_timeout_minutes: int = 120
    restore_timeout_minutes: int = 30
    dns_sync_interval_minutes: int = 5

    # pg_dump exports
    export_timeout_minutes: int = 60
    export_max_attempts: int = 3
    export_retry_delay: float = 10.0


class DispatcherSettings(BaseSettings):
    """Workflow dispatcher pool settings."""
    core_workers: int = 4
    max_workers: int = 10
    queue_capacity: int = 50


class ResilienceSettings(BaseSettings):
    """Retry and circuit breaker settings, shared by every external dependency."""
    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_max: float = 30.0
    failure_threshold: int = 5
    reset_timeout: float = 60.0


class PrometheusSettings(BaseSettings):
    """Metrics backend settings."""
    url: str = "http://localhost:9090"
    timeout: float = 10.0


class Settings(BaseSettings):
    """Main application settings."""
    model_config = SettingsConfigDict(
        env_prefix="PGCLUSTER_",
        env_nested_delimiter="__",
    )

    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False

    # Secret key for credential encryption (MUST be set in production)
    secret_key: str = "CHANGE_ME_IN_PRODUCTION_32_CHARS!"

    # Key protecting the internal scrape-target endpoint
    internal_api_key: str | None = None

    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    hetzner: HetznerSettings = Field(default_factory=HetznerSettings)
    cloudflare: CloudflareSettings = Field(default_factory=CloudflareSettings)
    ssh: SSHSettings = Field(default_factory=SSHSettings)
    cluster: ClusterSettings = Field(default_factory=ClusterSettings)
    s3: S3Settings = Field(default_factory=S3Settings)
    backup: BackupSettings = Field(default_factory=BackupSettings)
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)
    prometheus: PrometheusSettings = Field(default_factory=PrometheusSettings)

    # Scheduler can be disabled for one-off processes and tests
    scheduler_enabled: bool = True

    @property
    def dns_enabled(self) -> bool:
        """Check if DNS management is configured."""
        return bool(self.cloudflare.api_token and self.cloudflare.zone_id)

    @property
    def s3_enabled(self) -> bool:
        """Check if object storage is configured."""
        return bool(self.s3.access_key and self.s3.secret_key)


settings = Settings()
