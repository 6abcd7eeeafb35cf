"""Wiring of services and orchestrators into one control plane."""
import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from src.config.settings import Settings
from src.core.backups import BackupOrchestrator
from src.core.bootstrapper import NodeBootstrapper
from src.core.dispatcher import AsyncTaskDispatcher
from src.core.dns_sync import DnsSyncJob
from src.core.exports import ExportOrchestrator
from src.core.progress import ProgressService
from src.core.provisioning import ProvisioningOrchestrator
from src.core.restore import RestoreOrchestrator
from src.services.cloudflare import CloudflareDns
from src.services.hetzner import HetznerProvider
from src.services.host_keys import HostKeyService
from src.services.metrics import PrometheusClient
from src.services.patroni import PatroniService
from src.services.pgbackrest import PgBackRestService
from src.services.remote_shell import RemoteHostChannel
from src.services.s3_storage import S3Storage
from src.utils.crypto import EncryptionService

logger = logging.getLogger(__name__)


@dataclass
class ControlPlane:
    """Everything the API and the scheduler need, built once per process."""

    config: Settings
    encryption: EncryptionService
    host_keys: HostKeyService
    channel: RemoteHostChannel
    provider: HetznerProvider
    dns: CloudflareDns | None
    storage: S3Storage
    prometheus: PrometheusClient
    patroni: PatroniService
    pgbackrest: PgBackRestService
    progress: ProgressService
    provisioning: ProvisioningOrchestrator
    backups: BackupOrchestrator
    restores: RestoreOrchestrator
    exports: ExportOrchestrator
    dns_sync: DnsSyncJob

    async def close(self) -> None:
        """Close HTTP clients held by the external services."""
        await self.provider.close()
        if self.dns is not None:
            await self.dns.close()
        await self.prometheus.close()

    async def resume_workflows(self, db: AsyncSession) -> int:
        """Re-dispatch every workflow a previous process left unfinished."""
        resumed = await self.provisioning.resume_interrupted(db)
        resumed += await self.backups.resume_interrupted(db)
        resumed += await self.restores.resume_interrupted(db)
        resumed += await self.exports.resume_interrupted(db)
        await self.provisioning.dispatcher.commit(db)
        logger.info(f"Resumed {resumed} interrupted workflows")
        return resumed


def build_control_plane(
    session_factory,
    config: Settings,
    task_dispatcher: AsyncTaskDispatcher,
) -> ControlPlane:
    encryption = EncryptionService(config.secret_key)
    host_keys = HostKeyService(session_factory)
    channel = RemoteHostChannel(
        host_keys,
        user=config.ssh.user,
        key_path=config.ssh.private_key_path,
        port=config.ssh.port,
        connect_timeout=config.ssh.connect_timeout,
        command_timeout=config.ssh.command_timeout,
    )
    provider = HetznerProvider(
        config.hetzner.api_token,
        base_url=config.hetzner.base_url,
        timeout=config.hetzner.timeout,
    )
    dns = None
    if config.dns_enabled:
        dns = CloudflareDns(
            config.cloudflare.api_token,
            config.cloudflare.zone_id,
            base_url=config.cloudflare.base_url,
            timeout=config.cloudflare.timeout,
        )
    else:
        logger.warning("DNS provider not configured, cluster hostnames will not be registered")
    storage = S3Storage(config.s3)
    prometheus = PrometheusClient(config.prometheus.url, timeout=config.prometheus.timeout)
    patroni = PatroniService(channel)
    pgbackrest = PgBackRestService(channel, config.s3)
    bootstrapper = NodeBootstrapper(
        channel,
        patroni,
        etcd_wait_attempts=config.cluster.etcd_wait_attempts,
        etcd_wait_interval=config.cluster.etcd_wait_interval,
        leader_wait_attempts=config.cluster.leader_wait_attempts,
        leader_wait_interval=config.cluster.leader_wait_interval,
    )
    progress = ProgressService(session_factory)

    provisioning = ProvisioningOrchestrator(
        session_factory,
        provider=provider,
        dns=dns,
        channel=channel,
        bootstrapper=bootstrapper,
        encryption=encryption,
        progress=progress,
        task_dispatcher=task_dispatcher,
        config=config,
    )
    backups = BackupOrchestrator(
        session_factory,
        pgbackrest=pgbackrest,
        patroni=patroni,
        storage=storage,
        progress=progress,
        task_dispatcher=task_dispatcher,
        config=config,
    )
    restores = RestoreOrchestrator(
        session_factory,
        provisioning=provisioning,
        bootstrapper=bootstrapper,
        pgbackrest=pgbackrest,
        patroni=patroni,
        encryption=encryption,
        progress=progress,
        task_dispatcher=task_dispatcher,
        config=config,
    )
    exports = ExportOrchestrator(
        session_factory,
        channel=channel,
        patroni=patroni,
        storage=storage,
        task_dispatcher=task_dispatcher,
        config=config,
    )
    dns_sync = DnsSyncJob(session_factory, patroni, dns, config)

    return ControlPlane(
        config=config,
        encryption=encryption,
        host_keys=host_keys,
        channel=channel,
        provider=provider,
        dns=dns,
        storage=storage,
        prometheus=prometheus,
        patroni=patroni,
        pgbackrest=pgbackrest,
        progress=progress,
        provisioning=provisioning,
        backups=backups,
        restores=restores,
        exports=exports,
        dns_sync=dns_sync,
    )
