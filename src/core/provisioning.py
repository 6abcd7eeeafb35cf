"""Cluster provisioning and teardown workflows.

Provisioning runs six fixed steps. The step about to run is persisted before
it starts, so a crashed or failed run resumes at that step: earlier steps are
not repeated, and the resumed step is written to be safe to run again.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from src.config.settings import Settings
from src.core.bootstrapper import NodeBootstrapper
from src.core.dispatcher import AsyncTaskDispatcher
from src.core.node_config import Credentials, RecoverySource, render_init_script
from src.core.progress import DELETION_STATES, ClusterDeletingError, ProgressService
from src.core.state_machine import (
    ClusterStateMachine,
    ClusterStatus,
    NodeRole,
    NodeStateMachine,
    NodeStatus,
    ProvisioningStep,
    RestoreStatus,
)
from src.db.models import Cluster, RestoreJob, VpsNode
from src.services.cloudflare import CloudflareDns
from src.services.hetzner import HetznerProvider, Machine
from src.services.remote_shell import RemoteHostChannel
from src.utils.credentials import generate_password, slugify
from src.utils.crypto import EncryptionService

logger = logging.getLogger(__name__)

MANAGED_BY = "pgcluster"

# Resource sizing per machine type: (storage GB, memory MB, vCPUs)
NODE_SIZES = {
    "cx23": (40, 4096, 2),
    "cx33": (80, 8192, 4),
    "cx43": (160, 16384, 8),
    "cx53": (320, 32768, 16),
}


class ClusterRequestError(ValueError):
    """A cluster request failed validation."""
    pass


def node_name(slug: str, index: int) -> str:
    return f"{slug}-node-{index + 1}"


def cluster_labels(slug: str) -> dict[str, str]:
    return {"cluster": slug, "managed-by": MANAGED_BY}


def cluster_key(cluster_id: str) -> str:
    """Dispatcher exclusivity key for cluster workflows."""
    return f"cluster:{cluster_id}"


class ProvisioningOrchestrator:
    """Drives clusters from pending to running, and from deleting to deleted."""

    def __init__(
        self,
        session_factory,
        provider: HetznerProvider,
        dns: CloudflareDns | None,
        channel: RemoteHostChannel,
        bootstrapper: NodeBootstrapper,
        encryption: EncryptionService,
        progress: ProgressService,
        task_dispatcher: AsyncTaskDispatcher,
        config: Settings,
    ):
        self._session_factory = session_factory
        self.provider = provider
        self.dns = dns
        self.channel = channel
        self.bootstrapper = bootstrapper
        self.encryption = encryption
        self.progress = progress
        self.dispatcher = task_dispatcher
        self.config = config

        self._phases: dict[ProvisioningStep, Callable[..., Awaitable[None]]] = {
            ProvisioningStep.CREATING_SERVERS: self.create_servers,
            ProvisioningStep.WAITING_SSH: self.wait_for_ssh,
            ProvisioningStep.BUILDING_CONFIG: self.push_configuration,
            ProvisioningStep.STARTING_CONTAINERS: self.start_containers,
            ProvisioningStep.ELECTING_LEADER: self.elect_leader,
            ProvisioningStep.CREATING_DNS: self.register_dns,
        }

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def create_cluster(
        self,
        db: AsyncSession,
        name: str,
        node_count: int = 3,
        node_size: str | None = None,
        regions: list[str] | None = None,
        postgres_version: str | None = None,
        owner_id: str | None = None,
        plan: str = "dedicated",
        check_availability: bool = True,
    ) -> Cluster:
        """Persist a pending cluster and schedule provisioning after commit.

        Raises:
            ClusterRequestError: On invalid node count, regions or size.
        """
        cfg = self.config.cluster
        node_size = node_size or cfg.default_node_size
        if not 1 <= node_count <= cfg.max_nodes:
            raise ClusterRequestError(f"Node count must be between 1 and {cfg.max_nodes}")
        regions = [r for r in (regions or []) if r] or [cfg.default_region]
        if len(regions) not in (1, node_count):
            raise ClusterRequestError(
                f"Expected 1 or {node_count} regions, got {len(regions)}"
            )
        if not name or not name.strip():
            raise ClusterRequestError("Cluster name is required")

        if check_availability:
            available = await self.provider.get_machine_type_availability(node_size)
            missing = sorted(set(regions) - available)
            if missing:
                raise ClusterRequestError(
                    f"Server type {node_size} is not available in {', '.join(missing)}"
                )

        storage_gb, memory_mb, cpu_cores = NODE_SIZES.get(node_size, (None, None, None))
        cluster = Cluster(
            owner_id=owner_id,
            name=name,
            slug=slugify(name),
            plan=plan,
            status=ClusterStatus.PENDING.value,
            postgres_version=postgres_version or cfg.default_postgres_version,
            node_count=node_count,
            node_size=node_size,
            region=regions[0],
            node_regions=",".join(regions) if len(regions) > 1 else None,
            port=5432,
            postgres_password=self.encryption.encrypt(generate_password()),
            storage_gb=storage_gb,
            memory_mb=memory_mb,
            cpu_cores=cpu_cores,
            provisioning_progress=0,
        )
        db.add(cluster)
        await db.flush()
        self.dispatcher.defer(db, "provision", cluster_key(cluster.id), self.provision, cluster.id)
        logger.info(f"Cluster {cluster.slug} requested ({node_count} x {node_size} in {','.join(regions)})")
        return cluster

    async def request_deletion(self, db: AsyncSession, cluster: Cluster) -> Cluster:
        """Mark a cluster deleting and schedule teardown after commit.

        A running provisioning workflow notices the status at its next step
        boundary and stops; teardown then runs after it.
        """
        if cluster.status == ClusterStatus.DELETED.value:
            raise ClusterRequestError(f"Cluster {cluster.slug} is already deleted")
        if cluster.status != ClusterStatus.DELETING.value:
            cluster.status = ClusterStateMachine.transition(cluster.status, ClusterStatus.DELETING)
        await db.flush()
        self.dispatcher.defer(
            db,
            "deprovision",
            cluster_key(cluster.id),
            self.deprovision,
            cluster.id,
            after_active=True,
        )
        logger.info(f"Deletion requested for cluster {cluster.slug}")
        return cluster

    async def retry(self, db: AsyncSession, cluster: Cluster) -> Cluster:
        """Schedule a resumed provisioning run for a failed or stranded cluster.

        A cluster left in pending or creating by a stopped process can be
        retried as long as no provisioning workflow is running for it.

        Raises:
            ClusterRequestError: If the cluster is in no state to resume.
            WorkflowAlreadyActiveError: If a workflow still runs for it.
        """
        resumable = (ClusterStatus.ERROR.value, ClusterStatus.PENDING.value, ClusterStatus.CREATING.value)
        if cluster.status not in resumable:
            raise ClusterRequestError(
                f"Only failed or unfinished clusters can be retried, not {cluster.status}"
            )
        self.dispatcher.defer(db, "provision", cluster_key(cluster.id), self.provision, cluster.id)
        return cluster

    async def resume_interrupted(self, db: AsyncSession) -> int:
        """Defer workflows for clusters a previous process left mid-flight.

        Clusters being built by a restore job are left to that job.
        """
        restoring = select(RestoreJob.target_cluster_id).where(
            RestoreJob.status.in_([RestoreStatus.PENDING.value, RestoreStatus.IN_PROGRESS.value]),
            RestoreJob.target_cluster_id.is_not(None),
        )
        result = await db.execute(
            select(Cluster).where(
                Cluster.status.in_(
                    [ClusterStatus.PENDING.value, ClusterStatus.CREATING.value, ClusterStatus.DELETING.value]
                ),
                Cluster.id.not_in(restoring),
            )
        )
        resumed = 0
        for cluster in result.scalars().all():
            if self.dispatcher.is_active(cluster_key(cluster.id)):
                continue
            if cluster.status == ClusterStatus.DELETING.value:
                self.dispatcher.defer(db, "deprovision", cluster_key(cluster.id), self.deprovision, cluster.id)
            else:
                self.dispatcher.defer(db, "provision", cluster_key(cluster.id), self.provision, cluster.id)
            logger.info(f"Resuming {cluster.status} cluster {cluster.slug}")
            resumed += 1
        return resumed

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def provision(
        self,
        cluster_id: str,
        recovery: RecoverySource | None = None,
        stop_after: ProvisioningStep | None = None,
    ) -> bool:
        """Run or resume provisioning. Returns True once the cluster is running.

        Step failures are recorded on the cluster and never raised.
        """
        start = await self._begin(cluster_id)
        if start is None:
            return False

        step = start
        try:
            for step in ProvisioningStep:
                if step.number < start.number:
                    continue
                await self.run_step(cluster_id, step, recovery=recovery)
                if stop_after is not None and step == stop_after:
                    return True
            await self.progress.mark_cluster_running(cluster_id)
        except ClusterDeletingError:
            logger.info(f"Provisioning of cluster {cluster_id} stopped: deletion requested")
            return False
        except Exception as e:
            logger.exception(f"Provisioning of cluster {cluster_id} failed at {step.value}")
            await self.progress.mark_cluster_error(cluster_id, f"Step {step.value} failed: {e}")
            await self._mark_nodes_failed(cluster_id)
            return False

        logger.info(f"Cluster {cluster_id} is running")
        return True

    async def run_step(
        self, cluster_id: str, step: ProvisioningStep, recovery: RecoverySource | None = None
    ) -> None:
        """Persist step, then run it. Raises whatever the step raises."""
        await self.progress.update_cluster_step(cluster_id, step)
        phase = self._phases[step]
        if step == ProvisioningStep.BUILDING_CONFIG:
            await phase(cluster_id, recovery=recovery)
        else:
            await phase(cluster_id)
        await self.progress.abort_if_deleting(cluster_id)

    async def _begin(self, cluster_id: str) -> ProvisioningStep | None:
        """Move the cluster to creating and return the step to resume from."""
        async with self._session_factory() as db:
            cluster = await db.get(Cluster, cluster_id)
            if cluster is None:
                logger.warning(f"Cluster {cluster_id} vanished before provisioning")
                return None
            if cluster.status in DELETION_STATES:
                logger.info(f"Cluster {cluster.slug} is being deleted, not provisioning")
                return None
            if cluster.status == ClusterStatus.RUNNING.value:
                logger.info(f"Cluster {cluster.slug} already running")
                return None
            if cluster.status != ClusterStatus.CREATING.value:
                cluster.status = ClusterStateMachine.transition(cluster.status, ClusterStatus.CREATING)
            cluster.error_message = None
            await db.commit()
            resume = ProvisioningStep.parse(cluster.provisioning_step)
        if resume is not None:
            logger.info(f"Resuming cluster {cluster_id} at step {resume.number} ({resume.value})")
        return resume or ProvisioningStep.CREATING_SERVERS

    async def deprovision(self, cluster_id: str) -> None:
        """Tear a cluster down. Every deletion is best effort."""
        cluster = await self._load(cluster_id)
        if cluster is None:
            return
        if cluster.status == ClusterStatus.DELETED.value:
            return
        logger.info(f"Deprovisioning cluster {cluster.slug}")

        await self._cancel_restores(cluster_id)

        if cluster.dns_record_id and self.dns is not None:
            try:
                await self.dns.delete_record(cluster.dns_record_id)
            except Exception as e:
                logger.warning(f"Failed to delete DNS record for {cluster.slug}: {e}")

        deleted: set[str] = set()
        for node in cluster.nodes:
            await self._set_node_status(node.id, NodeStatus.DELETING)
            if not node.provider_id:
                continue
            try:
                await self.provider.delete_machine(node.provider_id)
                deleted.add(node.provider_id)
            except Exception as e:
                logger.warning(f"Failed to delete server {node.name} ({node.provider_id}): {e}")

        # Machines created by a run that crashed before recording them
        try:
            orphans = await self.provider.list_machines_by_label({"cluster": cluster.slug})
        except Exception as e:
            logger.warning(f"Could not list leftover servers for {cluster.slug}: {e}")
            orphans = []
        for machine in orphans:
            if machine.id in deleted:
                continue
            try:
                await self.provider.delete_machine(machine.id)
                logger.info(f"Deleted orphan server {machine.name} ({machine.id})")
            except Exception as e:
                logger.warning(f"Failed to delete orphan server {machine.id}: {e}")

        async with self._session_factory() as db:
            row = await db.get(Cluster, cluster_id)
            if row.status != ClusterStatus.DELETING.value:
                row.status = ClusterStateMachine.transition(row.status, ClusterStatus.DELETING)
            row.status = ClusterStateMachine.transition(row.status, ClusterStatus.DELETED)
            row.dns_record_id = None
            await db.commit()
        logger.info(f"Cluster {cluster.slug} deleted")

    async def _cancel_restores(self, cluster_id: str) -> None:
        active = [RestoreStatus.PENDING.value, RestoreStatus.IN_PROGRESS.value]
        async with self._session_factory() as db:
            result = await db.execute(
                update(RestoreJob)
                .where(
                    (RestoreJob.source_cluster_id == cluster_id)
                    | (RestoreJob.target_cluster_id == cluster_id)
                )
                .where(RestoreJob.status.in_(active))
                .values(status=RestoreStatus.CANCELLED.value, error_message="Cluster was deleted")
            )
            await db.commit()
        if result.rowcount:
            logger.info(f"Cancelled {result.rowcount} restore jobs for deleted cluster {cluster_id}")

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def create_servers(self, cluster_id: str) -> None:
        """Step 1: create one machine per node. Nodes already recorded are skipped."""
        cluster = await self._load(cluster_id)
        existing = {n.name: n for n in cluster.nodes}
        labels = cluster_labels(cluster.slug)
        adoptable = {m.name: m for m in await self.provider.list_machines_by_label({"cluster": cluster.slug})}

        for index, region in enumerate(cluster.regions):
            await self.progress.abort_if_deleting(cluster_id)
            name = node_name(cluster.slug, index)
            node = existing.get(name)
            if node is not None and node.provider_id:
                continue

            machine = adoptable.get(name)
            if machine is not None:
                logger.info(f"Adopting existing server {name} ({machine.id})")
            else:
                machine = await self.provider.create_machine(
                    name=name,
                    server_type=cluster.node_size,
                    image=self.config.hetzner.image,
                    location=region,
                    ssh_keys=self.config.hetzner.ssh_keys,
                    labels=labels,
                    user_data=render_init_script(),
                )
            role = NodeRole.LEADER if index == 0 else NodeRole.REPLICA
            await self._record_node(cluster_id, name, machine, cluster.node_size, region, role)

    async def wait_for_ssh(self, cluster_id: str) -> None:
        """Step 2: wait for every machine to accept a trusted session."""
        cluster = await self._load(cluster_id)
        ssh = self.config.ssh
        await asyncio.gather(
            *(
                self.channel.wait_until_ready(
                    node.public_ip,
                    max_attempts=ssh.ready_max_attempts,
                    base_delay=ssh.ready_base_delay,
                    max_delay=ssh.ready_max_delay,
                )
                for node in cluster.nodes
            )
        )
        for node in cluster.nodes:
            await self._set_node_status(node.id, NodeStatus.STARTING)

    async def push_configuration(self, cluster_id: str, recovery: RecoverySource | None = None) -> None:
        """Step 3: render and upload configuration with fresh replication credentials."""
        cluster = await self._load(cluster_id)
        credentials = Credentials(
            postgres_password=self.encryption.decrypt(cluster.postgres_password),
            replicator_password=generate_password(),
        )
        archive_stanza = cluster.slug if self.config.s3_enabled and recovery is None else None
        await self.bootstrapper.push_all(
            cluster.nodes,
            cluster,
            credentials,
            archive_stanza=archive_stanza,
            recovery=recovery,
        )

    async def start_containers(self, cluster_id: str) -> None:
        """Step 4: etcd first, then PostgreSQL and the sidecars."""
        cluster = await self._load(cluster_id)
        await self.bootstrapper.start_containers(cluster.nodes)

    async def elect_leader(self, cluster_id: str) -> None:
        """Step 5: wait for one leader with every other node streaming."""
        cluster = await self._load(cluster_id)
        leader = await self.bootstrapper.verify_roles(cluster.nodes)
        await self.record_roles(cluster_id, leader.id)

    async def register_dns(self, cluster_id: str) -> None:
        """Step 6: point the cluster hostname at the leader."""
        cluster = await self._load(cluster_id)
        hostname = f"{cluster.slug}.{self.config.cluster.base_domain}"
        leader = cluster.leader or cluster.nodes[0]
        record_id = cluster.dns_record_id
        if self.dns is None or not self.config.dns_enabled:
            logger.info(f"DNS provider not configured, {hostname} not registered")
        elif record_id:
            await self.dns.update_record(
                record_id, hostname, leader.public_ip, proxied=self.config.cloudflare.proxied
            )
        else:
            record = await self.dns.create_or_find_record(
                hostname, leader.public_ip, proxied=self.config.cloudflare.proxied
            )
            record_id = record.id

        async with self._session_factory() as db:
            row = await db.get(Cluster, cluster_id)
            row.hostname = hostname
            row.dns_record_id = record_id
            await db.commit()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    async def _load(self, cluster_id: str) -> Cluster | None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Cluster).options(selectinload(Cluster.nodes)).where(Cluster.id == cluster_id)
            )
            return result.scalar_one_or_none()

    async def _record_node(
        self,
        cluster_id: str,
        name: str,
        machine: Machine,
        server_type: str,
        region: str,
        role: NodeRole,
    ) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(VpsNode).where(VpsNode.cluster_id == cluster_id, VpsNode.name == name)
            )
            node = result.scalar_one_or_none()
            if node is None:
                node = VpsNode(cluster_id=cluster_id, name=name, status=NodeStatus.CREATING.value)
                db.add(node)
            node.provider_id = machine.id
            node.public_ip = machine.public_ip
            node.private_ip = machine.private_ip
            node.server_type = server_type
            node.region = region
            node.role = role.value
            await db.commit()

    async def _set_node_status(self, node_id: str, status: NodeStatus) -> None:
        async with self._session_factory() as db:
            node = await db.get(VpsNode, node_id)
            if node is not None and node.status != status.value:
                node.status = NodeStateMachine.transition(node.status, status)
                await db.commit()

    async def _mark_nodes_failed(self, cluster_id: str) -> None:
        """Nodes a failed step left short of running go to error."""
        unfinished = (NodeStatus.CREATING.value, NodeStatus.STARTING.value)
        async with self._session_factory() as db:
            result = await db.execute(select(VpsNode).where(VpsNode.cluster_id == cluster_id))
            for node in result.scalars():
                if node.status in unfinished:
                    node.status = NodeStateMachine.transition(node.status, NodeStatus.ERROR)
            await db.commit()

    async def record_roles(self, cluster_id: str, leader_id: str) -> None:
        """Mark leader_id as leader and every other node as a running replica."""
        async with self._session_factory() as db:
            result = await db.execute(select(VpsNode).where(VpsNode.cluster_id == cluster_id))
            for node in result.scalars():
                node.role = (NodeRole.LEADER if node.id == leader_id else NodeRole.REPLICA).value
                if node.status != NodeStatus.RUNNING.value:
                    node.status = NodeStateMachine.transition(node.status, NodeStatus.RUNNING)
            await db.commit()
