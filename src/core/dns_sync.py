"""Periodic DNS reconciliation after Patroni failovers."""
import logging

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from src.config.settings import Settings
from src.core.state_machine import ClusterStatus, NodeRole
from src.db.models import Cluster, VpsNode
from src.services.cloudflare import CloudflareDns
from src.services.patroni import PatroniService

logger = logging.getLogger(__name__)


class DnsSyncJob:
    """Repoints each running cluster's hostname at its current leader."""

    def __init__(self, session_factory, patroni: PatroniService, dns: CloudflareDns | None, config: Settings):
        self._session_factory = session_factory
        self.patroni = patroni
        self.dns = dns
        self.config = config

    async def run(self) -> int:
        """Sync every running cluster. Returns the number of records changed."""
        if self.dns is None or not self.config.dns_enabled:
            logger.debug("DNS provider not configured, skipping DNS sync")
            return 0

        async with self._session_factory() as db:
            result = await db.execute(
                select(Cluster)
                .options(selectinload(Cluster.nodes))
                .where(Cluster.status == ClusterStatus.RUNNING.value)
            )
            clusters = list(result.scalars().all())

        changed = 0
        for cluster in clusters:
            try:
                if await self.sync_cluster(cluster):
                    changed += 1
            except Exception as e:
                logger.warning(f"Failed to sync DNS for cluster {cluster.slug}: {e}")
        if changed:
            logger.info(f"DNS sync updated {changed} records")
        return changed

    async def sync_cluster(self, cluster: Cluster) -> bool:
        if not cluster.hostname or not cluster.nodes:
            return False

        leader = await self.patroni.find_leader(cluster.nodes)
        if leader is None:
            logger.debug(f"No leader found for cluster {cluster.slug}, skipping DNS sync")
            return False
        if cluster.leader is None or cluster.leader.id != leader.id:
            await self._record_leader(cluster.id, leader.id)
            logger.info(f"Leader of cluster {cluster.slug} is now {leader.name}")

        record = await self.dns.find_record(cluster.hostname)
        if record is None:
            logger.warning(f"No DNS record found for {cluster.hostname}")
            return False
        if record.content == leader.public_ip:
            return False

        await self.dns.update_record(
            record.id, cluster.hostname, leader.public_ip, proxied=self.config.cloudflare.proxied
        )
        logger.info(f"Updated DNS for {cluster.slug} from {record.content} to {leader.public_ip}")
        return True

    async def _record_leader(self, cluster_id: str, leader_id: str) -> None:
        async with self._session_factory() as db:
            result = await db.execute(select(VpsNode).where(VpsNode.cluster_id == cluster_id))
            for node in result.scalars():
                node.role = (NodeRole.LEADER if node.id == leader_id else NodeRole.REPLICA).value
            await db.commit()
