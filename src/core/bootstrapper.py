"""Turns provisioned machines into replicated PostgreSQL cluster members."""
import asyncio
import logging

from src.core import node_config
from src.core.node_config import Credentials, RecoverySource, Topology
from src.db.models import Cluster, VpsNode
from src.services.patroni import PatroniService
from src.services.remote_shell import RemoteHostChannel

logger = logging.getLogger(__name__)

PREPARE_DIRS_COMMAND = (
    f"mkdir -p {node_config.BASE_DIR} /data/postgresql /data/etcd "
    "/etc/pgbackrest /var/log/pgbackrest /var/spool/pgbackrest && "
    "chmod 700 /data/postgresql && chown -R 999:999 /data/postgresql"
)
START_ETCD_COMMAND = f"cd {node_config.BASE_DIR} && docker compose up -d etcd"
START_ALL_COMMAND = f"cd {node_config.BASE_DIR} && docker compose up -d"


class NodeBootstrapper:
    """Pushes configuration to nodes and starts their containers."""

    def __init__(
        self,
        channel: RemoteHostChannel,
        patroni: PatroniService,
        etcd_wait_attempts: int = 30,
        etcd_wait_interval: float = 2.0,
        leader_wait_attempts: int = 60,
        leader_wait_interval: float = 5.0,
    ):
        self.channel = channel
        self.patroni = patroni
        self.etcd_wait_attempts = etcd_wait_attempts
        self.etcd_wait_interval = etcd_wait_interval
        self.leader_wait_attempts = leader_wait_attempts
        self.leader_wait_interval = leader_wait_interval

    async def push_config(
        self,
        node: VpsNode,
        cluster: Cluster,
        topology: Topology,
        credentials: Credentials,
        archive_stanza: str | None = None,
        recovery: RecoverySource | None = None,
    ) -> None:
        """Write every configuration file for one node."""
        address = node_config.node_address(node)
        files = [
            (".env", node_config.render_env(credentials), 0o600),
            ("docker-compose.yml", node_config.render_compose(topology, node.name, address), 0o644),
            (
                "patroni.yml",
                node_config.render_patroni(
                    topology,
                    node.name,
                    address,
                    cluster.node_size,
                    credentials,
                    archive_stanza=archive_stanza,
                    recovery=recovery,
                ),
                0o600,
            ),
            ("pgbouncer.ini", node_config.render_pgbouncer(cluster.node_size), 0o644),
            ("userlist.txt", node_config.render_userlist(credentials.postgres_password), 0o644),
        ]

        session = await self.channel.connect(node.public_ip)
        try:
            await self.channel.execute(session, PREPARE_DIRS_COMMAND, check=True)
            for name, content, mode in files:
                await self.channel.write_file(
                    session, f"{node_config.BASE_DIR}/{name}", content, mode=mode
                )
            # patroni runs as uid 999 inside the container
            await self.channel.execute(
                session, f"chown 999:999 {node_config.BASE_DIR}/patroni.yml", check=True
            )
        finally:
            await session.close()
        logger.info(f"Configuration pushed to {node.name}")

    async def push_all(
        self,
        nodes: list[VpsNode],
        cluster: Cluster,
        credentials: Credentials,
        archive_stanza: str | None = None,
        recovery: RecoverySource | None = None,
    ) -> None:
        """Push config to every node. Only the first node receives ``recovery``."""
        topology = Topology.from_nodes(cluster.slug, cluster.postgres_version, nodes)
        await asyncio.gather(
            *(
                self.push_config(
                    node,
                    cluster,
                    topology,
                    credentials,
                    archive_stanza=archive_stanza,
                    recovery=recovery if i == 0 else None,
                )
                for i, node in enumerate(nodes)
            )
        )

    async def start_etcd(self, nodes: list[VpsNode]) -> None:
        """Start etcd on every node and wait for a healthy quorum."""
        await asyncio.gather(
            *(self.channel.run(n.public_ip, START_ETCD_COMMAND, check=True) for n in nodes)
        )
        await self.patroni.wait_for_etcd(
            nodes[0], attempts=self.etcd_wait_attempts, interval=self.etcd_wait_interval
        )

    async def start_members(self, nodes: list[VpsNode]) -> None:
        await asyncio.gather(
            *(self.channel.run(n.public_ip, START_ALL_COMMAND, check=True, timeout=600) for n in nodes)
        )
        logger.info(f"Containers started on {len(nodes)} nodes")

    async def start_containers(self, nodes: list[VpsNode]) -> None:
        """Start etcd everywhere, wait for quorum, then start the rest."""
        await self.start_etcd(nodes)
        await self.start_members(nodes)

    async def verify_roles(self, nodes: list[VpsNode]) -> VpsNode:
        """Wait for one leader with all other nodes replicating; returns the leader."""
        return await self.patroni.wait_for_leader(
            nodes, attempts=self.leader_wait_attempts, interval=self.leader_wait_interval
        )
