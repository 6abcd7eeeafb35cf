"""Patroni and etcd checks executed on cluster machines."""
import asyncio
import json
import logging

from src.db.models import VpsNode
from src.services.host_keys import HostKeyMismatchError
from src.services.remote_shell import RemoteHostChannel

logger = logging.getLogger(__name__)

PATRONI_STATUS_COMMAND = "curl -s http://localhost:8008/patroni"
ETCD_HEALTH_COMMAND = "docker exec etcd etcdctl endpoint health --cluster"
PATRONI_CONFIG = "/etc/patroni/patroni.yml"
RECOVERY_CHECK_COMMAND = (
    "docker exec -u postgres patroni psql -tAc 'select pg_is_in_recovery()'"
)

LEADER_ROLES = {"master", "primary", "leader"}
REPLICA_ROLES = {"replica", "standby_leader", "sync_standby"}


class LeaderElectionError(Exception):
    """The cluster did not converge on exactly one leader in time."""
    pass


class EtcdUnhealthyError(Exception):
    """etcd never reported a healthy quorum."""
    pass


def parse_status(output: str) -> dict | None:
    """Parse the Patroni REST status document, None if not JSON."""
    try:
        data = json.loads(output)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def parse_role(output: str) -> str | None:
    """Map Patroni's role to leader/replica."""
    status = parse_status(output)
    if not status:
        return None
    role = str(status.get("role", "")).lower()
    if role in LEADER_ROLES:
        return "leader"
    if role in REPLICA_ROLES:
        return "replica"
    return None


def is_streaming(output: str) -> bool:
    """A replica is healthy once it streams WAL from the leader."""
    status = parse_status(output) or {}
    return status.get("replication_state") == "streaming" or status.get("state") == "streaming"


class PatroniService:
    """Reads roles from Patroni and waits for a stable topology."""

    def __init__(self, channel: RemoteHostChannel):
        self.channel = channel

    async def _status(self, node: VpsNode) -> str | None:
        """Raw Patroni status, None while the node cannot answer.

        A host key mismatch is a trust failure, not an unanswered poll, and
        propagates.
        """
        try:
            result = await self.channel.run(node.public_ip, PATRONI_STATUS_COMMAND, timeout=10)
        except HostKeyMismatchError:
            raise
        except Exception as e:
            logger.debug(f"Patroni status unavailable on {node.name}: {e}")
            return None
        return result.stdout if result.ok else None

    async def get_role(self, node: VpsNode) -> str | None:
        output = await self._status(node)
        return parse_role(output) if output is not None else None

    async def find_leader(self, nodes: list[VpsNode]) -> VpsNode | None:
        roles = await asyncio.gather(*(self.get_role(n) for n in nodes))
        for node, role in zip(nodes, roles):
            if role == "leader":
                return node
        return None

    async def topology(self, nodes: list[VpsNode]) -> dict[str, str | None]:
        """Role per node name. Replicas that are not yet streaming map to None."""
        async def role_of(node: VpsNode) -> str | None:
            output = await self._status(node)
            if output is None:
                return None
            role = parse_role(output)
            if role == "replica" and not is_streaming(output):
                return None
            return role

        roles = await asyncio.gather(*(role_of(n) for n in nodes))
        return {node.name: role for node, role in zip(nodes, roles)}

    async def wait_for_leader(
        self, nodes: list[VpsNode], attempts: int = 60, interval: float = 5.0
    ) -> VpsNode:
        """Wait until exactly one node leads and every other node replicates.

        Raises:
            LeaderElectionError: If that never happens within the attempts.
        """
        by_name = {n.name: n for n in nodes}
        for attempt in range(1, attempts + 1):
            roles = await self.topology(nodes)
            leaders = [name for name, role in roles.items() if role == "leader"]
            replicas = [name for name, role in roles.items() if role == "replica"]
            if len(leaders) == 1 and len(replicas) == len(nodes) - 1:
                logger.info(f"Leader elected on {leaders[0]} after {attempt} checks")
                return by_name[leaders[0]]
            logger.debug(
                f"Waiting for leader election ({attempt}/{attempts}): {roles}"
            )
            await asyncio.sleep(interval)
        raise LeaderElectionError(
            f"No stable leader among {len(nodes)} nodes after {attempts} checks"
        )

    async def wait_for_etcd(
        self, node: VpsNode, attempts: int = 30, interval: float = 2.0
    ) -> None:
        for attempt in range(1, attempts + 1):
            try:
                result = await self.channel.run(node.public_ip, ETCD_HEALTH_COMMAND, timeout=15)
                if result.ok and "is healthy" in result.stdout + result.stderr:
                    logger.info(f"etcd quorum healthy (checked via {node.name})")
                    return
            except HostKeyMismatchError:
                raise
            except Exception as e:
                logger.debug(f"etcd health check failed on {node.name}: {e}")
            await asyncio.sleep(interval)
        raise EtcdUnhealthyError(f"etcd not healthy after {attempts} checks")

    async def apply_archive_settings(self, node: VpsNode, stanza: str) -> None:
        """Enable WAL archiving to pgBackRest and restart PostgreSQL."""
        payload = json.dumps(
            {
                "postgresql": {
                    "parameters": {
                        "archive_mode": "on",
                        "archive_timeout": 60,
                        "archive_command": f"pgbackrest --stanza={stanza} archive-push %p",
                    }
                }
            }
        )
        await self.channel.run(
            node.public_ip,
            "curl -s -X PATCH http://localhost:8008/config "
            f"-H 'Content-Type: application/json' -d '{payload}'",
            check=True,
        )
        await self.channel.run(
            node.public_ip,
            "curl -s -X POST http://localhost:8008/restart -d '{}'",
            check=True,
        )
        logger.info(f"Archive settings applied on {node.name}")

    async def wait_until_leader(self, node: VpsNode, timeout: float, interval: float = 10.0) -> None:
        """Wait for a single node to finish bootstrapping and take the leader role.

        Used after a pgBackRest bootstrap, where WAL replay can take a while.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if await self.get_role(node) == "leader":
                logger.info(f"{node.name} finished bootstrap and leads")
                return
            await asyncio.sleep(interval)
        raise LeaderElectionError(f"{node.name} did not become leader within {int(timeout)}s")

    async def is_in_recovery(self, node: VpsNode) -> bool | None:
        result = await self.channel.run(node.public_ip, RECOVERY_CHECK_COMMAND, timeout=15)
        if not result.ok:
            return None
        return result.stdout.strip() == "t"

    async def wait_for_recovery_end(self, node: VpsNode, timeout: float, interval: float = 5.0) -> None:
        """Wait until PostgreSQL on node accepts connections and has left recovery."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            try:
                if await self.is_in_recovery(node) is False:
                    return
            except HostKeyMismatchError:
                raise
            except Exception as e:
                logger.debug(f"Recovery check failed on {node.name}: {e}")
            await asyncio.sleep(interval)
        raise LeaderElectionError(f"PostgreSQL on {node.name} still recovering after {int(timeout)}s")

    async def reinit(self, node: VpsNode, scope: str) -> None:
        """Rebuild a replica from the current leader."""
        await self.channel.run(
            node.public_ip,
            f"docker exec patroni patronictl -c {PATRONI_CONFIG} reinit --force --wait {scope} {node.name}",
            timeout=1800,
            check=True,
        )
        logger.info(f"Replica {node.name} reinitialised")

    async def set_paused(self, node: VpsNode, scope: str, paused: bool) -> None:
        """Toggle Patroni maintenance mode so it leaves PostgreSQL alone."""
        action = "pause" if paused else "resume"
        await self.channel.run(
            node.public_ip,
            f"docker exec patroni patronictl -c {PATRONI_CONFIG} {action} --wait {scope}",
            check=True,
        )
