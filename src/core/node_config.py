"""Render the files that turn a bare machine into a cluster member.

Each node gets:
    /opt/pgcluster/.env              superuser and replication passwords (0600)
    /opt/pgcluster/docker-compose.yml
    /opt/pgcluster/patroni.yml
    /opt/pgcluster/pgbouncer.ini
    /opt/pgcluster/userlist.txt
"""
from dataclasses import dataclass
from datetime import datetime, timezone

import yaml

from src.db.models import VpsNode
from src.utils.credentials import pgbouncer_md5

BASE_DIR = "/opt/pgcluster"
PATRONI_IMAGE = "denysd1/patroni"
ETCD_IMAGE = "quay.io/coreos/etcd:v3.5.11"
NODE_EXPORTER_IMAGE = "prom/node-exporter:v1.7.0"
POSTGRES_EXPORTER_IMAGE = "prometheuscommunity/postgres-exporter:v0.15.0"
PGBOUNCER_IMAGE = "edoburu/pgbouncer:v1.23.1-p3"

# shared_buffers, effective_cache_size by machine size
MEMORY_SETTINGS: dict[str, tuple[str, str]] = {
    "cx23": ("512MB", "1536MB"),
    "cx33": ("2GB", "6GB"),
    "cx43": ("4GB", "12GB"),
    "cx53": ("8GB", "24GB"),
}
DEFAULT_MEMORY = ("256MB", "768MB")

# default_pool_size, max_client_conn, reserve_pool_size by machine size
POOL_SETTINGS: dict[str, tuple[int, int, int]] = {
    "cx23": (20, 400, 5),
    "cx33": (40, 600, 10),
    "cx43": (80, 1000, 20),
    "cx53": (150, 2000, 40),
}
DEFAULT_POOL = (15, 300, 3)


@dataclass
class Credentials:
    """Passwords pushed to every node. Never log an instance of this."""
    postgres_password: str
    replicator_password: str

    def __repr__(self) -> str:
        return "Credentials(***)"


@dataclass
class Topology:
    """Addresses every node needs to know about its peers."""
    cluster_slug: str
    postgres_version: str
    members: list[tuple[str, str]]  # (node name, address)

    @classmethod
    def from_nodes(cls, cluster_slug: str, postgres_version: str, nodes: list[VpsNode]) -> "Topology":
        return cls(
            cluster_slug=cluster_slug,
            postgres_version=postgres_version,
            members=[(n.name, node_address(n)) for n in nodes],
        )

    @property
    def etcd_initial_cluster(self) -> str:
        return ",".join(f"{name}=http://{addr}:2380" for name, addr in self.members)

    @property
    def etcd_hosts(self) -> str:
        return ",".join(f"{addr}:2379" for _, addr in self.members)


@dataclass
class RecoverySource:
    """Seed a new cluster's first node from another cluster's pgBackRest stanza."""
    stanza: str
    backup_label: str | None = None
    target_time: datetime | None = None


def node_address(node: VpsNode) -> str:
    return node.private_ip or node.public_ip


def render_env(credentials: Credentials) -> str:
    return (
        f"POSTGRES_PASSWORD={credentials.postgres_password}\n"
        f"REPLICATOR_PASSWORD={credentials.replicator_password}\n"
    )


def render_compose(topology: Topology, node_name: str, node_ip: str) -> str:
    compose = {
        "services": {
            "etcd": {
                "image": ETCD_IMAGE,
                "container_name": "etcd",
                "restart": "unless-stopped",
                "network_mode": "host",
                "volumes": ["/data/etcd:/etcd-data"],
                "environment": [
                    f"ETCD_NAME={node_name}",
                    "ETCD_DATA_DIR=/etcd-data",
                    f"ETCD_LISTEN_PEER_URLS=http://{node_ip}:2380",
                    f"ETCD_LISTEN_CLIENT_URLS=http://{node_ip}:2379,http://127.0.0.1:2379",
                    f"ETCD_INITIAL_ADVERTISE_PEER_URLS=http://{node_ip}:2380",
                    f"ETCD_ADVERTISE_CLIENT_URLS=http://{node_ip}:2379",
                    f"ETCD_INITIAL_CLUSTER={topology.etcd_initial_cluster}",
                    "ETCD_INITIAL_CLUSTER_STATE=new",
                    f"ETCD_INITIAL_CLUSTER_TOKEN={topology.cluster_slug}-etcd",
                ],
                "healthcheck": _healthcheck(["CMD", "etcdctl", "endpoint", "health"]),
            },
            "patroni": {
                "image": f"{PATRONI_IMAGE}:{topology.postgres_version}",
                "container_name": "patroni",
                "restart": "unless-stopped",
                "network_mode": "host",
                "depends_on": {"etcd": {"condition": "service_healthy"}},
                "volumes": [
                    "/data/postgresql:/var/lib/postgresql/data",
                    f"{BASE_DIR}/patroni.yml:/etc/patroni/patroni.yml:ro",
                    "/etc/pgbackrest/pgbackrest.conf:/etc/pgbackrest/pgbackrest.conf:ro",
                    "/var/log/pgbackrest:/var/log/pgbackrest",
                    "/var/spool/pgbackrest:/var/spool/pgbackrest",
                ],
                "environment": [
                    f"PATRONI_NAME={node_name}",
                    f"PATRONI_RESTAPI_CONNECT_ADDRESS={node_ip}:8008",
                    f"PATRONI_POSTGRESQL_CONNECT_ADDRESS={node_ip}:5432",
                ],
                "healthcheck": _healthcheck(["CMD", "curl", "-f", "http://localhost:8008/health"]),
            },
            "node-exporter": {
                "image": NODE_EXPORTER_IMAGE,
                "container_name": "node-exporter",
                "restart": "unless-stopped",
                "network_mode": "host",
                "pid": "host",
                "volumes": ["/:/host:ro,rslave"],
                "command": ["--path.rootfs=/host", "--web.listen-address=:9100"],
            },
            "postgres-exporter": {
                "image": POSTGRES_EXPORTER_IMAGE,
                "container_name": "postgres-exporter",
                "restart": "unless-stopped",
                "network_mode": "host",
                "env_file": [".env"],
                "depends_on": {"patroni": {"condition": "service_healthy"}},
                "environment": [
                    "DATA_SOURCE_NAME=postgresql://postgres:${POSTGRES_PASSWORD}"
                    "@127.0.0.1:5432/postgres?sslmode=disable"
                ],
                "command": ["--web.listen-address=:9187"],
            },
            "pgbouncer": {
                "image": PGBOUNCER_IMAGE,
                "container_name": "pgbouncer",
                "restart": "unless-stopped",
                "network_mode": "host",
                "depends_on": {"patroni": {"condition": "service_healthy"}},
                "volumes": [
                    f"{BASE_DIR}/pgbouncer.ini:/etc/pgbouncer/pgbouncer.ini:ro",
                    f"{BASE_DIR}/userlist.txt:/etc/pgbouncer/userlist.txt:ro",
                ],
                "healthcheck": _healthcheck(["CMD", "pg_isready", "-h", "127.0.0.1", "-p", "6432"]),
            },
        }
    }
    return yaml.safe_dump(compose, sort_keys=False)


def _healthcheck(test: list[str]) -> dict:
    return {"test": test, "interval": "10s", "timeout": "5s", "retries": 3}


def render_patroni(
    topology: Topology,
    node_name: str,
    node_ip: str,
    node_size: str,
    credentials: Credentials,
    archive_stanza: str | None = None,
    recovery: RecoverySource | None = None,
) -> str:
    """patroni.yml for one node.

    archive_stanza enables WAL archiving through pgBackRest. recovery makes the
    node bootstrap from a pgBackRest restore instead of initdb.
    """
    shared_buffers, effective_cache = MEMORY_SETTINGS.get(node_size, DEFAULT_MEMORY)

    parameters = {
        "max_connections": 100,
        "shared_buffers": shared_buffers,
        "effective_cache_size": effective_cache,
        "work_mem": "4MB",
        "maintenance_work_mem": "64MB",
        "wal_level": "replica",
        "hot_standby": "on",
        "max_wal_senders": 10,
        "max_replication_slots": 10,
        "wal_keep_size": "128MB",
        "logging_collector": "off",
        "log_destination": "stderr",
    }
    if archive_stanza:
        parameters.update(
            {
                "archive_mode": "on",
                "archive_timeout": 60,
                "archive_command": f"pgbackrest --stanza={archive_stanza} archive-push %p",
            }
        )

    bootstrap = {
        "dcs": {
            "ttl": 30,
            "loop_wait": 10,
            "retry_timeout": 10,
            "maximum_lag_on_failover": 1048576,
            "postgresql": {
                "use_pg_rewind": True,
                "use_slots": True,
                "parameters": parameters,
            },
        },
        "initdb": [{"encoding": "UTF8"}, "data-checksums"],
        "pg_hba": [
            "local all postgres peer",
            "host all all 127.0.0.1/32 md5",
            "host replication replicator 0.0.0.0/0 md5",
            "host all all 0.0.0.0/0 md5",
        ],
        "users": {
            "postgres": {"password": credentials.postgres_password, "options": ["superuser"]},
            "replicator": {"password": credentials.replicator_password, "options": ["replication"]},
        },
    }

    if recovery is not None:
        restore = f"pgbackrest --stanza={recovery.stanza}"
        if recovery.backup_label:
            restore += f" --set={recovery.backup_label}"
        restore += " --delta restore"
        recovery_conf = {
            "restore_command": f"pgbackrest --stanza={recovery.stanza} archive-get %f %p",
        }
        if recovery.target_time is not None:
            recovery_conf["recovery_target_time"] = _recovery_time(recovery.target_time)
            recovery_conf["recovery_target_action"] = "promote"
        bootstrap["method"] = "pgbackrest"
        bootstrap["pgbackrest"] = {
            "command": restore,
            "keep_existing_recovery_conf": False,
            "no_params": True,
            "recovery_conf": recovery_conf,
        }

    postgresql = {
        "listen": "0.0.0.0:5432",
        "connect_address": f"{node_ip}:5432",
        "data_dir": "/var/lib/postgresql/data",
        "bin_dir": f"/usr/lib/postgresql/{topology.postgres_version}/bin",
        "pgpass": "/tmp/pgpass",
        "authentication": {
            "replication": {"username": "replicator", "password": credentials.replicator_password},
            "superuser": {"username": "postgres", "password": credentials.postgres_password},
        },
    }
    if archive_stanza:
        postgresql["recovery_conf"] = {
            "restore_command": f"pgbackrest --stanza={archive_stanza} archive-get %f %p"
        }

    config = {
        "scope": topology.cluster_slug,
        "namespace": "/pgcluster/",
        "name": node_name,
        "restapi": {"listen": "0.0.0.0:8008", "connect_address": f"{node_ip}:8008"},
        "etcd3": {"hosts": topology.etcd_hosts},
        "bootstrap": bootstrap,
        "postgresql": postgresql,
        "tags": {"nofailover": False, "noloadbalance": False, "clonefrom": False, "nosync": False},
    }
    return yaml.safe_dump(config, sort_keys=False)


def _recovery_time(target: datetime) -> str:
    if target.tzinfo is not None:
        target = target.astimezone(timezone.utc)
    return target.strftime("%Y-%m-%d %H:%M:%S") + "+00"


def render_pgbouncer(node_size: str) -> str:
    pool_size, max_client, reserve = POOL_SETTINGS.get(node_size, DEFAULT_POOL)
    return (
        "[databases]\n"
        "* = host=127.0.0.1 port=5432\n"
        "\n"
        "[pgbouncer]\n"
        "listen_addr = 0.0.0.0\n"
        "listen_port = 6432\n"
        "auth_type = md5\n"
        "auth_file = /etc/pgbouncer/userlist.txt\n"
        "admin_users = postgres\n"
        "pool_mode = transaction\n"
        f"default_pool_size = {pool_size}\n"
        f"max_client_conn = {max_client}\n"
        f"reserve_pool_size = {reserve}\n"
        "reserve_pool_timeout = 5\n"
        "server_reset_query = DISCARD ALL\n"
        "ignore_startup_parameters = extra_float_digits\n"
    )


def render_userlist(postgres_password: str) -> str:
    return f'"postgres" "{pgbouncer_md5(postgres_password)}"\n'


def render_init_script() -> str:
    """cloud-init user data: docker and the directories the bootstrapper expects."""
    return (
        "#!/bin/bash\n"
        "set -e\n"
        "exec > >(tee /var/log/cloud-init-output.log) 2>&1\n"
        "apt-get update\n"
        "apt-get install -y ca-certificates curl\n"
        "curl -fsSL https://get.docker.com | sh\n"
        "systemctl enable --now docker\n"
        f"mkdir -p {BASE_DIR} /etc/pgbackrest /var/log/pgbackrest /var/spool/pgbackrest\n"
        "mkdir -p /data/postgresql /data/etcd\n"
        "chmod 700 /data/postgresql\n"
        "chown -R 999:999 /data/postgresql\n"
    )
