"""Tests for node file rendering."""
from datetime import datetime, timedelta, timezone

import yaml

from src.core.node_config import (
    DEFAULT_POOL,
    MEMORY_SETTINGS,
    Credentials,
    RecoverySource,
    Topology,
    render_compose,
    render_env,
    render_init_script,
    render_patroni,
    render_pgbouncer,
    render_userlist,
)
from src.db.models import VpsNode
from src.utils.credentials import pgbouncer_md5

CREDS = Credentials(postgres_password="pg-secret", replicator_password="repl-secret")


def topology() -> Topology:
    nodes = [
        VpsNode(name=f"orders-node-{i}", public_ip=f"203.0.113.{i}", private_ip=f"10.0.0.{i + 1}")
        for i in (1, 2, 3)
    ]
    return Topology.from_nodes("orders", "16", nodes)


def patroni_doc(**kwargs) -> dict:
    return yaml.safe_load(
        render_patroni(topology(), "orders-node-1", "10.0.0.2", "cx23", CREDS, **kwargs)
    )


class TestCredentials:
    """Test the credentials holder."""

    def test_repr_hides_passwords(self):
        """Secrets never show up in repr or logs."""
        assert "secret" not in repr(CREDS)
        assert "secret" not in f"{CREDS!r}"

    def test_env_file(self):
        """The env file carries both passwords."""
        env = render_env(CREDS)

        assert "POSTGRES_PASSWORD=pg-secret\n" in env
        assert "REPLICATOR_PASSWORD=repl-secret\n" in env


class TestTopology:
    """Test peer address lists."""

    def test_private_addresses_preferred(self):
        """Peers talk over the private network."""
        topo = topology()

        assert topo.members[0] == ("orders-node-1", "10.0.0.2")
        assert topo.etcd_hosts == "10.0.0.2:2379,10.0.0.3:2379,10.0.0.4:2379"

    def test_public_address_fallback(self):
        """Nodes without a private address use the public one."""
        topo = Topology.from_nodes("orders", "16", [VpsNode(name="n1", public_ip="203.0.113.9")])

        assert topo.etcd_initial_cluster == "n1=http://203.0.113.9:2380"


class TestCompose:
    """Test docker-compose rendering."""

    def test_services(self):
        """Each node runs the full container set."""
        doc = yaml.safe_load(render_compose(topology(), "orders-node-2", "10.0.0.3"))

        assert set(doc["services"]) == {
            "etcd", "patroni", "node-exporter", "postgres-exporter", "pgbouncer"
        }
        assert doc["services"]["patroni"]["image"].endswith(":16")

    def test_etcd_membership(self):
        """etcd knows every peer and advertises the node's own address."""
        etcd = yaml.safe_load(render_compose(topology(), "orders-node-2", "10.0.0.3"))["services"]["etcd"]

        env = etcd["environment"]
        assert "ETCD_NAME=orders-node-2" in env
        assert "ETCD_ADVERTISE_CLIENT_URLS=http://10.0.0.3:2379" in env
        assert any(e.startswith("ETCD_INITIAL_CLUSTER=orders-node-1=") for e in env)

    def test_no_inline_secrets(self):
        """Passwords come from the env file, not the compose file."""
        compose = render_compose(topology(), "orders-node-1", "10.0.0.2")

        assert "pg-secret" not in compose
        assert "${POSTGRES_PASSWORD}" in compose


class TestPatroni:
    """Test patroni.yml rendering."""

    def test_scope_and_addresses(self):
        """The cluster slug is the Patroni scope."""
        doc = patroni_doc()

        assert doc["scope"] == "orders"
        assert doc["name"] == "orders-node-1"
        assert doc["postgresql"]["connect_address"] == "10.0.0.2:5432"
        assert doc["etcd3"]["hosts"].startswith("10.0.0.2:2379")

    def test_memory_by_size(self):
        """shared_buffers follows the machine size."""
        params = patroni_doc()["bootstrap"]["dcs"]["postgresql"]["parameters"]

        assert params["shared_buffers"] == MEMORY_SETTINGS["cx23"][0]

    def test_credentials(self):
        """Both roles get their passwords."""
        auth = patroni_doc()["postgresql"]["authentication"]

        assert auth["superuser"]["password"] == "pg-secret"
        assert auth["replication"]["password"] == "repl-secret"

    def test_archiving_optional(self):
        """WAL archiving is off until a stanza exists."""
        assert "archive_command" not in patroni_doc()["bootstrap"]["dcs"]["postgresql"]["parameters"]

        params = patroni_doc(archive_stanza="orders")["bootstrap"]["dcs"]["postgresql"]["parameters"]
        assert params["archive_command"] == "pgbackrest --stanza=orders archive-push %p"

    def test_initdb_without_recovery(self):
        """A fresh cluster bootstraps with initdb."""
        assert "method" not in patroni_doc()["bootstrap"]

    def test_recovery_bootstrap(self):
        """Recovery bootstraps from the source stanza up to the target time."""
        target = datetime(2026, 3, 1, 13, 30, tzinfo=timezone(timedelta(hours=1)))

        bootstrap = patroni_doc(
            recovery=RecoverySource(stanza="source", backup_label="20260301-120000F", target_time=target)
        )["bootstrap"]

        assert bootstrap["method"] == "pgbackrest"
        command = bootstrap["pgbackrest"]["command"]
        assert "--stanza=source" in command
        assert "--set=20260301-120000F" in command
        recovery = bootstrap["pgbackrest"]["recovery_conf"]
        assert recovery["recovery_target_time"] == "2026-03-01 12:30:00+00"
        assert recovery["recovery_target_action"] == "promote"

    def test_recovery_without_target(self):
        """Without a target time recovery replays to the end of the archive."""
        bootstrap = patroni_doc(recovery=RecoverySource(stanza="source"))["bootstrap"]

        assert "--set" not in bootstrap["pgbackrest"]["command"]
        assert "recovery_target_time" not in bootstrap["pgbackrest"]["recovery_conf"]


class TestPgBouncer:
    """Test PgBouncer files."""

    def test_pool_by_size(self):
        """Pool sizes follow the machine size."""
        ini = render_pgbouncer("cx33")

        assert "default_pool_size = 40\n" in ini
        assert "max_client_conn = 600\n" in ini

    def test_unknown_size_uses_default(self):
        """Unlisted sizes get the default pool."""
        assert f"default_pool_size = {DEFAULT_POOL[0]}\n" in render_pgbouncer("unknown")

    def test_userlist_md5(self):
        """The userlist stores the md5 form, never the password."""
        userlist = render_userlist("pg-secret")

        assert userlist == f'"postgres" "{pgbouncer_md5("pg-secret")}"\n'
        assert "pg-secret" not in userlist


class TestInitScript:
    """Test cloud-init user data."""

    def test_installs_docker(self):
        """The init script installs docker and prepares data directories."""
        script = render_init_script()

        assert script.startswith("#!/bin/bash\n")
        assert "get.docker.com" in script
        assert "/data/postgresql" in script
