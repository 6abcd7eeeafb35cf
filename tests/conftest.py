"""Shared test fixtures."""
import functools
import os

# Settings are read at import time, so point them at test values first
os.environ.setdefault("PGCLUSTER_DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PGCLUSTER_SCHEDULER_ENABLED", "false")
os.environ.setdefault("PGCLUSTER_INTERNAL_API_KEY", "test-internal-key")

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import selectinload
from sqlalchemy.pool import StaticPool

from src.config.settings import Settings
from src.core.backups import BackupOrchestrator
from src.core.control_plane import ControlPlane
from src.core.dns_sync import DnsSyncJob
from src.core.exports import ExportOrchestrator
from src.core.progress import ProgressService
from src.core.provisioning import ProvisioningOrchestrator
from src.core.resilience import reset_breakers
from src.core.restore import RestoreOrchestrator
from src.db.database import async_session
from src.db.models import Backup, Base, Cluster, VpsNode
from src.main import app
from src.utils.crypto import EncryptionService


@pytest.fixture(autouse=True)
def _fresh_breakers():
    """Circuit breaker state is process-wide; start every test closed."""
    reset_breakers()
    yield
    reset_breakers()


@pytest.fixture
def test_settings():
    """Settings with storage and DNS configured."""
    return Settings(
        secret_key="test-secret-key",
        s3={"access_key": "AK", "secret_key": "SK", "bucket": "test-bucket"},
        cloudflare={"api_token": "cf-token", "zone_id": "zone"},
        cluster={"base_domain": "db.test", "leader_wait_interval": 0, "etcd_wait_interval": 0},
    )


@pytest_asyncio.fixture
async def session_factory():
    """In-memory database shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    """A session on the test database."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def task_dispatcher():
    """Dispatcher stand-in that records deferred workflows without running them."""
    dispatcher = MagicMock()

    async def commit(session):
        await session.commit()

    dispatcher.commit = AsyncMock(side_effect=commit)
    dispatcher.release = AsyncMock(return_value=0)
    dispatcher.is_active = MagicMock(return_value=False)
    return dispatcher


def build_test_control_plane(session_factory, config: Settings, task_dispatcher) -> ControlPlane:
    """Real orchestrators over mocked external services."""
    encryption = EncryptionService(config.secret_key)
    provider = MagicMock()
    provider.get_machine_type_availability = AsyncMock(return_value={"fsn1", "nbg1", "hel1"})
    provider.close = AsyncMock()
    dns = MagicMock()
    dns.close = AsyncMock()
    storage = MagicMock()
    storage.is_configured = True
    storage.bucket = config.s3.bucket
    prometheus = MagicMock()
    prometheus.close = AsyncMock()
    host_keys = MagicMock()
    host_keys.invalidate_host = AsyncMock(return_value=True)
    channel = MagicMock()
    patroni = MagicMock()
    pgbackrest = MagicMock()
    bootstrapper = MagicMock()
    progress = ProgressService(session_factory)

    provisioning = ProvisioningOrchestrator(
        session_factory, provider, dns, channel, bootstrapper, encryption, progress, task_dispatcher, config
    )
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
        backups=BackupOrchestrator(
            session_factory, pgbackrest, patroni, storage, progress, task_dispatcher, config
        ),
        restores=RestoreOrchestrator(
            session_factory,
            provisioning,
            bootstrapper,
            pgbackrest,
            patroni,
            encryption,
            progress,
            task_dispatcher,
            config,
        ),
        exports=ExportOrchestrator(session_factory, channel, patroni, storage, task_dispatcher, config),
        dns_sync=DnsSyncJob(session_factory, patroni, dns, config),
    )


@pytest.fixture
def control_plane(test_settings, task_dispatcher):
    """Control plane for API tests, bound to the application database."""
    return build_test_control_plane(async_session, test_settings, task_dispatcher)


@pytest.fixture
def client(control_plane):
    """Test client over a fresh in-memory application database.

    The lifespan creates the schema; shutting it down disposes the engine,
    which discards the in-memory database.
    """
    with TestClient(app) as client:
        app.state.control_plane = control_plane
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def encryption(test_settings):
    return EncryptionService(test_settings.secret_key)


async def persist_cluster(
    session_factory, encryption, slug="orders", status="running", node_count=3, nodes=True, **fields
) -> Cluster:
    """Persist a cluster with nodes and return it fully loaded."""
    async with session_factory() as db:
        cluster = Cluster(
            name=slug.title(),
            slug=slug,
            status=status,
            node_count=node_count,
            node_size="cx23",
            region="fsn1",
            postgres_version="16",
            hostname=f"{slug}.db.test",
            postgres_password=encryption.encrypt("pg-secret"),
            provisioning_progress=100 if status == "running" else 0,
            **fields,
        )
        if nodes:
            cluster.nodes = [
                VpsNode(
                    name=f"{slug}-node-{i + 1}",
                    provider_id=str(1000 + i),
                    public_ip=f"203.0.113.{i + 1}",
                    private_ip=f"10.0.0.{i + 2}",
                    server_type="cx23",
                    region="fsn1",
                    status="running",
                    role="leader" if i == 0 else "replica",
                )
                for i in range(node_count)
            ]
        db.add(cluster)
        await db.commit()
        cluster_id = cluster.id

    async with session_factory() as db:
        result = await db.execute(
            select(Cluster).options(selectinload(Cluster.nodes)).where(Cluster.id == cluster_id)
        )
        return result.scalar_one()


async def persist_backup(session_factory, cluster_id, **fields) -> Backup:
    """Persist a backup row for a cluster."""
    fields.setdefault("status", "completed")
    fields.setdefault("backup_type", "full")
    fields.setdefault("current_step", "completed" if fields["status"] == "completed" else "pending")
    async with session_factory() as db:
        backup = Backup(cluster_id=cluster_id, **fields)
        db.add(backup)
        await db.commit()
        await db.refresh(backup)
        return backup


@pytest.fixture
def make_cluster(session_factory, encryption):
    """Persist a cluster with nodes and return it fully loaded."""

    async def _make(**kwargs) -> Cluster:
        return await persist_cluster(session_factory, encryption, **kwargs)

    return _make


@pytest.fixture
def make_backup(session_factory):
    """Persist a backup row for a cluster."""

    async def _make(cluster_id, **fields) -> Backup:
        return await persist_backup(session_factory, cluster_id, **fields)

    return _make


@pytest.fixture
def seed(client, encryption):
    """Seed the application database from synchronous API tests."""

    class Seeder:
        def cluster(self, **kwargs) -> Cluster:
            return client.portal.call(
                functools.partial(persist_cluster, async_session, encryption, **kwargs)
            )

        def backup(self, cluster_id, **fields) -> Backup:
            return client.portal.call(
                functools.partial(persist_backup, async_session, cluster_id, **fields)
            )

    return Seeder()
