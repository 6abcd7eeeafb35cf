"""Logical exports: pg_dump on the leader, streamed to object storage."""
import logging
import shlex
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_fixed

from src.config.settings import Settings
from src.core.dispatcher import AsyncTaskDispatcher
from src.core.state_machine import ClusterStatus, ExportStatus
from src.db.models import Cluster, Export
from src.services.patroni import PatroniService
from src.services.remote_shell import RemoteHostChannel
from src.services.s3_storage import S3Storage

logger = logging.getLogger(__name__)

DUMP_PATH = "/tmp/export.sql.gz"
DUMP_ERROR_LOG = "/tmp/pg_dump_err.log"
# --no-owner and --no-privileges keep the dump loadable into other servers
DUMP_COMMAND = (
    "docker exec -u postgres patroni bash -c 'set -o pipefail; "
    f"pg_dump -Fp --no-owner --no-privileges postgres 2>{DUMP_ERROR_LOG} | gzip > {DUMP_PATH} "
    f"|| {{ cat {DUMP_ERROR_LOG}; exit 1; }}'"
)
SIZE_COMMAND = f"docker exec patroni sh -c 'wc -c < {DUMP_PATH}'"
CLEANUP_COMMAND = f"docker exec patroni rm -f {DUMP_PATH} {DUMP_ERROR_LOG}"
UPLOAD_URL_SECONDS = 3600

ACTIVE_EXPORT_STATES = (ExportStatus.PENDING.value, ExportStatus.IN_PROGRESS.value)


class ExportError(Exception):
    """An export could not be produced or uploaded."""
    pass


class ExportRequestError(ValueError):
    """An export request was rejected."""
    pass


def export_key(cluster: Cluster, now: datetime) -> str:
    stamp = now.strftime("%Y-%m-%dT%H-%M-%SZ")
    return f"exports/{cluster.id}/{cluster.slug}_{stamp}.sql.gz"


class ExportOrchestrator:
    """Creates pg_dump exports and hands out download links."""

    def __init__(
        self,
        session_factory,
        channel: RemoteHostChannel,
        patroni: PatroniService,
        storage: S3Storage,
        task_dispatcher: AsyncTaskDispatcher,
        config: Settings,
    ):
        self._session_factory = session_factory
        self.channel = channel
        self.patroni = patroni
        self.storage = storage
        self.dispatcher = task_dispatcher
        self.config = config

    @property
    def download_ttl(self) -> timedelta:
        return timedelta(hours=self.config.s3.export_download_hours)

    async def create_export(self, db: AsyncSession, cluster: Cluster) -> Export:
        """Persist a pending export and schedule it to run after commit."""
        if not self.storage.is_configured:
            raise ExportRequestError("Export storage is not configured")
        if cluster.status != ClusterStatus.RUNNING.value:
            raise ExportRequestError("Cluster must be running to create an export")

        active = await db.execute(
            select(Export.id).where(
                Export.cluster_id == cluster.id, Export.status.in_(ACTIVE_EXPORT_STATES)
            )
        )
        if active.first() is not None:
            raise ExportRequestError("An export is already in progress for this cluster")

        export = Export(cluster_id=cluster.id, status=ExportStatus.PENDING.value, format="pg_dump")
        db.add(export)
        await db.flush()
        self.dispatcher.defer(db, "export-execute", f"export:{export.id}", self.execute_export, export.id)
        logger.info(f"Export {export.id} requested for cluster {cluster.slug}")
        return export

    async def list_exports(self, db: AsyncSession, cluster_id: str) -> list[Export]:
        result = await db.execute(
            select(Export).where(Export.cluster_id == cluster_id).order_by(Export.created_at.desc())
        )
        return list(result.scalars().all())

    async def resume_interrupted(self, db: AsyncSession) -> int:
        """Defer exports a stopped process never finished. A dump restarts from scratch."""
        result = await db.execute(select(Export).where(Export.status.in_(ACTIVE_EXPORT_STATES)))
        resumed = 0
        for export in result.scalars().all():
            self.dispatcher.defer(db, "export-execute", f"export:{export.id}", self.execute_export, export.id)
            resumed += 1
        return resumed

    async def refresh_download_url(self, db: AsyncSession, export: Export) -> Export:
        if export.status != ExportStatus.COMPLETED.value or not export.s3_path:
            raise ExportRequestError("Only completed exports have a download link")
        export.download_url = self.storage.presigned_get_url(
            export.s3_path, int(self.download_ttl.total_seconds())
        )
        export.download_expires_at = datetime.now(timezone.utc) + self.download_ttl
        await db.flush()
        return export

    async def delete_export(self, db: AsyncSession, export: Export) -> None:
        if export.status == ExportStatus.IN_PROGRESS.value:
            raise ExportRequestError("Cannot delete an export that is in progress")
        if export.s3_path and self.storage.is_configured:
            try:
                await self.storage.delete_file(export.s3_path)
            except Exception as e:
                logger.warning(f"Failed to delete export file {export.s3_path}: {e}")
        await db.delete(export)
        await db.flush()
        logger.info(f"Export {export.id} deleted")

    async def execute_export(self, export_id: str) -> None:
        """Run an export, retrying the whole dump on failure."""
        settings = self.config.backup
        retrying = AsyncRetrying(
            stop=stop_after_attempt(settings.export_max_attempts),
            wait=wait_fixed(settings.export_retry_delay),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"Retrying export {export_id} "
                            f"(attempt {attempt.retry_state.attempt_number})"
                        )
                    await self._run_export(export_id)
        except RetryError as e:
            error = e.last_attempt.exception()
            logger.error(f"Export {export_id} failed after {settings.export_max_attempts} attempts: {error}")
            await self._set_status(export_id, ExportStatus.FAILED, error_message=str(error)[:4000])

    async def _run_export(self, export_id: str) -> None:
        async with self._session_factory() as db:
            result = await db.execute(
                select(Export)
                .options(selectinload(Export.cluster).selectinload(Cluster.nodes))
                .where(Export.id == export_id)
            )
            export = result.scalar_one_or_none()
            if export is None:
                logger.warning(f"Export {export_id} no longer exists")
                return
            cluster = export.cluster

        now = datetime.now(timezone.utc)
        key = export_key(cluster, now)
        await self._set_status(
            export_id, ExportStatus.IN_PROGRESS, started_at=now, s3_path=key, error_message=None
        )

        leader = await self.patroni.find_leader(cluster.nodes)
        if leader is None:
            raise ExportError(f"No leader node found for cluster {cluster.slug}")
        timeout = self.config.backup.export_timeout_minutes * 60

        dump = await self.channel.run(leader.public_ip, DUMP_COMMAND, timeout=timeout)
        if not dump.ok:
            raise ExportError(f"pg_dump failed: {dump.stdout.strip() or dump.stderr.strip()}")

        size = await self.channel.run(leader.public_ip, SIZE_COMMAND)
        if not size.ok or not size.stdout.strip().isdigit() or int(size.stdout.strip()) == 0:
            raise ExportError("Export file is empty")

        # Upload from the node so the dump never passes through this process
        put_url = self.storage.presigned_put_url(key, UPLOAD_URL_SECONDS)
        upload = await self.channel.run(
            leader.public_ip,
            f"docker exec patroni curl -sf -X PUT -T {DUMP_PATH} {shlex.quote(put_url)}",
            timeout=timeout,
            description=f"upload {DUMP_PATH} to s3://{self.storage.bucket}/{key}",
        )
        if not upload.ok:
            raise ExportError(f"Upload failed: {upload.stderr.strip()}")

        uploaded = await self.storage.object_size(key)
        if not uploaded:
            raise ExportError("Export upload verification failed, object not found")

        try:
            await self.channel.run(leader.public_ip, CLEANUP_COMMAND)
        except Exception as e:
            logger.warning(f"Failed to remove dump file on {leader.name}: {e}")

        await self._set_status(
            export_id,
            ExportStatus.COMPLETED,
            size_bytes=uploaded,
            download_url=self.storage.presigned_get_url(key, int(self.download_ttl.total_seconds())),
            download_expires_at=datetime.now(timezone.utc) + self.download_ttl,
            completed_at=datetime.now(timezone.utc),
        )
        logger.info(f"Export {export_id} of {cluster.slug} completed ({uploaded} bytes)")

    async def _set_status(self, export_id: str, status: ExportStatus, **fields) -> None:
        async with self._session_factory() as db:
            export = await db.get(Export, export_id)
            if export is None:
                return
            export.status = status.value
            for name, value in fields.items():
                setattr(export, name, value)
            await db.commit()
