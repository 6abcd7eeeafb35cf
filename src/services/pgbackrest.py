"""pgBackRest commands executed inside the patroni container."""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from src.config.settings import S3Settings
from src.db.models import Cluster, VpsNode
from src.services.remote_shell import RemoteHostChannel

logger = logging.getLogger(__name__)

CONFIG_DIR = "/etc/pgbackrest"
CONFIG_PATH = f"{CONFIG_DIR}/pgbackrest.conf"
LOG_PATH = "/var/log/pgbackrest"
SPOOL_PATH = "/var/spool/pgbackrest"
PG_DATA_PATH = "/var/lib/postgresql/data"
PG_SOCKET_PATH = "/var/run/postgresql"


class BackupError(Exception):
    """pgBackRest reported a failure."""
    pass


@dataclass
class BackupInfo:
    """One entry of ``pgbackrest info --output=json``."""
    label: str
    type: str
    wal_start_lsn: str | None = None
    wal_stop_lsn: str | None = None
    start_time: datetime | None = None
    stop_time: datetime | None = None
    size_bytes: int | None = None
    database_size_bytes: int | None = None
    prior_label: str | None = None


def _epoch(value) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def parse_info(output: str) -> list[BackupInfo]:
    """Parse ``info --output=json``. Returns an empty list on unparseable output."""
    try:
        root = json.loads(output)
    except (json.JSONDecodeError, TypeError):
        logger.error("Failed to parse pgBackRest info output")
        return []
    if not isinstance(root, list) or not root:
        return []

    backups = []
    for entry in root[0].get("backup") or []:
        archive = entry.get("archive") or {}
        timestamp = entry.get("timestamp") or {}
        repository = (entry.get("info") or {}).get("repository") or {}
        database = entry.get("database") or {}
        backups.append(
            BackupInfo(
                label=entry.get("label"),
                type=entry.get("type"),
                wal_start_lsn=archive.get("start"),
                wal_stop_lsn=archive.get("stop"),
                start_time=_epoch(timestamp.get("start")),
                stop_time=_epoch(timestamp.get("stop")),
                size_bytes=repository.get("size"),
                database_size_bytes=database.get("repo-size"),
                prior_label=entry.get("prior"),
            )
        )
    return backups


def format_target_time(target: datetime) -> str:
    """pgBackRest --target format, always expressed in UTC."""
    if target.tzinfo is not None:
        target = target.astimezone(timezone.utc)
    return target.strftime("%Y-%m-%d %H:%M:%S") + "+00"


def restore_command(stanza: str, label: str | None = None, target_time: datetime | None = None) -> str:
    parts = [f"docker exec patroni pgbackrest --stanza={stanza} --delta"]
    if label:
        parts.append(f"--set={label}")
    if target_time is not None:
        parts.append(f'--type=time --target="{format_target_time(target_time)}" --target-action=promote')
    parts.append("restore")
    return " ".join(parts)


class PgBackRestService:
    """Configures stanzas and runs backup, info, expire and restore."""

    def __init__(self, channel: RemoteHostChannel, s3: S3Settings):
        self.channel = channel
        self.s3 = s3

    def render_config(self, cluster: Cluster, retention_full: int = 2, retention_diff: int = 7) -> str:
        """pgbackrest.conf for cluster's own repository path and stanza."""
        endpoint = (self.s3.endpoint or f"s3.{self.s3.region}.amazonaws.com")
        endpoint = endpoint.replace("https://", "").replace("http://", "")
        return (
            "[global]\n"
            "repo1-type=s3\n"
            f"repo1-s3-endpoint={endpoint}\n"
            f"repo1-s3-bucket={self.s3.bucket}\n"
            f"repo1-s3-region={self.s3.region}\n"
            f"repo1-s3-key={self.s3.access_key}\n"
            f"repo1-s3-key-secret={self.s3.secret_key}\n"
            f"repo1-path=/pgbackrest/{cluster.id}\n"
            f"repo1-retention-full={retention_full}\n"
            f"repo1-retention-diff={retention_diff}\n"
            "repo1-s3-uri-style=path\n"
            "process-max=2\n"
            "compress-type=lz4\n"
            "archive-async=y\n"
            f"spool-path={SPOOL_PATH}\n"
            f"log-path={LOG_PATH}\n"
            "\n"
            f"[{cluster.slug}]\n"
            f"pg1-path={PG_DATA_PATH}\n"
            "pg1-port=5432\n"
            f"pg1-socket-path={PG_SOCKET_PATH}\n"
        )

    async def configure(self, node: VpsNode, cluster: Cluster) -> None:
        """Upload pgbackrest.conf for cluster to node.

        When restoring into a new cluster, pass the source cluster first so the
        node reads the source repository, then call again with the new one.
        """
        session = await self.channel.connect(node.public_ip)
        try:
            await self.channel.execute(
                session,
                f"mkdir -p {CONFIG_DIR} {LOG_PATH} {SPOOL_PATH} && "
                f"chown 999:999 {CONFIG_DIR} && chmod 750 {CONFIG_DIR}",
                check=True,
            )
            await self.channel.write_file(
                session, CONFIG_PATH, self.render_config(cluster), mode=0o640
            )
            await self.channel.execute(
                session,
                f"chown 999:999 {CONFIG_PATH} && chown -R 999:999 {LOG_PATH} {SPOOL_PATH}",
                check=True,
            )
        finally:
            await session.close()
        logger.info(f"pgBackRest configured on {node.name} for stanza {cluster.slug}")

    async def create_stanza(self, node: VpsNode, stanza: str) -> None:
        result = await self.channel.run(
            node.public_ip, f"docker exec patroni pgbackrest --stanza={stanza} stanza-create"
        )
        if not result.ok:
            raise BackupError(f"stanza-create failed: {result.stdout or result.stderr}")
        # Archiving may need a moment after a restart; every backup re-checks
        await self.check(node, stanza)
        logger.info(f"Stanza {stanza} created")

    async def check(self, node: VpsNode, stanza: str) -> bool:
        """Whether WAL archiving to the repository works for the stanza."""
        result = await self.channel.run(
            node.public_ip, f"docker exec patroni pgbackrest --stanza={stanza} check"
        )
        if not result.ok:
            logger.warning(f"pgBackRest check for {stanza} failed: {result.stdout or result.stderr}")
        return result.ok

    async def info(self, node: VpsNode, stanza: str) -> list[BackupInfo]:
        result = await self.channel.run(
            node.public_ip, f"docker exec patroni pgbackrest --stanza={stanza} info --output=json"
        )
        if not result.ok:
            logger.warning(f"pgBackRest info failed for {stanza}: {result.stderr}")
            return []
        return parse_info(result.stdout)

    async def latest_backup(self, node: VpsNode, stanza: str) -> BackupInfo | None:
        backups = await self.info(node, stanza)
        return backups[-1] if backups else None

    async def has_full_backup(self, node: VpsNode, stanza: str) -> bool:
        return any(b.type == "full" for b in await self.info(node, stanza))

    async def run_backup(
        self, node: VpsNode, stanza: str, backup_type: str, timeout: float = 7200
    ) -> BackupInfo:
        """Run a backup and return the entry pgBackRest recorded for it."""
        logger.info(f"Running {backup_type} backup for stanza {stanza} on {node.name}")
        result = await self.channel.run(
            node.public_ip,
            f"docker exec patroni pgbackrest --stanza={stanza} --type={backup_type} backup",
            timeout=timeout,
        )
        if not result.ok:
            # pgbackrest reports errors on stdout
            raise BackupError(f"Backup failed: {(result.stdout or result.stderr).strip()[:1000]}")

        latest = await self.latest_backup(node, stanza)
        if latest is None:
            raise BackupError("Backup finished but pgBackRest info lists no backups")
        return latest

    async def expire(self, node: VpsNode, stanza: str, label: str | None = None) -> None:
        command = f"docker exec patroni pgbackrest --stanza={stanza} expire"
        if label:
            command += f" --set={label}"
        result = await self.channel.run(node.public_ip, command)
        if not result.ok:
            raise BackupError(f"Expire failed: {(result.stdout or result.stderr).strip()[:1000]}")

    async def restore(
        self,
        node: VpsNode,
        stanza: str,
        label: str | None = None,
        target_time: datetime | None = None,
        timeout: float = 7200,
    ) -> None:
        """Restore in place: stop PostgreSQL, restore, start it again."""
        session = await self.channel.connect(node.public_ip)
        try:
            await self.channel.execute(
                session, f"docker exec -u postgres patroni pg_ctl stop -D {PG_DATA_PATH} -m fast"
            )
            command = restore_command(stanza, label, target_time)
            logger.info(f"Restoring {stanza} on {node.name}: {command}")
            result = await self.channel.execute(session, command, timeout=timeout)
            if not result.ok:
                raise BackupError(f"Restore failed: {(result.stderr or result.stdout).strip()[:1000]}")
            await self.channel.execute(
                session, f"docker exec -u postgres patroni pg_ctl start -D {PG_DATA_PATH}", check=True
            )
        finally:
            await session.close()
