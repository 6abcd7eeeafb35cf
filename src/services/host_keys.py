"""Trust-on-first-use verification of remote host keys."""
import base64
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from src.core.resilience import NonRetryableError
from src.db.models import SshHostKey

logger = logging.getLogger(__name__)


class HostKeyMismatchError(NonRetryableError):
    """The host presented a key that differs from the pinned one."""

    def __init__(self, host: str, expected: str, presented: str):
        self.host = host
        self.expected = expected
        self.presented = presented
        super().__init__(
            f"Host key for {host} does not match the pinned key "
            f"(expected SHA256:{expected}, got SHA256:{presented}). "
            "Invalidate the host explicitly if the machine was replaced."
        )


@dataclass(frozen=True)
class PinnedKey:
    key_type: str
    fingerprint: str


def fingerprint(key_blob: bytes) -> str:
    """SHA-256 fingerprint of a public key blob, OpenSSH style without prefix."""
    digest = hashlib.sha256(key_blob).digest()
    return base64.b64encode(digest).decode().rstrip("=")


class HostKeyService:
    """Pins the first key seen for a host and rejects any later change.

    Records are never removed implicitly; ``invalidate_host`` is the only
    way to make an address trustable again.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory
        self._cache: dict[str, PinnedKey] = {}

    async def verify(self, host: str, key_type: str, presented: str) -> bool:
        """Verify a presented fingerprint for host.

        Returns:
            True if the key was pinned by this call (first contact),
            False if it matched an existing pin.

        Raises:
            HostKeyMismatchError: If the host is pinned to another key.
        """
        pinned = self._cache.get(host)
        if pinned is None:
            pinned = await self._load(host)

        if pinned is None:
            pinned = await self._pin(host, key_type, presented)
            if pinned.fingerprint == presented:
                return True

        if pinned.fingerprint != presented:
            logger.error(
                f"Host key mismatch for {host}: pinned {pinned.key_type} "
                f"SHA256:{pinned.fingerprint}, presented {key_type} SHA256:{presented}"
            )
            raise HostKeyMismatchError(host, pinned.fingerprint, presented)

        await self._touch(host)
        return False

    async def get(self, host: str) -> PinnedKey | None:
        return self._cache.get(host) or await self._load(host)

    async def invalidate_host(self, host: str) -> bool:
        """Forget the pinned key for host. Returns True if a record existed."""
        self._cache.pop(host, None)
        async with self._session_factory() as db:
            result = await db.execute(delete(SshHostKey).where(SshHostKey.host == host))
            await db.commit()
        removed = result.rowcount > 0
        if removed:
            logger.warning(f"Host key for {host} invalidated, next contact re-pins")
        return removed

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _load(self, host: str) -> PinnedKey | None:
        async with self._session_factory() as db:
            result = await db.execute(select(SshHostKey).where(SshHostKey.host == host))
            record = result.scalar_one_or_none()
        if record is None:
            return None
        pinned = PinnedKey(record.key_type, record.fingerprint)
        self._cache[host] = pinned
        return pinned

    async def _pin(self, host: str, key_type: str, presented: str) -> PinnedKey:
        now = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as db:
                db.add(
                    SshHostKey(
                        host=host,
                        key_type=key_type,
                        fingerprint=presented,
                        first_seen_at=now,
                        last_verified_at=now,
                    )
                )
                await db.commit()
        except IntegrityError:
            # A concurrent first contact won the race; trust its record
            existing = await self._load(host)
            if existing is not None:
                return existing
            raise
        logger.info(f"Pinned {key_type} host key for {host} (SHA256:{presented})")
        pinned = PinnedKey(key_type, presented)
        self._cache[host] = pinned
        return pinned

    async def _touch(self, host: str) -> None:
        async with self._session_factory() as db:
            result = await db.execute(select(SshHostKey).where(SshHostKey.host == host))
            record = result.scalar_one_or_none()
            if record is not None:
                record.last_verified_at = datetime.now(timezone.utc)
                await db.commit()
