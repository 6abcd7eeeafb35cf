"""Remote shell access to cluster machines over SSH.

The host key is fetched and checked against the pinned key before any
authenticated connection is opened; the connection is then restricted to
exactly that key.
"""
import asyncio
import contextlib
import logging
from dataclasses import dataclass
from pathlib import Path

import asyncssh
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.core.resilience import call_with_resilience, is_transient
from src.services.host_keys import HostKeyService, fingerprint

logger = logging.getLogger(__name__)


class RemoteCommandError(Exception):
    """A remote command exited with a non-zero status."""

    def __init__(self, host: str, description: str, exit_code: int, stderr: str):
        self.host = host
        self.description = description
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(
            f"'{description}' failed on {host} with exit code {exit_code}: {stderr.strip()[:500]}"
        )


class HostUnreachableError(Exception):
    """The host never accepted a remote shell connection."""

    def __init__(self, host: str, attempts: int):
        self.host = host
        self.attempts = attempts
        super().__init__(f"Host {host} not reachable over SSH after {attempts} attempts")


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class RemoteSession:
    host: str
    conn: asyncssh.SSHClientConnection

    async def close(self) -> None:
        self.conn.close()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self.conn.wait_closed(), timeout=5.0)


class RemoteHostChannel:
    """Executes commands on cluster machines with TOFU host verification."""

    def __init__(
        self,
        host_keys: HostKeyService,
        user: str,
        key_path: Path | str,
        port: int = 22,
        connect_timeout: float = 10.0,
        command_timeout: float = 120.0,
    ):
        self.host_keys = host_keys
        self.user = user
        self.key_path = str(key_path)
        self.port = port
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

    async def _fetch_host_key(self, host: str) -> asyncssh.SSHKey:
        key = await asyncio.wait_for(
            asyncssh.get_server_host_key(host, self.port),
            timeout=self.connect_timeout,
        )
        if key is None:
            raise ConnectionError(f"No host key presented by {host}")
        return key

    async def _open(self, host: str, host_key: asyncssh.SSHKey) -> asyncssh.SSHClientConnection:
        return await asyncssh.connect(
            host,
            port=self.port,
            username=self.user,
            client_keys=[self.key_path],
            known_hosts=([host_key], [], []),
            connect_timeout=self.connect_timeout,
        )

    async def connect(self, host: str, direct: bool = False) -> RemoteSession:
        """Open a session to host.

        Args:
            host: Address to connect to
            direct: Skip retry and breaker accounting, used while a freshly
                created machine is still booting

        Raises:
            HostKeyMismatchError: If the host key differs from the pinned one.
                No authenticated connection is attempted in that case.
        """
        if direct:
            host_key = await self._fetch_host_key(host)
        else:
            host_key = await call_with_resilience("ssh", self._fetch_host_key, host)

        await self.host_keys.verify(
            host, host_key.get_algorithm(), fingerprint(host_key.public_data)
        )

        if direct:
            conn = await self._open(host, host_key)
        else:
            conn = await call_with_resilience("ssh", self._open, host, host_key)
        return RemoteSession(host=host, conn=conn)

    async def execute(
        self,
        session: RemoteSession,
        command: str,
        timeout: float | None = None,
        description: str | None = None,
        check: bool = False,
    ) -> CommandResult:
        """Run a command in an open session.

        ``description`` replaces the command text in logs and errors; pass it
        whenever the command embeds credentials.
        """
        label = description or command
        logger.debug(f"[{session.host}] $ {label}")
        completed = await asyncio.wait_for(
            session.conn.run(command, check=False),
            timeout=timeout or self.command_timeout,
        )
        result = CommandResult(
            exit_code=completed.exit_status if completed.exit_status is not None else -1,
            stdout=_text(completed.stdout),
            stderr=_text(completed.stderr),
        )
        if check and not result.ok:
            raise RemoteCommandError(session.host, label, result.exit_code, result.stderr)
        return result

    async def write_file(
        self, session: RemoteSession, path: str, content: str, mode: int = 0o644
    ) -> None:
        """Upload a file over SFTP so its content never appears in a command line."""
        async with session.conn.start_sftp_client() as sftp:
            async with sftp.open(path, "w") as f:
                await f.write(content)
            await sftp.chmod(path, mode)
        logger.debug(f"[{session.host}] wrote {path} ({len(content)} bytes)")

    async def run(
        self,
        host: str,
        command: str,
        timeout: float | None = None,
        description: str | None = None,
        check: bool = False,
        direct: bool = False,
    ) -> CommandResult:
        """Connect, run a single command, disconnect."""
        session = await self.connect(host, direct=direct)
        try:
            return await self.execute(
                session, command, timeout=timeout, description=description, check=check
            )
        finally:
            await session.close()

    async def wait_until_ready(
        self,
        host: str,
        max_attempts: int = 20,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
    ) -> None:
        """Poll host until it accepts a session, backing off exponentially.

        Host key mismatches abort immediately.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=base_delay, max=max_delay),
            retry=retry_if_exception(_retry_readiness),
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await self.run(
                        host, "echo ready", timeout=self.connect_timeout, direct=True
                    )
                    if not result.ok:
                        raise ConnectionError(f"{host} not ready: exit {result.exit_code}")
        except RetryError as e:
            logger.warning(f"SSH readiness failed for {host}: {e.last_attempt.exception()}")
            raise HostUnreachableError(host, max_attempts) from e
        logger.info(f"SSH ready on {host}")


def _retry_readiness(exc: BaseException) -> bool:
    # A booting machine refuses connections or resets them; anything else
    # transient-looking is worth another poll too, except trust failures.
    return is_transient(exc) or isinstance(exc, asyncssh.Error)


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    return str(value)
