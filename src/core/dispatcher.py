"""Commit-gated background workflow dispatch.

Request handlers record a workflow intent on their database session with
``defer``. The intent is promoted when the session's transaction commits and
dropped when it rolls back, so a workflow never starts against a row that was
never persisted. ``release`` then hands committed intents to a bounded worker
pool. When the queue is full and no more workers may be spawned, the caller
runs the workflow itself.
"""
import asyncio
import logging
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings

logger = logging.getLogger(__name__)

PENDING_KEY = "pending_workflows"
COMMITTED_KEY = "committed_workflows"
HOOKED_KEY = "workflow_hooks_installed"


class WorkflowAlreadyActiveError(Exception):
    """A workflow is already running or queued for this entity."""

    def __init__(self, entity_key: str, name: str):
        self.entity_key = entity_key
        self.name = name
        super().__init__(f"Workflow already active for {entity_key}, refusing {name}")


@dataclass
class WorkflowIntent:
    """A workflow waiting to be started."""

    name: str
    entity_key: str
    func: Callable[..., Awaitable[Any]]
    args: tuple = ()
    kwargs: dict = field(default_factory=dict)
    after_active: bool = False

    def describe(self) -> str:
        return f"{self.name}[{self.entity_key}] args={self.args!r} kwargs={self.kwargs!r}"


def _on_commit(sync_session) -> None:
    pending = sync_session.info.pop(PENDING_KEY, [])
    if pending:
        sync_session.info.setdefault(COMMITTED_KEY, []).extend(pending)


def _on_rollback(sync_session) -> None:
    dropped = sync_session.info.pop(PENDING_KEY, [])
    for intent in dropped:
        logger.info(f"Dropping workflow {intent.name}[{intent.entity_key}] after rollback")


class AsyncTaskDispatcher:
    """Bounded asyncio worker pool with per-entity exclusivity."""

    def __init__(
        self,
        core_workers: int = 4,
        max_workers: int = 10,
        queue_capacity: int = 50,
        idle_timeout: float = 60.0,
    ):
        if core_workers < 1 or max_workers < core_workers:
            raise ValueError("Need 1 <= core_workers <= max_workers")
        self.core_workers = core_workers
        self.max_workers = max_workers
        self.queue_capacity = queue_capacity
        self.idle_timeout = idle_timeout

        self._queue: asyncio.Queue | None = None
        self._workers: set[asyncio.Task] = set()
        self._idle = 0
        self._active: set[str] = set()
        self._waiting: dict[str, deque[WorkflowIntent]] = defaultdict(deque)

    @property
    def running(self) -> bool:
        return self._queue is not None

    @property
    def worker_count(self) -> int:
        return len(self._workers)

    def is_active(self, entity_key: str) -> bool:
        return entity_key in self._active

    def start(self) -> None:
        """Spawn the core workers. Must be called from a running event loop."""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_capacity)
        for _ in range(self.core_workers):
            self._spawn(core=True)
        logger.info(
            f"Dispatcher started ({self.core_workers} core / {self.max_workers} max workers, "
            f"queue {self.queue_capacity})"
        )

    async def stop(self) -> None:
        """Cancel workers. Queued but unstarted workflows are discarded."""
        if not self.running:
            return
        workers = list(self._workers)
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        dropped = self._queue.qsize()
        if dropped:
            logger.warning(f"Dispatcher stopped with {dropped} queued workflows")
        self._queue = None
        self._workers.clear()
        self._idle = 0
        self._active.clear()
        self._waiting.clear()
        logger.info("Dispatcher stopped")

    # ------------------------------------------------------------------
    # Commit gating
    # ------------------------------------------------------------------

    def defer(
        self,
        session: AsyncSession,
        name: str,
        entity_key: str,
        func: Callable[..., Awaitable[Any]],
        *args,
        after_active: bool = False,
        **kwargs,
    ) -> WorkflowIntent:
        """Attach a workflow to the session's current transaction.

        Raises:
            WorkflowAlreadyActiveError: If the entity already has a workflow
                and the intent does not ask to run after it.
        """
        if not after_active and self.is_active(entity_key):
            raise WorkflowAlreadyActiveError(entity_key, name)
        sync_session = session.sync_session
        if not sync_session.info.get(HOOKED_KEY):
            event.listen(sync_session, "after_commit", _on_commit)
            event.listen(sync_session, "after_rollback", _on_rollback)
            sync_session.info[HOOKED_KEY] = True

        intent = WorkflowIntent(
            name=name,
            entity_key=entity_key,
            func=func,
            args=args,
            kwargs=kwargs,
            after_active=after_active,
        )
        sync_session.info.setdefault(PENDING_KEY, []).append(intent)
        return intent

    async def release(self, session: AsyncSession) -> int:
        """Submit every workflow whose transaction has committed."""
        committed = session.sync_session.info.pop(COMMITTED_KEY, [])
        for intent in committed:
            try:
                await self.submit(intent)
            except WorkflowAlreadyActiveError as e:
                logger.error(str(e))
        return len(committed)

    async def commit(self, session: AsyncSession) -> None:
        """Commit the session and start the workflows it carried."""
        await session.commit()
        await self.release(session)

    # ------------------------------------------------------------------
    # Pool
    # ------------------------------------------------------------------

    async def submit(self, intent: WorkflowIntent) -> None:
        """Queue a workflow, enforcing one active workflow per entity.

        Raises:
            WorkflowAlreadyActiveError: If the entity is busy and the intent
                does not ask to run after the active one.
        """
        if intent.entity_key in self._active:
            if not intent.after_active:
                raise WorkflowAlreadyActiveError(intent.entity_key, intent.name)
            logger.info(f"Queueing {intent.name} behind active workflow for {intent.entity_key}")
            self._waiting[intent.entity_key].append(intent)
            return

        self._active.add(intent.entity_key)
        await self._enqueue(intent)

    async def _enqueue(self, intent: WorkflowIntent) -> None:
        if not self.running:
            await self._run(intent)
            return
        try:
            self._queue.put_nowait(intent)
        except asyncio.QueueFull:
            if len(self._workers) < self.max_workers:
                self._spawn(core=False)
                await self._queue.put(intent)
                return
            logger.warning(f"Dispatcher saturated, running {intent.name} on the caller")
            await self._run(intent)
            return
        if self._idle == 0 and len(self._workers) < self.max_workers:
            self._spawn(core=False)

    def _spawn(self, core: bool) -> None:
        task = asyncio.create_task(self._worker(core))
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)

    async def _worker(self, core: bool) -> None:
        queue = self._queue
        while True:
            self._idle += 1
            try:
                if core:
                    intent = await queue.get()
                else:
                    intent = await asyncio.wait_for(queue.get(), timeout=self.idle_timeout)
            except asyncio.TimeoutError:
                return
            finally:
                self._idle -= 1
            try:
                await self._run(intent)
            finally:
                queue.task_done()

    async def _run(self, intent: WorkflowIntent) -> None:
        logger.debug(f"Starting workflow {intent.describe()}")
        try:
            await intent.func(*intent.args, **intent.kwargs)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Workflow {intent.describe()} raised")
        finally:
            await self._finish(intent.entity_key)

    async def _finish(self, entity_key: str) -> None:
        waiting = self._waiting.get(entity_key)
        if waiting:
            following = waiting.popleft()
            if not waiting:
                del self._waiting[entity_key]
            await self._enqueue(following)
            return
        self._active.discard(entity_key)

    async def join(self) -> None:
        """Wait until every queued workflow has been processed."""
        if self.running:
            await self._queue.join()


# Global instance
dispatcher = AsyncTaskDispatcher(
    core_workers=settings.dispatcher.core_workers,
    max_workers=settings.dispatcher.max_workers,
    queue_capacity=settings.dispatcher.queue_capacity,
)
