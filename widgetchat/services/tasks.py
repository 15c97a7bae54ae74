import asyncio
import contextlib
import logging

logger = logging.getLogger(__name__)


class BackgroundRunner:
    """
    Fire-and-forget execution for pipeline stages.

    Tasks are referenced until they finish so the event loop cannot garbage
    collect them mid-flight, and every failure is logged from the done callback
    instead of disappearing with an un-awaited future.
    """

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro, name: str | None = None) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def spawn_later(self, delay: float, coro_factory, name: str | None = None) -> asyncio.Task:
        """Start `coro_factory()` after `delay` seconds."""

        async def _delayed():
            await asyncio.sleep(delay)
            await coro_factory()

        return self.spawn(_delayed(), name=name)

    def _on_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[Background] Task %s failed: %r", task.get_name(), exc, exc_info=exc)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float | None = None):
        """Wait until no background work is left, including tasks spawned while waiting."""

        async def _wait_all():
            while self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

        await asyncio.wait_for(_wait_all(), timeout=timeout)


class KeyedLocks:
    """
    One asyncio.Lock per key.

    A key's lock lives only while some task holds or waits on it, so the map
    does not grow with every conversation or widget ever seen.
    """

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def __call__(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


runner = BackgroundRunner()
