import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

log = logging.getLogger("listings")

T = TypeVar("T")


class InFlightCoordinator:
    """At most one running extraction per cache key.

    The first caller for a key starts a task; later callers for the same key get
    the same task back. The entry disappears as soon as the task finishes, on
    success or failure, so the next request starts fresh.
    """

    def __init__(self) -> None:
        self._pending: Dict[str, asyncio.Task] = {}

    def get(self, key: str) -> Optional[asyncio.Task]:
        task = self._pending.get(key)
        if task is not None and task.done():
            return None
        return task

    def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> Tuple[asyncio.Task, bool]:
        """Return ``(task, created)``; ``factory`` is only called when nothing is running."""
        existing = self.get(key)
        if existing is not None:
            return existing, False
        task = asyncio.ensure_future(factory())
        self._pending[key] = task
        task.add_done_callback(lambda t, k=key: self._finished(k, t))
        return task, True

    def _finished(self, key: str, task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            del self._pending[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # nobody may be awaiting a background refresh; surface it here
            log.debug("INFLIGHT failed | %s | %s", key, exc)

    @staticmethod
    async def wait(task: "asyncio.Future[T]", timeout: Optional[float]) -> T:
        """Await a shared task without letting a timeout cancel it for everyone else."""
        return await asyncio.wait_for(asyncio.shield(task), timeout)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return sum(1 for t in self._pending.values() if not t.done())
