import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional


class AdmissionGate:
    """Counting semaphore in front of new extractions.

    ``limit`` bounds concurrent extractions overall (1 = fully serialized, which
    keeps a single shared browser from being dogpiled). ``per_host_limit``
    optionally bounds them per target host as well.
    """

    def __init__(self, limit: int = 1, per_host_limit: Optional[int] = None) -> None:
        self.limit = max(1, int(limit))
        self.per_host_limit = max(1, int(per_host_limit)) if per_host_limit else None
        self._global = asyncio.Semaphore(self.limit)
        self._hosts: Dict[str, asyncio.Semaphore] = {}
        self.active = 0

    def _host_sem(self, host: str) -> Optional[asyncio.Semaphore]:
        if self.per_host_limit is None:
            return None
        sem = self._hosts.get(host)
        if sem is None:
            sem = self._hosts[host] = asyncio.Semaphore(self.per_host_limit)
        return sem

    @asynccontextmanager
    async def slot(self, host: str = "") -> AsyncIterator[None]:
        host_sem = self._host_sem(host)
        if host_sem is not None:
            await host_sem.acquire()
        try:
            async with self._global:
                self.active += 1
                try:
                    yield
                finally:
                    self.active -= 1
        finally:
            if host_sem is not None:
                host_sem.release()
