import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

from utils.logger import get_logger

logger = get_logger(__name__)


class AdmissionGate:
    """Caps the number of browser sessions running at once.

    Waiters are admitted in arrival order (asyncio.Semaphore is FIFO-fair).
    """

    def __init__(self, max_concurrent: int = 1):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active = 0
        self._waiting = 0

    @property
    def active(self) -> int:
        return self._active

    @property
    def waiting(self) -> int:
        return self._waiting

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1
        self._active += 1
        logger.debug(f"Admission slot acquired ({self._active}/{self.max_concurrent} active)")
        try:
            yield
        finally:
            self._active -= 1
            self._semaphore.release()
