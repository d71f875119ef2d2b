"""Process-wide pacing of calls to the invoicing service

The invoicing service counts requests per API key, not per batch. Every
batch runner in the process shares one pacer, so concurrent uploads are
interleaved one call at a time instead of multiplying the request rate.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional
import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class UpstreamPacer:
    """
    Serializes upstream calls and keeps a minimum gap between them

    The gap runs from the end of one call to the start of the next, and
    only one caller holds a slot at a time.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None

    @asynccontextmanager
    async def slot(self, delay_seconds: float) -> AsyncIterator[None]:
        """
        Hold the single upstream slot for one call

        Args:
            delay_seconds: Minimum gap after the previous call finished
        """
        async with self._lock:
            if self._last_call is not None and delay_seconds > 0:
                wait = self._last_call + delay_seconds - self._clock()
                if wait > 0:
                    logger.debug(f"Pacing upstream call, waiting {wait:.2f}s")
                    await self._sleep(wait)
            try:
                yield
            finally:
                self._last_call = self._clock()


# Shared by every batch runner
upstream_pacer = UpstreamPacer()
