"""Process-wide permit pool bounding concurrent encoder processes.

One limiter is created at worker start and handed to every job run, so the
number of external encoder processes stays bounded no matter how many jobs
are in flight.
"""

import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import AsyncIterator

from abrworker.core.metrics import PERMITS_IN_USE, PERMITS_WAITING


class ConcurrencyLimiter:
    """Counting semaphore with FIFO wake-up order.

    A released permit is handed directly to the longest-waiting caller, so
    a newcomer can never overtake a suspended one. Use `permit()` rather
    than pairing acquire/release by hand.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"Limiter capacity must be a positive integer, got {capacity}")
        self._capacity = capacity
        self._free = capacity
        self._waiters: deque[asyncio.Future] = deque()
        self._max_in_use = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def available(self) -> int:
        return self._free

    @property
    def in_use(self) -> int:
        return self._capacity - self._free

    @property
    def waiting(self) -> int:
        return sum(1 for fut in self._waiters if not fut.done())

    @property
    def max_in_use(self) -> int:
        """Highest number of permits granted at the same time."""
        return self._max_in_use

    async def acquire(self) -> None:
        """Suspend until a permit is available, then take it."""
        if self._free > 0 and not self.waiting:
            self._free -= 1
            self._on_granted()
            return

        fut = asyncio.get_running_loop().create_future()
        self._waiters.append(fut)
        self._update_gauges()
        try:
            await fut
        except asyncio.CancelledError:
            if fut.done() and not fut.cancelled():
                # the permit was handed over just before the cancellation
                self.release()
            elif fut in self._waiters:
                self._waiters.remove(fut)
            self._update_gauges()
            raise
        self._on_granted()

    def release(self) -> None:
        """Return a permit, waking the longest-waiting caller if any.

        Raises:
            RuntimeError: If more permits are released than were acquired
        """
        while self._waiters:
            fut = self._waiters.popleft()
            if not fut.done():
                # ownership passes straight to the waiter; free count unchanged
                fut.set_result(None)
                self._update_gauges()
                return

        if self._free >= self._capacity:
            raise RuntimeError("ConcurrencyLimiter released more times than acquired")
        self._free += 1
        self._update_gauges()

    @asynccontextmanager
    async def permit(self) -> AsyncIterator[None]:
        """Hold one permit for the duration of the block."""
        await self.acquire()
        try:
            yield
        finally:
            self.release()

    def _on_granted(self) -> None:
        self._max_in_use = max(self._max_in_use, self.in_use)
        self._update_gauges()

    def _update_gauges(self) -> None:
        PERMITS_IN_USE.set(self.in_use)
        PERMITS_WAITING.set(self.waiting)

    def __repr__(self) -> str:
        return (
            f"<ConcurrencyLimiter(capacity={self._capacity}, in_use={self.in_use}, "
            f"waiting={self.waiting})>"
        )
