import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, List, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces out provider calls to at most `calls_per_second`, shared by every caller."""

    def __init__(self, calls_per_second: float = 5, sleep: Callable[[float], Awaitable] = asyncio.sleep,
                 clock: Callable[[], float] = time.monotonic):
        if calls_per_second <= 0:
            raise ValueError("calls_per_second must be positive")
        self.interval = 1.0 / calls_per_second
        self._sleep = sleep
        self._clock = clock
        self._next_slot = 0.0
        self._lock = asyncio.Lock()
        self.total_calls = 0
        self.wait_events = 0
        self.total_wait_seconds = 0.0

    async def wait(self):
        async with self._lock:
            self.total_calls += 1
            wait_time = self._next_slot - self._clock()
            if wait_time > 0:
                self.wait_events += 1
                self.total_wait_seconds += wait_time
                logger.debug("[PROVIDER] Rate limited, waiting %.3fs", wait_time)
                await self._sleep(wait_time)
            self._next_slot = max(self._next_slot, self._clock()) + self.interval

    def snapshot(self):
        avg_wait = self.total_wait_seconds / self.wait_events if self.wait_events else 0.0
        return {
            "calls_total": self.total_calls,
            "wait_events": self.wait_events,
            "total_wait_seconds": round(self.total_wait_seconds, 6),
            "avg_wait_seconds": round(avg_wait, 6),
        }


async def gather_in_batches(
    items: Iterable[Any],
    worker: Callable[[Any], Awaitable[Any]],
    batch_size: int = 5,
    pause_seconds: float = 0.2,
    on_batch: Optional[Callable[[int, int], Awaitable]] = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
) -> List[Any]:
    """
    Run `worker` over items, `batch_size` at a time, pausing between batches.
    Results keep the input order. `on_batch(done, total)` fires after each batch.
    """
    items = list(items)
    total = len(items)
    results: List[Any] = []

    for start in range(0, total, batch_size):
        batch = items[start:start + batch_size]
        results.extend(await asyncio.gather(*(worker(item) for item in batch)))
        done = start + len(batch)

        if on_batch is not None:
            await on_batch(done, total)

        if done < total and pause_seconds > 0:
            await sleep(pause_seconds)

    return results
