"""
Task waiter: polls an asynchronous provider task until it is ready.
Delay grows by backoff_multiplier every `backoff_every` checks, capped at
max_delay_seconds, so early checks are frequent and late ones respect the
provider's tasks_ready rate limit.
"""
import asyncio
import logging
import math
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from core.errors import TaskTimeoutError

logger = logging.getLogger(__name__)


class PollConfig(BaseModel):
    initial_delay_seconds: float = Field(default=30, gt=0)
    max_delay_seconds: float = Field(default=60, gt=0)
    backoff_multiplier: float = Field(default=1.2, ge=1)
    backoff_every: int = Field(default=3, gt=0)
    max_wait_minutes: float = Field(default=30, gt=0)

    @property
    def max_polls(self) -> int:
        return max(1, math.ceil((self.max_wait_minutes * 60) / self.initial_delay_seconds))

    def delay_for(self, poll_count: int) -> float:
        delay = self.initial_delay_seconds * (
            self.backoff_multiplier ** (poll_count // self.backoff_every)
        )
        return min(delay, self.max_delay_seconds)


async def wait_until_ready(
    task_handle,
    poll_config: Optional[PollConfig] = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep,
    on_poll: Optional[Callable[[int], Awaitable]] = None,
) -> int:
    """
    Sleep, then check `await task_handle.is_ready()`, until ready.

    Returns the number of checks made. Raises TaskTimeoutError once the
    poll budget derived from max_wait_minutes is spent.
    """
    config = poll_config or PollConfig()
    task_id = getattr(task_handle, "task_id", None)
    poll_count = 0

    while poll_count < config.max_polls:
        await sleep(config.delay_for(poll_count))
        ready = await task_handle.is_ready()
        poll_count += 1

        if on_poll is not None:
            await on_poll(poll_count)

        if ready:
            logger.info("[WAITER] Task %s ready after %d checks", task_id, poll_count)
            return poll_count

    raise TaskTimeoutError(
        f"Task {task_id} timed out after {config.max_wait_minutes:g} minutes"
    )
