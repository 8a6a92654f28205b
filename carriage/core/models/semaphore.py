# carriage/core/models/semaphore.py
from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Iterator, Optional

from carriage.core.defaults import (
    DEFAULT_SEMAPHORE_POLL_INTERVAL_S,
    DEFAULT_THROTTLE_TTL_S,
)
from carriage.core.logging import get_logger

if TYPE_CHECKING:
    from carriage.core.queues.base import QueueAdapter

logger = get_logger('semaphore')


@dataclass(frozen=True)
class Semaphore:
    """A request for a concurrency permit.

    Not a lock: the queue adapter owns admission control and decides whether
    a permit for ``concurrency_key`` is available. A ``concurrency_limit`` of
    None means the request always passes.
    """

    concurrency_key: str
    concurrency_limit: Optional[int] = None
    concurrency_duration: float = DEFAULT_THROTTLE_TTL_S

    @property
    def is_unlimited(self) -> bool:
        return self.concurrency_limit is None


@contextmanager
def hold_permit(
    queue: QueueAdapter,
    semaphore: Optional[Semaphore],
    *,
    poll_interval: float = DEFAULT_SEMAPHORE_POLL_INTERVAL_S,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[None]:
    """Hold one permit for the duration of the block.

    Polls ``acquire_permit`` until it is granted, then releases exactly once
    on exit, including when the block raises. Unlimited semaphores never
    contact the queue.
    """
    if semaphore is None or semaphore.is_unlimited:
        yield
        return

    waits = 0
    while not queue.acquire_permit(semaphore):
        if waits == 0:
            logger.debug(
                f"throttle '{semaphore.concurrency_key}' saturated "
                f'(limit={semaphore.concurrency_limit}), waiting'
            )
        waits += 1
        sleep(poll_interval)

    try:
        yield
    finally:
        queue.release_permit(semaphore)
