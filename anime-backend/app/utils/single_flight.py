# backend/app/utils/single_flight.py

import asyncio
import logging
from typing import Awaitable, Callable, Dict, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

class SingleFlight:
    """
    Coalesces concurrent calls sharing a key into one in-flight task.

    The first caller for a key starts the work; callers arriving while it runs
    await the same task and receive its result (or its exception). The key is
    released as soon as the task finishes, so the next call starts fresh.
    """
    def __init__(self):
        self._in_flight: Dict[str, asyncio.Task] = {}

    def is_in_flight(self, key: str) -> bool:
        task = self._in_flight.get(key)
        return task is not None and not task.done()

    async def do(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        task = self._in_flight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(func())
            self._in_flight[key] = task
            task.add_done_callback(self._release(key))
        else:
            logger.debug(f"Joining in-flight call for key: {key}")
        # A cancelled waiter must not cancel the work other callers share
        return await asyncio.shield(task)

    def _release(self, key: str) -> Callable[[asyncio.Task], None]:
        def _on_done(finished: asyncio.Task) -> None:
            if self._in_flight.get(key) is finished:
                del self._in_flight[key]
        return _on_done
