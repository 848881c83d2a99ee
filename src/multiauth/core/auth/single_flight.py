"""Request coalescing for concurrent identical calls.

Overlapping authenticate() calls with the same key share one execution
instead of racing on connection pools or pending-request state.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable

logger = logging.getLogger(__name__)


class SingleFlight:
    """Run at most one call per key at a time; later callers share its result"""

    def __init__(self):
        self._inflight: Dict[Hashable, "asyncio.Task[Any]"] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Execute factory() for key, or join the call already in flight.

        A caller cancelled while waiting does not cancel the shared call.
        """
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda finished: self._forget(key, finished))
        else:
            logger.debug("Joining in-flight call")
        return await asyncio.shield(task)

    def _forget(self, key: Hashable, task: "asyncio.Task[Any]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
