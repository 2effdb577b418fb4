"""
Request coalescing for concurrent identical lookups.

Directory scans are expensive and the same lookup is often issued by several
coroutines at once (a burst of record changes sharing one tag). The
RequestCoalescer lets those callers share a single in-flight execution.

Invariants:
    - At most one execution per key is in flight at a time
    - Results are not cached; the key is released when the execution finishes
    - State is per instance and per process, nothing is durable

How to change safely:
    - Keys must capture every input of the factory
    - Don't add result caching here; stale tenant lists cause missed fan-outs
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestCoalescer(Generic[T]):
    """Share one in-flight execution between concurrent callers with the same key.

    Example:
        >>> coalescer = RequestCoalescer()
        >>> tenants = await coalescer.run(("agg", "Choir"), lambda: scan("Choir"))
    """

    def __init__(self) -> None:
        self._pending: dict[Hashable, asyncio.Future[T]] = {}
        self._coalesced_count = 0

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        """Run factory for key, or join an execution already in flight."""
        pending = self._pending.get(key)
        if pending is not None:
            self._coalesced_count += 1
            logger.debug("Joined in-flight request", extra={"key": str(key)})
            return await asyncio.shield(pending)

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            result = await factory()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure isn't reported by the loop
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._pending.pop(key, None)

    @property
    def in_flight(self) -> int:
        """Number of keys currently executing."""
        return len(self._pending)

    @property
    def stats(self) -> dict[str, Any]:
        return {"in_flight": len(self._pending), "coalesced_count": self._coalesced_count}
