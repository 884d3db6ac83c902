"""
Request coalescing for concurrent identical calls.

When several callers ask for the same ``(tenant_id, resource_kind,
resource_key)`` while a call is already in flight, they all await that one
call and receive its result or its exception.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Hashable, List, TypeVar

from marketplace_bridge.utils.logger import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


class CoalescerStats:
    """Statistics for request coalescing."""

    def __init__(self):
        self.total: int = 0  # Calls that did real work
        self.coalesced: int = 0  # Calls that attached to an in-flight call
        self.in_flight: int = 0

    @property
    def coalesce_rate(self) -> float:
        total = self.total + self.coalesced
        if total == 0:
            return 0.0
        return self.coalesced / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requests": self.total,
            "coalesced": self.coalesced,
            "in_flight": self.in_flight,
            "coalesce_rate": f"{self.coalesce_rate:.2%}",
        }


class RequestCoalescer:
    """
    Collapses concurrent identical async requests into one task.

    The shared task is shielded from its waiters: cancelling one caller stops
    that caller awaiting but lets the call finish for everyone else. The entry
    is dropped as soon as the task resolves, so the next call does fresh work.

    Usage:
        coalescer = RequestCoalescer()
        token = await coalescer.coalesce(
            (tenant_id, "token", "refresh"),
            lambda: exchange_refresh_token(tenant_id),
        )
    """

    def __init__(self):
        self._in_flight: Dict[Hashable, asyncio.Task] = {}
        self._stats = CoalescerStats()

    async def coalesce(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` unless an identical call is in flight, then share its outcome.

        Args:
            key: Identity of the request, typically a tuple
            fn: Zero-argument coroutine function doing the real work
        """
        task = self._in_flight.get(key)
        if task is not None:
            self._stats.coalesced += 1
            logger.debug(f"Attaching to in-flight request: {key}")
        else:
            self._stats.total += 1
            task = asyncio.ensure_future(fn())
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._finish(key, done))

        return await asyncio.shield(task)

    def _finish(self, key: Hashable, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Mark the outcome retrieved; every waiter has been handed it already
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"In-flight request {key} failed: {type(task.exception()).__name__}")

    def discard(self, key: Hashable) -> bool:
        """
        Detach the in-flight call for ``key`` so the next caller starts fresh.

        Current waiters still receive the detached call's outcome.
        """
        return self._in_flight.pop(key, None) is not None

    def get_in_flight_count(self) -> int:
        return len(self._in_flight)

    def get_in_flight_keys(self) -> List[Hashable]:
        return list(self._in_flight.keys())

    def get_stats(self) -> CoalescerStats:
        self._stats.in_flight = len(self._in_flight)
        return self._stats
