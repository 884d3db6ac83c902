"""
Rate limiting utilities for marketplace API calls.

Spacing is enforced per ``(tenant_id, resource_key)`` so one tenant's traffic
never delays another tenant's. A separate, longer spacing applies when work
switches from one tenant's batch to a different tenant's batch.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from marketplace_bridge.utils.logger import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting behavior."""

    request_interval: float = 0.2  # Seconds between call starts per tenant/resource
    tenant_switch_interval: float = 1.0  # Seconds between batches of different tenants

    @classmethod
    def from_config(cls, config) -> "RateLimitConfig":
        return cls(
            request_interval=config.request_interval,
            tenant_switch_interval=config.tenant_switch_interval,
        )


@dataclass
class _KeyState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_start: Optional[float] = None


class RateLimiter:
    """
    Per-tenant request spacing.

    ``schedule`` holds a per-key lock only while waiting for its slot, so calls
    sharing a key start at least ``request_interval`` apart but may overlap
    once started.
    """

    def __init__(self, config: Optional[RateLimitConfig] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep

        self._keys: Dict[Tuple[str, str], _KeyState] = {}
        self._switch_lock = asyncio.Lock()
        self._last_batch_tenant: Optional[str] = None
        self._last_batch_finished: Optional[float] = None

        self.stats = {
            "scheduled_calls": 0,
            "delayed_calls": 0,
            "tenant_switch_waits": 0,
        }

        logger.info(f"Initialized rate limiter: interval={self.config.request_interval}s, "
                    f"tenant switch={self.config.tenant_switch_interval}s")

    def _state(self, tenant_id: str, resource_key: str) -> _KeyState:
        key = (tenant_id, resource_key)
        state = self._keys.get(key)
        if state is None:
            state = _KeyState()
            self._keys[key] = state
        return state

    async def acquire(self, tenant_id: str, resource_key: str) -> None:
        """Wait until a call for ``(tenant_id, resource_key)`` may start."""
        state = self._state(tenant_id, resource_key)
        self.stats["scheduled_calls"] += 1

        async with state.lock:
            if state.last_start is not None:
                wait_time = state.last_start + self.config.request_interval - self._clock()
                if wait_time > 0:
                    self.stats["delayed_calls"] += 1
                    logger.debug(f"Spacing {resource_key} for tenant {tenant_id}: {wait_time:.3f}s")
                    await self._sleep(wait_time)
            state.last_start = self._clock()

    async def schedule(self, tenant_id: str, resource_key: str,
                       fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` once its ``(tenant_id, resource_key)`` slot opens.

        Args:
            tenant_id: Tenant the call is made for
            resource_key: Logical resource, e.g. "catalog" or "offer"
            fn: Zero-argument coroutine function performing the call
        """
        await self.acquire(tenant_id, resource_key)
        return await fn()

    @asynccontextmanager
    async def tenant_batch(self, tenant_id: str):
        """
        Mark a batch of work for ``tenant_id``.

        Entering waits out ``tenant_switch_interval`` when the previous batch to
        finish belonged to a different tenant.
        """
        async with self._switch_lock:
            if (self._last_batch_tenant is not None
                    and self._last_batch_tenant != tenant_id
                    and self._last_batch_finished is not None):
                wait_time = (self._last_batch_finished
                             + self.config.tenant_switch_interval - self._clock())
                if wait_time > 0:
                    self.stats["tenant_switch_waits"] += 1
                    logger.debug(f"Tenant switch {self._last_batch_tenant} -> {tenant_id}: "
                                 f"waiting {wait_time:.3f}s")
                    await self._sleep(wait_time)
        try:
            yield
        finally:
            self._last_batch_tenant = tenant_id
            self._last_batch_finished = self._clock()

    def get_status(self) -> Dict[str, Any]:
        """Get rate limiter status."""
        return {
            "config": {
                "request_interval": self.config.request_interval,
                "tenant_switch_interval": self.config.tenant_switch_interval,
            },
            "tracked_keys": len(self._keys),
            "last_batch_tenant": self._last_batch_tenant,
            "statistics": self.stats.copy(),
        }
