from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Protocol

from relay_monitor.errors import InvariantViolation, TransientPollError

LOGGER = logging.getLogger("relay_monitor")


class HeightSource(Protocol):
    async def current_height(self) -> int: ...


class HeightCache:
    """Shared, TTL-refreshed view of the chain height.

    One instance is shared by every in-flight tracker. Refreshes are
    best-effort single flight: the fetch marker moves before the RPC is
    awaited, so callers arriving mid-fetch get the cached height instead of
    issuing their own request. The cached height never moves backwards; a
    lower value from the node is ignored.
    """

    def __init__(self, ledger: HeightSource, clock: Callable[[], float] = time.monotonic) -> None:
        self.ledger = ledger
        self._clock = clock
        self.height: int | None = None
        self.fetched_at = 0.0
        self.fetch_count = 0

    async def current_height(self, poll_interval_seconds: float) -> int:
        now = self._clock()
        if self.height is not None and now - self.fetched_at < poll_interval_seconds:
            return self.height

        self.fetched_at = now
        try:
            fresh = await self.ledger.current_height()
        except TransientPollError as exc:
            if self.height is None:
                raise
            LOGGER.debug("height fetch failed, serving cached height=%s: %s", self.height, exc)
            return self.height
        finally:
            self.fetch_count += 1

        if self.height is not None and fresh < self.height:
            LOGGER.debug("height regression ignored cached=%s fetched=%s", self.height, fresh)
            return self.height
        self.height = fresh
        return fresh


class SubmissionBudget:
    """Sum of declared costs of in-flight items, bounded by capacity."""

    def __init__(self, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("budget capacity must be > 0")
        self.capacity = int(capacity)
        self.in_use = 0

    @property
    def available(self) -> int:
        return self.capacity - self.in_use

    def try_admit(self, cost: int) -> bool:
        if cost <= 0:
            raise ValueError(f"cost must be > 0, got {cost}")
        if self.in_use + cost > self.capacity:
            return False
        self.in_use += cost
        return True

    def release(self, cost: int) -> None:
        if cost > self.in_use:
            in_use = self.in_use
            self.in_use = 0
            raise InvariantViolation(f"budget underflow: release({cost}) with in_use={in_use}")
        self.in_use -= cost


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; wakes early and returns True once cancelled."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True
