from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Protocol

from relay_monitor.errors import DeadlineExceeded, InvariantViolation, TransientPollError
from relay_monitor.models import Failure, LogEntry, LogFilter, OutcomeRecord, PendingItem, Success
from relay_monitor.runtime_support import CancelToken, HeightCache

LOGGER = logging.getLogger("relay_monitor")


class LogSource(Protocol):
    async def query_logs(self, log_filter: LogFilter) -> list[LogEntry]: ...


class _Resolution:
    def __init__(self, item_id: str, token: CancelToken) -> None:
        self.item_id = item_id
        self.token = token
        self.outcome: OutcomeRecord | None = None
        self.source = ""

    def settle(self, outcome: OutcomeRecord, source: str) -> None:
        if self.outcome is not None:
            raise InvariantViolation(
                f"tracker for {self.item_id} resolved twice (first={self.source} second={source})"
            )
        self.outcome = outcome
        self.source = source
        self.token.cancel()


class ConfirmationTracker:
    """Races "relay executed log seen" against "chain passed the deadline height"."""

    def __init__(
        self,
        ledger: LogSource,
        height_cache: HeightCache,
        *,
        relay_contract_address: str,
        event_topic: str,
        log_lookback_blocks: int = 10,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.height_cache = height_cache
        self.relay_contract_address = relay_contract_address
        self.event_topic = event_topic
        self.log_lookback_blocks = max(0, int(log_lookback_blocks))
        self._clock = clock

    def build_filter(self, item: PendingItem, deadline_height: int) -> LogFilter:
        return LogFilter(
            address=self.relay_contract_address,
            topics=[self.event_topic, item.id],
            from_block=max(0, item.submitted_at_height - self.log_lookback_blocks),
            to_block=deadline_height + self.log_lookback_blocks,
        )

    async def track(
        self,
        item: PendingItem,
        deadline_height: int,
        poll_interval_seconds: float,
    ) -> OutcomeRecord:
        token = CancelToken()
        resolution = _Resolution(item.id, token)
        log_filter = self.build_filter(item, deadline_height)

        deadline_task = asyncio.create_task(
            self._deadline_watch(item, deadline_height, poll_interval_seconds, log_filter, resolution),
            name=f"deadline-watch-{item.id[:12]}",
        )
        completion_task = asyncio.create_task(
            self._completion_watch(item, poll_interval_seconds, log_filter, resolution),
            name=f"completion-watch-{item.id[:12]}",
        )
        try:
            await asyncio.gather(deadline_task, completion_task)
        except BaseException:
            token.cancel()
            for task in (deadline_task, completion_task):
                if not task.done():
                    task.cancel()
            raise

        if resolution.outcome is None:
            raise InvariantViolation(f"tracker for {item.id} finished without an outcome")
        LOGGER.debug("tracker resolved id=%s via=%s", item.id, resolution.source)
        return resolution.outcome

    async def _deadline_watch(
        self,
        item: PendingItem,
        deadline_height: int,
        poll_interval_seconds: float,
        log_filter: LogFilter,
        resolution: _Resolution,
    ) -> None:
        token = resolution.token
        while not token.cancelled:
            try:
                height = await self.height_cache.current_height(poll_interval_seconds)
            except TransientPollError as exc:
                LOGGER.debug("deadline watch height unavailable id=%s: %s", item.id, exc)
            else:
                if token.cancelled:
                    return
                if height >= deadline_height:
                    # Completion wins a tie: one last look at the logs before giving up.
                    try:
                        match = await self._find_log(item, log_filter, token)
                    except TransientPollError as exc:
                        LOGGER.debug("last look failed id=%s, retrying next tick: %s", item.id, exc)
                    else:
                        if token.cancelled:
                            return
                        if match is not None:
                            resolution.settle(self._success(item, match), "deadline-last-look")
                        else:
                            resolution.settle(
                                Failure(
                                    error=str(DeadlineExceeded(item.id)),
                                    item_id=item.id,
                                    deadline_exceeded=True,
                                ),
                                "deadline",
                            )
                        return
            if await token.sleep(poll_interval_seconds):
                return

    async def _completion_watch(
        self,
        item: PendingItem,
        poll_interval_seconds: float,
        log_filter: LogFilter,
        resolution: _Resolution,
    ) -> None:
        token = resolution.token
        while not token.cancelled:
            try:
                match = await self._find_log(item, log_filter, token)
            except TransientPollError as exc:
                LOGGER.debug("log query failed id=%s, retrying next tick: %s", item.id, exc)
                match = None
            if token.cancelled:
                return
            if match is not None:
                resolution.settle(self._success(item, match), "completion")
                return
            if await token.sleep(poll_interval_seconds):
                return

    async def _find_log(self, item: PendingItem, log_filter: LogFilter, token: CancelToken) -> LogEntry | None:
        """Matching log entry or None; query failures propagate as TransientPollError."""
        if token.cancelled:
            return None
        entries = await self.ledger.query_logs(log_filter)
        wanted = item.id.lower()
        for entry in entries:
            if entry.id.lower() == wanted:
                return entry
            LOGGER.debug("ignoring relay log id=%s while tracking %s", entry.id, item.id)
        return None

    def _success(self, item: PendingItem, entry: LogEntry) -> Success:
        return Success(
            item_id=item.id,
            submit_at=item.submitted_at,
            sent_at=item.accepted_at,
            confirmed_at=self._clock(),
            start_height=item.submitted_at_height,
            confirmed_height=entry.height,
        )
