from __future__ import annotations

import asyncio
from enum import Enum
import logging
import time
from typing import Callable, Protocol, Sequence

from relay_monitor.clients_ledger import RELAY_EXECUTED_TOPIC
from relay_monitor.config import RelayConfig
from relay_monitor.errors import (
    FatalRelayError,
    FatalSubmissionError,
    TransientPollError,
    TransientSubmissionError,
)
from relay_monitor.funding import BalanceKeeper
from relay_monitor.models import (
    Failure,
    Identity,
    OutcomeRecord,
    PendingItem,
    RelayReceipt,
    RelayTransaction,
    SubmissionDescriptor,
)
from relay_monitor.runtime_support import CancelToken, HeightCache, SubmissionBudget
from relay_monitor.signing import function_selector
from relay_monitor.stats import Notifier, StatsReporter, StatsWindow
from relay_monitor.tracker import ConfirmationTracker

LOGGER = logging.getLogger("relay_monitor")


class DispatchState(str, Enum):
    AWAIT_BUDGET = "await_budget"
    OBTAIN_SUBMISSION = "obtain_submission"
    SUBMIT = "submit"
    SPAWN = "spawn"
    PACE = "pace"
    ERRORED = "errored"
    STOPPED = "stopped"


class Signer(Protocol):
    async def sign_submission(self, descriptor: SubmissionDescriptor) -> RelayTransaction: ...


class Submitter(Protocol):
    async def submit(self, tx: RelayTransaction) -> RelayReceipt: ...


class Dispatcher:
    """Paced submit loop feeding one confirmation tracker task per accepted item.

    The dispatcher owns the shared HeightCache and SubmissionBudget and hands
    them to the trackers it spawns. A round never waits on a tracker; each
    tracker releases its budget and records its outcome when it resolves.
    """

    def __init__(
        self,
        config: RelayConfig,
        *,
        identities: Sequence[Identity],
        signer: Signer,
        relay: Submitter,
        ledger,
        notifier: Notifier | None = None,
        funding: BalanceKeeper | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if not identities:
            raise ValueError("at least one identity is required")
        if config.cost_per_item <= 0:
            raise ValueError("cost_per_item must be > 0")
        if config.cost_per_item > config.budget_capacity:
            raise ValueError(
                f"cost_per_item={config.cost_per_item} can never be admitted with capacity={config.budget_capacity}"
            )
        self.config = config
        self.identities = list(identities)
        self.signer = signer
        self.relay = relay
        self.ledger = ledger
        self.notifier = notifier
        self.funding = funding
        self._clock = clock
        self._monotonic = monotonic

        self.height_cache = HeightCache(ledger, clock=monotonic)
        self.budget = SubmissionBudget(config.budget_capacity)
        self.window = StatsWindow(config.window_size_seconds, config.print_interval_seconds, clock=clock)
        self.tracker = ConfirmationTracker(
            ledger,
            self.height_cache,
            relay_contract_address=config.relay_contract_address,
            event_topic=RELAY_EXECUTED_TOPIC,
            log_lookback_blocks=config.log_lookback_blocks,
            clock=clock,
        )
        self.reporter = StatsReporter(
            self.window,
            interval_seconds=config.print_interval_seconds,
            pending_cost=lambda: self.budget.in_use,
            notifier=notifier,
            notify_on_errors=config.notify_on_errors,
            monotonic=monotonic,
        )
        self.call_data = function_selector(config.target_function)

        self.state = DispatchState.AWAIT_BUDGET
        self.round = 0
        self.submitted = 0
        self.consecutive_fatal_errors = 0
        self._stop = CancelToken()
        self._halt: BaseException | None = None
        self._trackers: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._trackers)

    def stop(self) -> None:
        self._stop.cancel()

    async def run(self) -> DispatchState:
        LOGGER.info(
            "Starting dispatcher identities=%d pacing=%.3fs capacity=%d cost=%d rounds=%s",
            len(self.identities),
            self.config.pacing_interval_seconds,
            self.config.budget_capacity,
            self.config.cost_per_item,
            self.config.max_rounds if self.config.max_rounds is not None else "unbounded",
        )
        await self._notify(
            "Relay monitor started",
            f"Submitting from {len(self.identities)} identities to {self.config.relay_api_url}",
        )
        reporter_task = asyncio.create_task(self.reporter.run(), name="stats-reporter")
        try:
            while not self._stop.cancelled:
                if self.config.max_rounds is not None and self.round >= self.config.max_rounds:
                    await self._drain()
                    break
                await self._round()
            self._raise_if_halted()
            self.state = DispatchState.STOPPED
            LOGGER.info("Dispatcher stopped rounds=%d submitted=%d", self.round, self.submitted)
            await self.reporter.report_once()
            return self.state
        except FatalSubmissionError as exc:
            self.state = DispatchState.ERRORED
            LOGGER.error("Dispatcher halted: %s", exc)
            await self._notify("Relay monitor halted", str(exc))
            raise
        except Exception:
            self.state = DispatchState.ERRORED
            raise
        finally:
            reporter_task.cancel()
            await asyncio.gather(reporter_task, return_exceptions=True)
            await self._cancel_trackers()

    async def _round(self) -> None:
        cost = self.config.cost_per_item
        self.state = DispatchState.AWAIT_BUDGET
        while not self.budget.try_admit(cost):
            if await self._stop.sleep(self.config.pacing_interval_seconds):
                return
        started = self._monotonic()
        round_number = self.round
        self.round += 1
        identity = self.identities[round_number % len(self.identities)]

        if self.funding is not None and self.funding.due(round_number, len(self.identities)):
            await self.funding.ensure_funded(
                identity, self.funding.confirmations_for(round_number, len(self.identities))
            )

        try:
            item = await self._submit(identity, cost)
        except (TransientSubmissionError, TransientPollError) as exc:
            self.budget.release(cost)
            LOGGER.debug("round=%d transient submission error: %s", round_number, exc)
            self._record(Failure(error=str(exc)))
        except FatalRelayError as exc:
            self.budget.release(cost)
            self._record(Failure(error=str(exc)))
            self.consecutive_fatal_errors += 1
            LOGGER.warning(
                "round=%d relay rejected submission (%d/%d): %s",
                round_number,
                self.consecutive_fatal_errors,
                self.config.max_consecutive_fatal_errors,
                exc,
            )
            if self.consecutive_fatal_errors >= self.config.max_consecutive_fatal_errors:
                raise FatalSubmissionError(
                    f"{self.consecutive_fatal_errors} consecutive relay rejections, last: {exc}"
                ) from exc
        else:
            self.consecutive_fatal_errors = 0
            self.submitted += 1
            self.state = DispatchState.SPAWN
            self._spawn(item)

        self.state = DispatchState.PACE
        elapsed = self._monotonic() - started
        await self._stop.sleep(max(0.0, self.config.pacing_interval_seconds - elapsed))

    async def _submit(self, identity: Identity, cost: int) -> PendingItem:
        self.state = DispatchState.OBTAIN_SUBMISSION
        start_height = await self.height_cache.current_height(self.config.block_poll_interval_seconds)
        descriptor = SubmissionDescriptor(
            identity=identity,
            to=self.config.target_contract_address,
            data=self.call_data,
            gas=cost,
            deadline_block_number=start_height + self.config.relay_deadline_blocks,
            compensation=self.config.compensation_wei,
            relay_contract_address=self.config.relay_contract_address,
        )
        signed = await self.signer.sign_submission(descriptor)

        self.state = DispatchState.SUBMIT
        submit_at = self._clock()
        receipt = await self.relay.submit(signed)
        LOGGER.debug("submitted id=%s from=%s height=%d", receipt.id, identity.address, start_height)
        return PendingItem(
            id=receipt.id,
            declared_cost=cost,
            submitted_at=submit_at,
            submitted_at_height=start_height,
            accepted_at=receipt.accepted_at,
            identity_address=identity.address,
        )

    def _spawn(self, item: PendingItem) -> None:
        deadline_height = item.submitted_at_height + self.config.confirmation_deadline_blocks
        task = asyncio.create_task(self._track(item, deadline_height), name=f"track-{item.id[:12]}")
        self._trackers.add(task)
        task.add_done_callback(self._tracker_done)

    async def _track(self, item: PendingItem, deadline_height: int) -> OutcomeRecord:
        try:
            outcome = await self.tracker.track(item, deadline_height, self.config.block_poll_interval_seconds)
        finally:
            self.budget.release(item.declared_cost)
        self._record(outcome)
        if isinstance(outcome, Failure) and outcome.deadline_exceeded and self.config.halt_on_deadline_exceeded:
            raise FatalSubmissionError(outcome.error)
        return outcome

    def _tracker_done(self, task: asyncio.Task) -> None:
        self._trackers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        LOGGER.error("tracker %s failed: %r", task.get_name(), exc)
        if self._halt is None:
            self._halt = exc
        self._stop.cancel()

    def _record(self, outcome: OutcomeRecord) -> None:
        self.window.record(outcome)

    def _raise_if_halted(self) -> None:
        if self._halt is not None:
            raise self._halt

    async def _drain(self) -> None:
        if self._trackers:
            LOGGER.info("Round limit reached, waiting for %d in-flight trackers", len(self._trackers))
        while self._trackers and not self._stop.cancelled:
            await asyncio.wait(set(self._trackers), timeout=self.config.pacing_interval_seconds)

    async def _cancel_trackers(self) -> None:
        pending = list(self._trackers)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _notify(self, subject: str, body: str) -> None:
        if self.notifier is not None:
            await self.notifier.notify(subject, body)
