from __future__ import annotations

import asyncio
from collections import Counter, deque
from dataclasses import dataclass, replace
import logging
import time
from typing import Awaitable, Callable, Protocol

from relay_monitor.models import Failure, OutcomeRecord, Success, format_ts

LOGGER = logging.getLogger("relay_monitor")


class Notifier(Protocol):
    async def notify(self, subject: str, body: str) -> None: ...


@dataclass(frozen=True)
class MetricSummary:
    minimum: float
    mean: float
    maximum: float


def summarize(values: list[float]) -> MetricSummary | None:
    if not values:
        return None
    return MetricSummary(
        minimum=min(values),
        mean=sum(values) / len(values),
        maximum=max(values),
    )


@dataclass(frozen=True)
class AggregateView:
    window_size_seconds: float
    print_interval_seconds: float
    oldest_at: float | None
    newest_at: float | None
    success_count: int
    error_count: int
    error_histogram: dict[str, int]
    send_time_ms: MetricSummary | None
    mine_time_s: MetricSummary | None
    blocks: MetricSummary | None

    @property
    def record_count(self) -> int:
        return self.success_count + self.error_count

    @property
    def has_data(self) -> bool:
        return self.record_count > 0


class StatsWindow:
    """Insertion-ordered outcomes covering the last ``window_size_seconds``.

    ``record`` stamps each outcome with a non-decreasing ``recorded_at`` and
    evicts from the front, so eviction is amortised O(1). Aggregates are
    recomputed on every ``snapshot``; the window is small and snapshots are
    taken on the print cadence, not per record.
    """

    def __init__(
        self,
        window_size_seconds: float,
        print_interval_seconds: float = 20.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_size_seconds <= 0:
            raise ValueError("window_size_seconds must be > 0")
        self.window_size_seconds = float(window_size_seconds)
        self.print_interval_seconds = float(print_interval_seconds)
        self._clock = clock
        self.records: deque[OutcomeRecord] = deque()
        self._last_recorded_at = float("-inf")

    def __len__(self) -> int:
        return len(self.records)

    def record(self, outcome: OutcomeRecord) -> OutcomeRecord:
        now = max(self._clock(), self._last_recorded_at)
        self._last_recorded_at = now
        stamped = replace(outcome, recorded_at=now)
        self.records.append(stamped)
        cutoff = now - self.window_size_seconds
        while self.records and self.records[0].recorded_at < cutoff:
            self.records.popleft()
        return stamped

    def snapshot(self) -> AggregateView:
        successes: list[Success] = []
        errors: Counter[str] = Counter()
        for rec in self.records:
            if isinstance(rec, Failure):
                errors[rec.error] += 1
            else:
                successes.append(rec)

        return AggregateView(
            window_size_seconds=self.window_size_seconds,
            print_interval_seconds=self.print_interval_seconds,
            oldest_at=self.records[0].recorded_at if self.records else None,
            newest_at=self.records[-1].recorded_at if self.records else None,
            success_count=len(successes),
            error_count=sum(errors.values()),
            error_histogram=dict(errors),
            send_time_ms=summarize([s.send_time_ms for s in successes]),
            mine_time_s=summarize([s.mine_time_s for s in successes]),
            blocks=summarize([float(s.block_span) for s in successes]),
        )


def _fmt(value: float | None, digits: int) -> str:
    if value is None:
        return "n/a"
    return f"{value:.{digits}f}"


def _metric_lines(label: str, unit: str, summary: MetricSummary | None, digits: int) -> list[str]:
    suffix = f" ({unit})" if unit else ""
    if summary is None:
        return [
            f"Mean {label}{suffix}: n/a",
            f"Longest {label}{suffix}: n/a",
            f"Shortest {label}{suffix}: n/a",
        ]
    return [
        f"Mean {label}{suffix}: {_fmt(summary.mean, digits)}",
        f"Longest {label}{suffix}: {_fmt(summary.maximum, digits)}",
        f"Shortest {label}{suffix}: {_fmt(summary.minimum, digits)}",
    ]


def render(view: AggregateView, pending_cost: int | None = None) -> str:
    lines = [
        "=============================",
        "============STATS============",
        "=============================",
        "",
        f"Time now: {format_ts(view.newest_at)}",
        f"Oldest time: {format_ts(view.oldest_at)}",
        f"Window size (s): {view.window_size_seconds:g}",
        f"Print interval (s): {view.print_interval_seconds:g}",
        f"Success count: {view.success_count}",
        f"Error count: {view.error_count}",
    ]
    if view.error_count > 0:
        lines.extend(["", "ERRORS"])
        lines.extend(f"Count: {count}. Msg: {msg}" for msg, count in view.error_histogram.items())
    if pending_cost is not None:
        lines.extend(["", f"Current pending cost: {pending_cost}"])
    if not view.has_data:
        lines.extend(["", "No data in window."])
    lines.append("")
    lines.extend(_metric_lines("blocks", "", view.blocks, 1))
    lines.append("")
    lines.extend(_metric_lines("send time", "ms", view.send_time_ms, 0))
    lines.append("")
    lines.extend(_metric_lines("mine time", "s", view.mine_time_s, 1))
    return "\n".join(lines)


class StatsReporter:
    def __init__(
        self,
        window: StatsWindow,
        *,
        interval_seconds: float,
        pending_cost: Callable[[], int] | None = None,
        notifier: Notifier | None = None,
        notify_on_errors: bool = False,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.window = window
        self.interval_seconds = interval_seconds
        self.pending_cost = pending_cost
        self.notifier = notifier
        self.notify_on_errors = notify_on_errors
        self._monotonic = monotonic
        self._sleep = sleep
        self.reports = 0

    async def run(self) -> None:
        # Fixed cadence on the monotonic clock; report time does not push later ticks back.
        next_at = self._monotonic() + self.interval_seconds
        while True:
            await self._sleep(max(0.0, next_at - self._monotonic()))
            await self.report_once()
            next_at += self.interval_seconds
            now = self._monotonic()
            if next_at <= now:
                missed = int((now - next_at) // self.interval_seconds) + 1
                LOGGER.debug("stats reporter skipped %d ticks", missed)
                next_at += missed * self.interval_seconds

    async def report_once(self) -> str:
        view = self.window.snapshot()
        text = render(view, pending_cost=self.pending_cost() if self.pending_cost else None)
        self.reports += 1
        LOGGER.info("\n%s", text)
        if self.notify_on_errors and self.notifier is not None and view.error_count > 0:
            await self.notifier.notify("Errors in relay monitor", text)
        return text
