from __future__ import annotations

import asyncio
import math
import unittest
from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from relay_monitor.models import Failure, Success
from relay_monitor.stats import StatsReporter, StatsWindow, render, summarize
from tests.helpers import FakeClock, RecordingNotifier, item_id


def _success(n: int, send_ms: float, mine_s: float, blocks: int) -> Success:
    submit_at = 1_700_000_000.0
    sent_at = submit_at + send_ms / 1000.0
    return Success(
        item_id=item_id(n),
        submit_at=submit_at,
        sent_at=sent_at,
        confirmed_at=sent_at + mine_s,
        start_height=1000,
        confirmed_height=1000 + blocks,
    )


class StatsWindowTests(unittest.TestCase):
    def test_error_histogram_groups_by_message(self) -> None:
        window = StatsWindow(300.0, clock=FakeClock(0.0))
        for msg in ("rate limited", "rate limited", "auth failed", "rate limited"):
            window.record(Failure(error=msg))

        view = window.snapshot()
        self.assertEqual(view.error_histogram, {"rate limited": 3, "auth failed": 1})
        self.assertEqual(view.error_count, 4)
        self.assertEqual(view.success_count, 0)

    def test_old_records_evicted_on_insert(self) -> None:
        clock = FakeClock(0.0)
        window = StatsWindow(300.0, clock=clock)
        for t in (0.0, 100.0, 200.0, 350.0):
            clock.now = t
            window.record(Failure(error=f"at {t:g}"))

        self.assertEqual(len(window), 3)
        self.assertEqual([rec.recorded_at for rec in window.records], [100.0, 200.0, 350.0])

    def test_every_retained_record_inside_window(self) -> None:
        clock = FakeClock(0.0)
        window = StatsWindow(50.0, clock=clock)
        for step in range(200):
            clock.now = step * 7.3
            window.record(Failure(error="x"))
            now = clock.now
            for rec in window.records:
                self.assertGreaterEqual(rec.recorded_at, now - 50.0)

    def test_recorded_at_never_decreases(self) -> None:
        clock = FakeClock(100.0)
        window = StatsWindow(300.0, clock=clock)
        window.record(Failure(error="a"))
        clock.now = 90.0
        stamped = window.record(Failure(error="b"))
        self.assertEqual(stamped.recorded_at, 100.0)

    def test_snapshot_is_idempotent(self) -> None:
        window = StatsWindow(300.0, clock=FakeClock(0.0))
        window.record(_success(1, 250.0, 12.0, 2))
        window.record(Failure(error="boom"))
        self.assertEqual(window.snapshot(), window.snapshot())

    def test_empty_window_reports_no_data(self) -> None:
        view = StatsWindow(300.0, clock=FakeClock(0.0)).snapshot()
        self.assertFalse(view.has_data)
        self.assertIsNone(view.send_time_ms)
        self.assertIsNone(view.mine_time_s)
        self.assertIsNone(view.blocks)
        self.assertIsNone(view.oldest_at)

        text = render(view)
        self.assertIn("No data in window.", text)
        self.assertNotIn("nan", text.lower())
        self.assertNotIn("inf", text.lower())

    def test_success_metrics(self) -> None:
        window = StatsWindow(300.0, clock=FakeClock(0.0))
        window.record(_success(1, 200.0, 10.0, 1))
        window.record(_success(2, 400.0, 30.0, 3))

        view = window.snapshot()
        self.assertEqual(view.success_count, 2)
        self.assertAlmostEqual(view.send_time_ms.mean, 300.0, places=3)
        self.assertAlmostEqual(view.send_time_ms.minimum, 200.0, places=3)
        self.assertAlmostEqual(view.mine_time_s.maximum, 30.0, places=3)
        self.assertEqual(view.blocks.mean, 2.0)

    def test_summarize_empty(self) -> None:
        self.assertIsNone(summarize([]))
        summary = summarize([1.0, 2.0, 6.0])
        self.assertTrue(math.isclose(summary.mean, 3.0))


class RenderTests(unittest.TestCase):
    def test_render_lists_counts_errors_and_metrics(self) -> None:
        window = StatsWindow(300.0, print_interval_seconds=20.0, clock=FakeClock(1_600_000_000.0))
        window.record(_success(1, 150.0, 14.0, 2))
        window.record(Failure(error="relay rate limited (HTTP 429)"))

        text = render(window.snapshot(), pending_cost=280_000)

        self.assertIn("Window size (s): 300", text)
        self.assertIn("Print interval (s): 20", text)
        self.assertIn("Success count: 1", text)
        self.assertIn("Error count: 1", text)
        self.assertIn("Count: 1. Msg: relay rate limited (HTTP 429)", text)
        self.assertIn("Current pending cost: 280000", text)
        self.assertIn("Mean blocks: 2.0", text)
        self.assertIn("Mean send time (ms): 150", text)
        self.assertIn("Longest mine time (s): 14.0", text)
        self.assertIn("GMT", text)


class StatsReporterTests(unittest.IsolatedAsyncioTestCase):
    async def test_notifies_when_window_has_errors(self) -> None:
        window = StatsWindow(300.0, clock=FakeClock(0.0))
        notifier = RecordingNotifier()
        reporter = StatsReporter(
            window,
            interval_seconds=20.0,
            pending_cost=lambda: 140_000,
            notifier=notifier,
            notify_on_errors=True,
        )

        await reporter.report_once()
        self.assertEqual(notifier.messages, [])

        window.record(Failure(error="boom"))
        text = await reporter.report_once()
        self.assertEqual(notifier.subjects, ["Errors in relay monitor"])
        self.assertIn("Current pending cost: 140000", text)
        self.assertEqual(reporter.reports, 2)

    async def test_no_notification_when_disabled(self) -> None:
        window = StatsWindow(300.0, clock=FakeClock(0.0))
        window.record(Failure(error="boom"))
        notifier = RecordingNotifier()
        reporter = StatsReporter(window, interval_seconds=20.0, notifier=notifier)
        await reporter.report_once()
        self.assertEqual(notifier.messages, [])

    async def test_run_keeps_fixed_cadence(self) -> None:
        clock = FakeClock(0.0)
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) == 3:
                raise asyncio.CancelledError
            clock.advance(seconds)

        def slow_pending_cost() -> int:
            clock.advance(3.0)
            return 0

        reporter = StatsReporter(
            StatsWindow(300.0, clock=clock),
            interval_seconds=20.0,
            pending_cost=slow_pending_cost,
            monotonic=clock,
            sleep=fake_sleep,
        )
        with self.assertRaises(asyncio.CancelledError):
            await reporter.run()

        self.assertEqual(sleeps, [20.0, 17.0, 17.0])
        self.assertEqual(reporter.reports, 2)

    async def test_run_skips_ticks_missed_by_a_slow_report(self) -> None:
        clock = FakeClock(0.0)
        sleeps: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            sleeps.append(seconds)
            if len(sleeps) == 2:
                raise asyncio.CancelledError
            clock.advance(seconds)

        def stalled_pending_cost() -> int:
            clock.advance(45.0)
            return 0

        reporter = StatsReporter(
            StatsWindow(300.0, clock=clock),
            interval_seconds=20.0,
            pending_cost=stalled_pending_cost,
            monotonic=clock,
            sleep=fake_sleep,
        )
        with self.assertRaises(asyncio.CancelledError):
            await reporter.run()

        # Report finished at 65; the 40 and 60 ticks are gone, the next is 80.
        self.assertEqual(sleeps, [20.0, 15.0])

    def test_rejects_non_positive_interval(self) -> None:
        with self.assertRaises(ValueError):
            StatsReporter(StatsWindow(300.0), interval_seconds=0.0)


if __name__ == "__main__":
    unittest.main()
