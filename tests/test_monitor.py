from datetime import timedelta
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from burnwatch.ledger import SessionLedger
from burnwatch.metrics import MetricsUpdater
from burnwatch.models import AlertType, BurnRateInfo, TokenEntry, UsageInfo, UsageWindow
from burnwatch.monitor import Monitor
from burnwatch.notify import Notification
from burnwatch.prediction import PredictionEngine
from burnwatch.snapshot import SnapshotFileSupplier
from conftest import NOW, FakeClock


class MockSupplier:
    """
    A mock supplier that returns pre-configured snapshots.
    """

    def __init__(self, snapshots: "list[UsageInfo]") -> "None":
        self.snapshots = snapshots
        self.calls = 0

    @property
    def name(self) -> "str":
        return "mock"

    async def fetch_snapshots(self) -> "list[UsageInfo]":
        self.calls += 1
        return self.snapshots


class FailingSupplier:
    """
    A mock supplier that always raises on fetch.
    """

    @property
    def name(self) -> "str":
        return "failing"

    async def fetch_snapshots(self) -> "list[UsageInfo]":
        raise RuntimeError("snapshot fetch failed")


class StoppingSupplier(MockSupplier):
    """
    A mock supplier that stops its monitor on the first fetch.
    """

    def __init__(self) -> "None":
        super().__init__([])
        self.monitor: "Monitor | None" = None

    async def fetch_snapshots(self) -> "list[UsageInfo]":
        if self.monitor is not None:
            self.monitor.stop()
        return await super().fetch_snapshots()


class RecordingNotifier:
    def __init__(self) -> "None":
        self.notifications: "list[Notification]" = []
        self.closed = False

    @property
    def name(self) -> "str":
        return "recording"

    async def notify(self, notification: "Notification") -> "None":
        self.notifications.append(notification)

    async def close(self) -> "None":
        self.closed = True


class FailingNotifier:
    @property
    def name(self) -> "str":
        return "broken"

    async def notify(self, notification: "Notification") -> "None":
        raise RuntimeError("delivery failed")

    async def close(self) -> "None":
        pass


def _snapshots() -> "list[UsageInfo]":
    return [
        UsageInfo(
            provider="claude",
            profile_name="work",
            primary_window=UsageWindow(
                used_percent=92,
                resets_at=NOW + timedelta(hours=3),
            ),
            burn_rate=BurnRateInfo(
                percent_per_hour=600,
                confidence=0.8,
                sample_size=20,
            ),
        ),
        # no burn rate, so the prediction fails but usage is known
        UsageInfo(
            provider="claude",
            profile_name="home",
            primary_window=UsageWindow(used_percent=10),
        ),
    ]


def _monitor(
    registry: "CollectorRegistry",
    clock: "FakeClock",
    suppliers: "list[object]",
    notifiers: "list[object]",
    ledger: "SessionLedger | None" = None,
) -> "Monitor":
    return Monitor(
        suppliers,
        PredictionEngine(clock=clock),
        MetricsUpdater(registry=registry),
        notifiers,
        ledger=ledger,
        interval_seconds=3600,
        clock=clock,
    )


class TestMonitorCycle:
    @pytest.mark.asyncio
    async def test_dispatches_alerts(
        self,
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        notifier = RecordingNotifier()
        monitor = _monitor(registry, clock, [MockSupplier(_snapshots())], [notifier])

        fresh = await monitor.run_cycle()

        assert [a.type for a in fresh] == [
            AlertType.IMMINENT_LIMIT,
            AlertType.SWITCH_RECOMMENDED,
        ]
        assert [n.title for n in notifier.notifications] == [
            "Rate limit imminent",
            "Rotation recommended",
        ]
        assert all(n.profile == "work" for n in notifier.notifications)
        assert notifier.notifications[0].timestamp == NOW

        work = {"provider": "claude", "profile": "work"}
        home = {"provider": "claude", "profile": "home"}
        assert registry.get_sample_value("burnwatch_usage_percent", work) == 92.0
        assert registry.get_sample_value("burnwatch_warning_level", work) == 2.0
        assert registry.get_sample_value("burnwatch_prediction_errors_total", home) == 1.0
        assert (
            registry.get_sample_value(
                "burnwatch_alerts_total",
                {"type": "imminent_limit", "urgency": "high"},
            )
            == 1.0
        )
        assert (
            registry.get_sample_value("burnwatch_last_cycle_success_timestamp_seconds")
            is not None
        )

    @pytest.mark.asyncio
    async def test_repeated_alerts_are_not_resent(
        self,
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        notifier = RecordingNotifier()
        monitor = _monitor(registry, clock, [MockSupplier(_snapshots())], [notifier])

        await monitor.run_cycle()
        clock.advance(timedelta(minutes=1))
        second = await monitor.run_cycle()

        assert second == []
        assert len(notifier.notifications) == 2

    @pytest.mark.asyncio
    async def test_alerts_are_resent_after_repeat_interval(
        self,
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        notifier = RecordingNotifier()
        monitor = _monitor(registry, clock, [MockSupplier(_snapshots())], [notifier])

        await monitor.run_cycle()
        clock.advance(timedelta(hours=1, minutes=1))
        again = await monitor.run_cycle()

        assert len(again) == 2

    @pytest.mark.asyncio
    async def test_supplier_error_does_not_crash(
        self,
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        notifier = RecordingNotifier()
        monitor = _monitor(
            registry,
            clock,
            [FailingSupplier(), MockSupplier(_snapshots())],
            [notifier],
        )

        fresh = await monitor.run_cycle()

        assert len(fresh) == 2
        assert (
            registry.get_sample_value(
                "burnwatch_supplier_errors_total", {"supplier": "failing"}
            )
            == 1.0
        )
        assert (
            registry.get_sample_value("burnwatch_last_cycle_success_timestamp_seconds")
            is None
        )

    @pytest.mark.asyncio
    async def test_nan_snapshot_does_not_crash(
        self,
        registry: "CollectorRegistry",
        clock: "FakeClock",
        tmp_path: "Path",
    ) -> "None":
        # json accepts the bare NaN literal
        path = tmp_path / "usage.json"
        path.write_text(
            '{"profiles": ['
            '{"provider": "claude", "profile_name": "bad",'
            ' "primary_window": {"utilization": NaN},'
            ' "burn_rate": {"percent_per_hour": 10}},'
            '{"provider": "claude", "profile_name": "good",'
            ' "primary_window": {"utilization": 0.5},'
            ' "burn_rate": {"percent_per_hour": 10}}'
            ']}',
            encoding="utf-8",
        )
        monitor = _monitor(registry, clock, [SnapshotFileSupplier(path)], [])

        await monitor.run_cycle()

        assert (
            registry.get_sample_value(
                "burnwatch_prediction_errors_total",
                {"provider": "claude", "profile": "bad"},
            )
            == 1.0
        )
        assert registry.get_sample_value(
            "burnwatch_usage_percent", {"provider": "claude", "profile": "good"}
        ) == pytest.approx(50)

    @pytest.mark.asyncio
    async def test_notifier_error_does_not_block_others(
        self,
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        notifier = RecordingNotifier()
        monitor = _monitor(
            registry,
            clock,
            [MockSupplier(_snapshots())],
            [FailingNotifier(), notifier],
        )

        await monitor.run_cycle()

        assert len(notifier.notifications) == 2
        assert (
            registry.get_sample_value(
                "burnwatch_notify_errors_total", {"notifier": "broken"}
            )
            == 2.0
        )

    @pytest.mark.asyncio
    async def test_prunes_and_observes_ledger(
        self,
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        ledger = SessionLedger(window_size=timedelta(hours=1), clock=clock)
        ledger.record(TokenEntry(timestamp=NOW - timedelta(hours=2), input_tokens=500))
        ledger.record(TokenEntry(timestamp=NOW, input_tokens=100, output_tokens=20))

        monitor = _monitor(registry, clock, [MockSupplier([])], [], ledger=ledger)
        await monitor.run_cycle()

        assert ledger.entry_count() == 1
        assert registry.get_sample_value("burnwatch_ledger_tokens", {"type": "input"}) == 100.0
        assert registry.get_sample_value("burnwatch_ledger_tokens", {"type": "output"}) == 20.0


class TestMonitorLoop:
    @pytest.mark.asyncio
    async def test_run_stops_after_stop(
        self,
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        supplier = StoppingSupplier()
        monitor = _monitor(registry, clock, [supplier], [])
        supplier.monitor = monitor

        # interval is an hour, so a second cycle would hang the test
        await monitor.run()

        assert supplier.calls == 1

    @pytest.mark.asyncio
    async def test_close_closes_notifiers(
        self,
        registry: "CollectorRegistry",
        clock: "FakeClock",
    ) -> "None":
        notifier = RecordingNotifier()
        monitor = _monitor(registry, clock, [], [notifier])

        await monitor.close()
        assert notifier.closed
