import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import structlog

from burnwatch.alerts import AlertOptions, AlertTracker, generate_alerts
from burnwatch.ledger import SessionLedger
from burnwatch.metrics import MetricsUpdater
from burnwatch.models import Alert, Prediction, UsageInfo
from burnwatch.notify import Notifier, to_notification
from burnwatch.prediction import PredictionEngine
from burnwatch.snapshot import UsageSupplier

logger = structlog.get_logger()

# alerts still active after this long are re-sent
_DEFAULT_ALERT_REPEAT = timedelta(hours=1)


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


class Monitor:
    """
    Monitor runs the periodic forecasting cycle. Each cycle fetches
    account snapshots from every supplier, predicts depletion, turns
    the predictions into alerts, records metrics and hands new or
    escalated alerts to the notifiers. The loop runs until stop() is
    called, sleeping for the configured interval between cycles.
    """

    def __init__(
        self,
        suppliers: "list[UsageSupplier]",
        engine: "PredictionEngine",
        metrics: "MetricsUpdater",
        notifiers: "list[Notifier]",
        alert_options: "AlertOptions | None" = None,
        alert_tracker: "AlertTracker | None" = None,
        ledger: "SessionLedger | None" = None,
        interval_seconds: "int" = 60,
        alert_repeat: "timedelta" = _DEFAULT_ALERT_REPEAT,
        clock: "Callable[[], datetime]" = _utcnow,
    ) -> "None":
        self._suppliers = suppliers
        self._engine = engine
        self._metrics = metrics
        self._notifiers = notifiers
        self._alert_options = alert_options or AlertOptions.default()
        self._tracker = alert_tracker or AlertTracker()
        self._ledger = ledger
        self._interval = interval_seconds
        self._alert_repeat = alert_repeat
        self._clock = clock
        self._stop_event: "asyncio.Event" = asyncio.Event()

    def stop(self) -> "None":
        """
        signals the monitor loop to stop after the current cycle.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        """
        closes all notifiers.
        """
        for n in self._notifiers:
            await n.close()

    async def run(self) -> "None":
        """
        runs the main monitoring loop. Runs until stop() is called.
        """
        while not self._stop_event.is_set():
            await self.run_cycle()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass

    async def run_cycle(self) -> "list[Alert]":
        """
        runs one forecasting cycle and returns the alerts that were
        dispatched.
        """
        cycle_start = time.monotonic()
        logger.info("monitor_cycle_start")

        snapshots, had_error = await self._fetch_all()

        # log scanning may block, keep it off the event loop
        predictions: "list[Prediction]" = await asyncio.to_thread(
            self._engine.predict_all, snapshots
        )
        for pred in predictions:
            self._metrics.update_prediction(pred)
            if pred.error:
                logger.debug(
                    "prediction_failed",
                    provider=pred.provider,
                    profile=pred.profile,
                    error=pred.error,
                )

        if self._ledger is not None:
            pruned = self._ledger.prune()
            if pruned:
                logger.debug("ledger_pruned", count=pruned)
            self._metrics.observe_ledger(self._ledger)

        now = self._clock()
        alerts = generate_alerts(predictions, self._alert_options)
        self._tracker.evict_before(now - self._alert_repeat)
        fresh = self._tracker.filter_new(alerts, now)

        for alert in fresh:
            self._metrics.inc_alert(alert)
            if not await self._dispatch(alert, now):
                had_error = True

        duration = time.monotonic() - cycle_start
        self._metrics.observe_cycle_duration(duration)
        if not had_error:
            self._metrics.set_last_cycle_success(time.time())

        logger.info(
            "monitor_cycle_end",
            snapshots=len(snapshots),
            alerts=len(alerts),
            dispatched=len(fresh),
        )
        return fresh

    async def _fetch_all(self) -> "tuple[list[UsageInfo], bool]":
        results = await asyncio.gather(
            *(self._fetch_supplier(s) for s in self._suppliers)
        )

        snapshots: "list[UsageInfo]" = []
        had_error = False
        for supplier_snapshots, failed in results:
            snapshots.extend(supplier_snapshots)
            had_error = had_error or failed

        return snapshots, had_error

    async def _fetch_supplier(
        self,
        supplier: "UsageSupplier",
    ) -> "tuple[list[UsageInfo], bool]":
        """
        fetches one supplier's snapshots. Returns the snapshots and
        whether the fetch failed.
        """
        try:
            snapshots = list(await supplier.fetch_snapshots())
        except Exception:
            logger.exception("snapshot_fetch_error", supplier=supplier.name)
            self._metrics.inc_supplier_error(supplier.name)
            return [], True

        logger.debug(
            "snapshots_fetched",
            supplier=supplier.name,
            count=len(snapshots),
        )
        return snapshots, False

    async def _dispatch(self, alert: "Alert", now: "datetime") -> "bool":
        notification = to_notification(alert, now)
        ok = True
        for notifier in self._notifiers:
            try:
                await notifier.notify(notification)
            except Exception:
                logger.exception("notify_error", notifier=notifier.name)
                self._metrics.inc_notify_error(notifier.name)
                ok = False
        return ok
