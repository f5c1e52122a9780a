from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from burnwatch.ledger import SessionLedger
from burnwatch.models import Alert, Prediction

_PROFILE_LABELS = ["provider", "profile"]


class MetricsUpdater:
    """
    applies predictions, alerts and ledger totals to Prometheus
    metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._usage_percent: "Gauge" = Gauge(
            "burnwatch_usage_percent",
            "Utilization of the most constrained rate limit window",
            _PROFILE_LABELS,
            registry=registry,
        )
        self._time_to_depletion: "Gauge" = Gauge(
            "burnwatch_time_to_depletion_seconds",
            "Predicted seconds until the rate limit is exhausted",
            _PROFILE_LABELS,
            registry=registry,
        )
        self._confidence: "Gauge" = Gauge(
            "burnwatch_prediction_confidence",
            "Confidence of the depletion prediction (0-1)",
            _PROFILE_LABELS,
            registry=registry,
        )
        self._percent_per_hour: "Gauge" = Gauge(
            "burnwatch_burn_rate_percent_per_hour",
            "Burn rate used for the prediction, in percent of limit per hour",
            _PROFILE_LABELS,
            registry=registry,
        )
        self._warning_level: "Gauge" = Gauge(
            "burnwatch_warning_level",
            "Warning level: 0 none, 1 approaching, 2 imminent",
            _PROFILE_LABELS,
            registry=registry,
        )
        self._prediction_errors: "Counter" = Counter(
            "burnwatch_prediction_errors_total",
            "Predictions that could not be made",
            _PROFILE_LABELS,
            registry=registry,
        )
        self._alerts: "Counter" = Counter(
            "burnwatch_alerts_total",
            "Alerts emitted by type and urgency",
            ["type", "urgency"],
            registry=registry,
        )
        self._supplier_errors: "Counter" = Counter(
            "burnwatch_supplier_errors_total",
            "Failed snapshot fetches by supplier",
            ["supplier"],
            registry=registry,
        )
        self._notify_errors: "Counter" = Counter(
            "burnwatch_notify_errors_total",
            "Failed notification deliveries by notifier",
            ["notifier"],
            registry=registry,
        )
        self._ledger_tokens: "Gauge" = Gauge(
            "burnwatch_ledger_tokens",
            "Tokens held in the session ledger by type",
            ["type"],
            registry=registry,
        )
        self._cycle_duration: "Histogram" = Histogram(
            "burnwatch_cycle_duration_seconds",
            "Duration of monitoring cycles",
            registry=registry,
        )
        self._last_cycle_success: "Gauge" = Gauge(
            "burnwatch_last_cycle_success_timestamp_seconds",
            "Unix timestamp of the last monitoring cycle without errors",
            registry=registry,
        )

    def update_prediction(self, pred: "Prediction") -> "None":
        """
        updates the per-profile gauges, or counts an error when the
        prediction could not be made. A failed prediction drops the
        profile's gauges so no stale forecast stays exported.
        """
        labels = {"provider": pred.provider, "profile": pred.profile}
        if pred.error:
            self._prediction_errors.labels(**labels).inc()
            for gauge in (
                self._usage_percent,
                self._time_to_depletion,
                self._confidence,
                self._percent_per_hour,
                self._warning_level,
            ):
                gauge.remove(pred.provider, pred.profile)
            return

        self._usage_percent.labels(**labels).set(pred.current_percent)
        self._time_to_depletion.labels(**labels).set(
            pred.time_to_depletion.total_seconds()
        )
        self._confidence.labels(**labels).set(pred.confidence)
        self._warning_level.labels(**labels).set(int(pred.warning))
        if pred.burn_rate is not None:
            self._percent_per_hour.labels(**labels).set(pred.burn_rate.percent_per_hour)

    def inc_alert(self, alert: "Alert") -> "None":
        self._alerts.labels(type=alert.type.value, urgency=str(alert.urgency)).inc()

    def inc_supplier_error(self, supplier: "str") -> "None":
        self._supplier_errors.labels(supplier=supplier).inc()

    def inc_notify_error(self, notifier: "str") -> "None":
        self._notify_errors.labels(notifier=notifier).inc()

    def observe_ledger(self, ledger: "SessionLedger") -> "None":
        input_tokens, output_tokens, cache_tokens = ledger.tokens_by_type()
        self._ledger_tokens.labels(type="input").set(input_tokens)
        self._ledger_tokens.labels(type="output").set(output_tokens)
        self._ledger_tokens.labels(type="cache").set(cache_tokens)

    def observe_cycle_duration(self, duration_seconds: "float") -> "None":
        self._cycle_duration.observe(duration_seconds)

    def set_last_cycle_success(self, timestamp: "float") -> "None":
        self._last_cycle_success.set(timestamp)
