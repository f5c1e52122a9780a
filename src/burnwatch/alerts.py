import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from burnwatch.models import Alert, AlertType, Prediction, Urgency, WarningLevel

DEFAULT_WARNING_PERCENT = 70.0
DEFAULT_CRITICAL_PERCENT = 85.0
DEFAULT_ROTATION_THRESHOLD = timedelta(minutes=30)
DEFAULT_MIN_CONFIDENCE = 0.3
DEFAULT_ACTION_TEMPLATE = "caam activate {provider} --auto"

GENERIC_ACTION = "Consider switching to another profile"


@dataclass(frozen=True, slots=True)
class AlertOptions:
    """
    AlertOptions holds the alert thresholds. Zero or negative values
    fall back to the defaults when alerts are generated.
    """

    # percent used that raises an approaching alert
    warning_percent: "float" = DEFAULT_WARNING_PERCENT
    # percent used that raises an imminent alert
    critical_percent: "float" = DEFAULT_CRITICAL_PERCENT
    rotation_threshold: "timedelta" = DEFAULT_ROTATION_THRESHOLD
    min_confidence: "float" = DEFAULT_MIN_CONFIDENCE
    action_template: "str" = DEFAULT_ACTION_TEMPLATE

    @classmethod
    def default(cls) -> "AlertOptions":
        return cls()

    def normalized(self) -> "AlertOptions":
        defaults = AlertOptions.default()
        return replace(
            self,
            warning_percent=self.warning_percent
            if self.warning_percent > 0
            else defaults.warning_percent,
            critical_percent=self.critical_percent
            if self.critical_percent > 0
            else defaults.critical_percent,
            rotation_threshold=self.rotation_threshold
            if self.rotation_threshold > timedelta(0)
            else defaults.rotation_threshold,
            min_confidence=self.min_confidence
            if self.min_confidence > 0
            else defaults.min_confidence,
            action_template=self.action_template or defaults.action_template,
        )


def generate_alerts(
    predictions: "Sequence[Prediction | None]",
    options: "AlertOptions | None" = None,
) -> "list[Alert]":
    """
    turns a batch of predictions into pre-rotation alerts.

    Each prediction can raise one classification alert (approaching
    or imminent) and, independently, a switch recommendation. When
    every profile that reports usage is at or past the warning
    threshold, one batch level all-profiles-low alert is added.
    """
    opts = (options or AlertOptions.default()).normalized()

    alerts: "list[Alert]" = []
    considered = 0
    all_low = True

    for pred in predictions:
        if pred is None:
            continue

        if pred.warning != WarningLevel.NONE or pred.current_percent > 0:
            considered += 1
            if (
                pred.warning < WarningLevel.APPROACHING
                and pred.current_percent < opts.warning_percent
            ):
                all_low = False

        classified = _classify(pred, opts)
        if classified is not None:
            alert_type, urgency = classified
            alerts.append(
                Alert(
                    type=alert_type,
                    urgency=urgency,
                    message=build_message(pred),
                    suggested_action=build_action(pred, opts),
                    provider=pred.provider,
                    profile=pred.profile,
                    time_until=pred.time_to_depletion,
                    prediction=pred,
                )
            )

        if _should_recommend_switch(pred, opts):
            alerts.append(
                Alert(
                    type=AlertType.SWITCH_RECOMMENDED,
                    urgency=Urgency.HIGH,
                    message="Rotation recommended based on burn rate",
                    suggested_action=build_action(pred, opts),
                    provider=pred.provider,
                    profile=pred.profile,
                    time_until=pred.time_to_depletion,
                    prediction=pred,
                )
            )

    if considered > 0 and all_low:
        alerts.append(
            Alert(
                type=AlertType.ALL_PROFILES_LOW,
                urgency=Urgency.HIGH,
                message="All monitored profiles are near rate limits",
                suggested_action="Consider waiting for reset or adding accounts",
            )
        )

    return alerts


def _classify(
    pred: "Prediction",
    opts: "AlertOptions",
) -> "tuple[AlertType, Urgency] | None":
    percent = pred.current_percent
    if pred.warning >= WarningLevel.IMMINENT or percent >= opts.critical_percent:
        return AlertType.IMMINENT_LIMIT, Urgency.HIGH
    if pred.warning >= WarningLevel.APPROACHING or percent >= opts.warning_percent:
        return AlertType.APPROACHING_LIMIT, Urgency.MEDIUM
    return None


def _should_recommend_switch(pred: "Prediction", opts: "AlertOptions") -> "bool":
    if pred.time_to_depletion <= timedelta(0):
        return False
    if pred.confidence < opts.min_confidence:
        return False
    return pred.time_to_depletion < opts.rotation_threshold


def build_message(pred: "Prediction | None") -> "str":
    if pred is None:
        return "Rate limit status unknown"
    if pred.time_to_depletion > timedelta(0):
        return (
            f"Will hit limit in ~{format_duration(pred.time_to_depletion)} "
            f"({pred.current_percent:.0f}% used)"
        )
    if pred.current_percent > 0:
        return f"Usage at {pred.current_percent:.0f}%"
    return "Rate limit status unknown"


def build_action(pred: "Prediction | None", opts: "AlertOptions") -> "str":
    if pred is None or not pred.provider:
        return GENERIC_ACTION
    return opts.action_template.format(provider=pred.provider, profile=pred.profile)


def format_duration(d: "timedelta") -> "str":
    """
    renders a duration rounded to the minute, e.g. "2h5m" or "25m".
    """
    minutes = int(round(d.total_seconds() / 60))
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h{minutes}m"
    return f"{minutes}m"


class AlertTracker:
    """
    AlertTracker: Is a thread-safe filter that keeps repeated
    monitoring cycles from re-sending the same alert.

    An alert passes when its (profile, type) key was absent from the
    previous batch or its urgency rose since then. Keys missing from
    a batch are forgotten, so an alert that clears and comes back is
    sent again.
    """

    def __init__(self) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        # key -> (urgency, first seen)
        self._seen: "dict[str, tuple[Urgency, datetime]]" = {}

    @staticmethod
    def _make_key(alert: "Alert") -> "str":
        return f"{alert.provider}|{alert.profile}|{alert.type.value}"

    def filter_new(
        self,
        alerts: "Iterable[Alert]",
        now: "datetime",
    ) -> "list[Alert]":
        """
        returns the alerts that are new or escalated and replaces
        the tracked state with this batch.
        """
        fresh: "list[Alert]" = []
        current: "dict[str, tuple[Urgency, datetime]]" = {}

        with self._lock:
            for alert in alerts:
                key = self._make_key(alert)
                previous = current.get(key) or self._seen.get(key)
                if previous is None or alert.urgency > previous[0]:
                    fresh.append(alert)
                    current[key] = (alert.urgency, now)
                else:
                    current[key] = (max(alert.urgency, previous[0]), previous[1])
            self._seen = current

        return fresh

    def evict_before(self, cutoff: "datetime") -> "int":
        """
        removes keys first seen before cutoff, letting long running
        alerts be re-sent. Returns the number of evicted keys.
        """
        with self._lock:
            to_remove = [k for k, (_, seen) in self._seen.items() if seen < cutoff]
            for k in to_remove:
                del self._seen[k]
            return len(to_remove)

    def __len__(self) -> "int":
        with self._lock:
            return len(self._seen)
