import math
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import structlog

from burnwatch.burnrate import BurnRateOptions
from burnwatch.ledger import SessionLedger
from burnwatch.models import (
    BurnRateInfo,
    Prediction,
    UsageInfo,
    UsageWindow,
    WarningLevel,
    clamp_unit,
)
from burnwatch.sources import (
    ApiSource,
    BurnRateSource,
    LogScanner,
    LogSource,
    SessionSource,
)

logger = structlog.get_logger()

SOURCE_CURRENT_USAGE = "current_usage"

ERR_NO_USAGE_INFO = "no usage info provided"
ERR_NO_WINDOW = "no usage window available"
ERR_INSUFFICIENT_DATA = "insufficient data for prediction"
ERR_NO_BURN_RATE = "no burn rate data"
ERR_INVALID_USAGE = "invalid usage data"
ERR_INVALID_BURN_RATE = "invalid burn rate data"


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class EngineConfig:
    # window for the live session burn rate
    session_window: "timedelta" = timedelta(minutes=30)
    # how far back the log scan looks
    log_window: "timedelta" = timedelta(hours=2)
    log_dir: "str" = ""
    # account budget used to turn token rates into percent per hour
    token_limit: "int" = 0
    limit_window: "timedelta | None" = None
    imminent_threshold: "timedelta" = timedelta(minutes=10)
    approaching_threshold: "timedelta" = timedelta(minutes=30)
    # retarget predictions to the window reset when it comes first
    cap_at_reset: "bool" = False


class PredictionEngine:
    """
    PredictionEngine forecasts when an account will exhaust its most
    constrained rate limit window.

    The burn rate comes from an ordered chain of sources. By default
    this is the live session ledger, then historical logs, then the
    rate the provider API reported. The first source with a positive
    percent-per-hour wins. The engine keeps no state between calls.

    When the window resets before the projected depletion, the reset
    is reported on the prediction but does not change it, unless
    cap_at_reset is set. The same rule applies to predict() and
    predict_with_burn_rate().
    """

    def __init__(
        self,
        ledger: "SessionLedger | None" = None,
        log_scanner: "LogScanner | None" = None,
        config: "EngineConfig | None" = None,
        clock: "Callable[[], datetime]" = _utcnow,
        sources: "Sequence[BurnRateSource] | None" = None,
    ) -> "None":
        self._config = config or EngineConfig()
        self._clock = clock
        if sources is None:
            sources = self._default_sources(ledger, log_scanner)
        self._sources: "list[BurnRateSource]" = list(sources)

    @property
    def config(self) -> "EngineConfig":
        return self._config

    @property
    def sources(self) -> "list[BurnRateSource]":
        return list(self._sources)

    def _default_sources(
        self,
        ledger: "SessionLedger | None",
        log_scanner: "LogScanner | None",
    ) -> "list[BurnRateSource]":
        cfg = self._config
        chain: "list[BurnRateSource]" = []
        if ledger is not None:
            chain.append(
                SessionSource(
                    ledger,
                    cfg.session_window,
                    token_limit=cfg.token_limit,
                    limit_window=cfg.limit_window,
                )
            )
        if log_scanner is not None:
            chain.append(
                LogSource(
                    log_scanner,
                    cfg.log_window,
                    self._clock,
                    log_dir=cfg.log_dir,
                    options=BurnRateOptions(
                        token_limit=cfg.token_limit,
                        limit_window=cfg.limit_window,
                    ),
                )
            )
        chain.append(ApiSource())
        return chain

    def predict(self, usage_info: "UsageInfo | None") -> "Prediction":
        """
        forecasts depletion for one account using the first source
        in the chain that yields a usable burn rate.
        """
        if usage_info is None:
            return Prediction(error=ERR_NO_USAGE_INFO)

        now = self._clock()
        pred = Prediction(
            profile=usage_info.profile_name,
            provider=usage_info.provider,
        )

        window = usage_info.most_constrained_window()
        if window is None:
            pred.error = ERR_NO_WINDOW
            return pred

        pred.current_percent = window.effective_utilization * 100
        pred.resets_at = window.resets_at

        if not math.isfinite(pred.current_percent):
            return self._invalid_usage(pred)

        if pred.current_percent >= 100:
            return self._depleted(pred, now)

        burn_rate = None
        for source in self._sources:
            candidate = source.try_resolve(usage_info)
            if candidate is not None and _usable_rate(candidate.percent_per_hour):
                burn_rate = candidate
                pred.data_sources.append(source.name)
                break

        if burn_rate is None:
            pred.error = ERR_INSUFFICIENT_DATA
            logger.debug(
                "prediction_insufficient_data",
                profile=pred.profile,
                provider=pred.provider,
            )
            return pred

        return self._project(pred, window, burn_rate, now)

    def predict_with_burn_rate(
        self,
        usage_info: "UsageInfo | None",
        burn_rate: "BurnRateInfo | None",
        source: "str",
    ) -> "Prediction":
        """
        forecasts depletion from a burn rate calculated elsewhere,
        bypassing the source chain.
        """
        if usage_info is None:
            return Prediction(error=ERR_NO_USAGE_INFO)

        now = self._clock()
        pred = Prediction(
            profile=usage_info.profile_name,
            provider=usage_info.provider,
            burn_rate=burn_rate,
            data_sources=[source],
        )

        window = usage_info.most_constrained_window()
        if window is None:
            pred.error = ERR_NO_WINDOW
            return pred

        pred.current_percent = window.effective_utilization * 100
        pred.resets_at = window.resets_at

        if not math.isfinite(pred.current_percent):
            return self._invalid_usage(pred)

        if burn_rate is None or burn_rate.percent_per_hour <= 0:
            pred.error = ERR_NO_BURN_RATE
            return pred
        if not math.isfinite(burn_rate.percent_per_hour):
            pred.error = ERR_INVALID_BURN_RATE
            return pred

        if pred.current_percent >= 100:
            return self._depleted(pred, now)

        return self._project(pred, window, burn_rate, now)

    def predict_all(
        self,
        usage_infos: "Iterable[UsageInfo | None]",
    ) -> "list[Prediction]":
        return [self.predict(info) for info in usage_infos]

    def _invalid_usage(self, pred: "Prediction") -> "Prediction":
        pred.error = ERR_INVALID_USAGE
        pred.current_percent = 0.0
        logger.warning(
            "prediction_invalid_usage",
            profile=pred.profile,
            provider=pred.provider,
        )
        return pred

    def _depleted(self, pred: "Prediction", now: "datetime") -> "Prediction":
        pred.warning = WarningLevel.IMMINENT
        pred.predicted_time = now
        pred.time_to_depletion = timedelta(0)
        pred.confidence = 1.0
        if not pred.data_sources:
            pred.data_sources.append(SOURCE_CURRENT_USAGE)
        return pred

    def _project(
        self,
        pred: "Prediction",
        window: "UsageWindow",
        burn_rate: "BurnRateInfo",
        now: "datetime",
    ) -> "Prediction":
        pred.burn_rate = burn_rate

        remaining_percent = 100.0 - pred.current_percent
        hours = remaining_percent / burn_rate.percent_per_hour
        pred.time_to_depletion = _hours_to_timedelta(hours)
        pred.predicted_time = _add_clamped(now, pred.time_to_depletion)

        if window.resets_at is not None and window.resets_at < pred.predicted_time:
            pred.resets_before_depletion = True
            if self._config.cap_at_reset:
                pred.predicted_time = window.resets_at
                pred.time_to_depletion = max(timedelta(0), window.resets_at - now)

        pred.warning = self.classify(pred.time_to_depletion)
        pred.confidence = self._confidence(burn_rate, len(pred.data_sources))
        return pred

    def classify(self, time_to_depletion: "timedelta") -> "WarningLevel":
        """
        maps a time to depletion onto a warning level. A zero
        duration carries no warning by itself.
        """
        if time_to_depletion <= timedelta(0):
            return WarningLevel.NONE
        if time_to_depletion < self._config.imminent_threshold:
            return WarningLevel.IMMINENT
        if time_to_depletion < self._config.approaching_threshold:
            return WarningLevel.APPROACHING
        return WarningLevel.NONE

    @staticmethod
    def _confidence(burn_rate: "BurnRateInfo", source_count: "int") -> "float":
        confidence = burn_rate.confidence

        # up to 20% boost for corroborating sources
        if source_count > 1:
            boost = min(source_count - 1, 2) * 0.1
            confidence = min(1.0, confidence * (1 + boost))

        if burn_rate.sample_size < 5:
            confidence *= 0.9

        return clamp_unit(confidence)


def most_urgent(
    predictions: "Iterable[Prediction | None]",
    min_confidence: "float",
) -> "Prediction | None":
    """
    returns the prediction with the shortest positive time to
    depletion among those meeting min_confidence.
    """
    urgent: "Prediction | None" = None
    for pred in predictions:
        if pred is None or pred.error or pred.confidence < min_confidence:
            continue
        if pred.time_to_depletion <= timedelta(0):
            continue
        if urgent is None or pred.time_to_depletion < urgent.time_to_depletion:
            urgent = pred
    return urgent


def filter_by_warning(
    predictions: "Iterable[Prediction | None]",
    min_warning: "WarningLevel",
) -> "list[Prediction]":
    return [p for p in predictions if p is not None and p.warning >= min_warning]


def _usable_rate(percent_per_hour: "float") -> "bool":
    return math.isfinite(percent_per_hour) and percent_per_hour > 0


def _hours_to_timedelta(hours: "float") -> "timedelta":
    """
    converts hours to a duration. NaN and non-positive values give a
    zero duration, values past the timedelta range saturate.
    """
    if math.isnan(hours) or hours <= 0:
        return timedelta(0)
    if hours >= timedelta.max / timedelta(hours=1):
        return timedelta.max
    return timedelta(hours=hours)


def _add_clamped(now: "datetime", delta: "timedelta") -> "datetime":
    try:
        return now + delta
    except OverflowError:
        return datetime.max.replace(tzinfo=now.tzinfo)
