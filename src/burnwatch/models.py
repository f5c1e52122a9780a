import enum
import math
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timedelta

SOURCE_API_RESPONSE = "api_response"
SOURCE_LOG_PARSE = "log_parse"
SOURCE_STREAM_ESTIMATE = "stream_estimate"


@dataclass(frozen=True, slots=True)
class TokenEntry:
    """
    TokenEntry represents a single token consumption event
    recorded by the session ledger.
    """

    # None means "stamp on record"
    timestamp: "datetime | None" = None
    model: "str" = ""
    conversation_id: "str" = ""
    message_id: "str" = ""
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    # cache read + cache creation tokens
    cache_tokens: "int" = 0
    # one of api_response, log_parse, stream_estimate
    source: "str" = ""

    @property
    def total_tokens(self) -> "int":
        return self.input_tokens + self.output_tokens + self.cache_tokens


@dataclass(frozen=True, slots=True)
class LogEntry:
    """
    LogEntry represents a historical usage record as yielded
    by a log scanner. It is also the input shape of the burn
    rate calculator.
    """

    timestamp: "datetime"
    model: "str" = ""
    conversation_id: "str" = ""
    message_id: "str" = ""
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_read_tokens: "int" = 0
    cache_create_tokens: "int" = 0
    # 0 means the scanner did not report a total
    total_tokens: "int" = 0

    def calculated_total_tokens(self) -> "int":
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_create_tokens
        )

    def effective_total_tokens(self) -> "int":
        """
        returns the reported total, falling back to the sum of
        the individual counts when the scanner left it empty.
        """
        if self.total_tokens:
            return self.total_tokens
        return self.calculated_total_tokens()


@dataclass(slots=True)
class ScanResult:
    provider: "str" = ""
    entries: "list[LogEntry]" = field(default_factory=list)
    parse_errors: "int" = 0
    since: "datetime | None" = None
    until: "datetime | None" = None


@dataclass(slots=True)
class UsageWindow:
    """
    UsageWindow represents one provider rate limit window.

    Providers report either a utilization fraction (0.0-1.0) or an
    used percent (0-100). effective_utilization prefers the
    fraction and falls back to the percent when the fraction is zero.
    """

    utilization: "float" = 0.0
    used_percent: "float" = 0.0
    resets_at: "datetime | None" = None
    window_duration: "timedelta | None" = None

    @property
    def effective_utilization(self) -> "float":
        if self.utilization == 0 and self.used_percent > 0:
            return self.used_percent / 100.0
        return self.utilization


@dataclass(slots=True)
class CreditInfo:
    has_credits: "bool" = False
    unlimited: "bool" = False
    balance: "float | None" = None


@dataclass(frozen=True, slots=True)
class BurnRateInfo:
    """
    BurnRateInfo is the output of the burn rate calculator. A new
    instance is produced for every calculation.
    """

    tokens_per_minute: "float" = 0.0
    tokens_per_hour: "float" = 0.0
    # 0 when the account's token limit is unknown
    percent_per_hour: "float" = 0.0
    sample_period: "timedelta" = timedelta(0)
    sample_size: "int" = 0
    confidence: "float" = 0.0
    # model -> tokens per hour
    by_model: "dict[str, float]" = field(default_factory=dict)
    total_tokens: "int" = 0
    first_entry: "datetime | None" = None
    last_entry: "datetime | None" = None

    def project_depletion(self, remaining_tokens: "int") -> "timedelta":
        """
        estimates how long until remaining_tokens are consumed at
        the current rate. Returns a zero duration when the rate or
        the remaining budget is not positive, or either is NaN.
        """
        if math.isnan(self.tokens_per_hour) or math.isnan(remaining_tokens):
            return timedelta(0)
        if self.tokens_per_hour <= 0 or remaining_tokens <= 0:
            return timedelta(0)

        hours = remaining_tokens / self.tokens_per_hour
        if math.isnan(hours):
            # both infinite
            return timedelta(0)
        if hours >= timedelta.max / timedelta(hours=1):
            return timedelta.max
        return timedelta(hours=hours)

    def project_usage_at(self, duration: "timedelta") -> "int":
        """
        estimates tokens consumed after the given duration. A rate
        that is not a positive finite number projects nothing.
        """
        if not math.isfinite(self.tokens_per_minute) or self.tokens_per_minute <= 0:
            return 0
        return int(self.tokens_per_minute * (duration.total_seconds() / 60))

    def __str__(self) -> "str":
        return format_tokens_per_hour(self.tokens_per_hour)


def format_tokens_per_hour(tokens_per_hour: "float") -> "str":
    if tokens_per_hour >= 1_000_000:
        return f"{tokens_per_hour / 1_000_000:.1f}M tokens/hr"
    if tokens_per_hour >= 1_000:
        return f"{tokens_per_hour / 1_000:.1f}K tokens/hr"
    return f"{tokens_per_hour:.0f} tokens/hr"


@dataclass(slots=True)
class UsageInfo:
    """
    UsageInfo is a provider account's rate limit snapshot.

    The primary window is the most immediate one (e.g. the 5 hour
    rolling window), the secondary a longer one (e.g. the weekly cap)
    and the tertiary a premium-model specific window.
    """

    provider: "str" = ""
    profile_name: "str" = ""
    plan_type: "str" = ""
    primary_window: "UsageWindow | None" = None
    secondary_window: "UsageWindow | None" = None
    tertiary_window: "UsageWindow | None" = None
    model_windows: "dict[str, UsageWindow]" = field(default_factory=dict)
    credits: "CreditInfo | None" = None
    # burn rate already computed by the provider API, if any
    burn_rate: "BurnRateInfo | None" = None
    fetched_at: "datetime | None" = None
    error: "str" = ""

    def windows(self) -> "Iterator[UsageWindow]":
        """
        yields every known window, fixed windows first.
        """
        for window in (
            self.primary_window,
            self.secondary_window,
            self.tertiary_window,
        ):
            if window is not None:
                yield window
        for window in self.model_windows.values():
            if window is not None:
                yield window

    def most_constrained_window(self) -> "UsageWindow | None":
        """
        returns the window closest to its limit, or None when the
        snapshot carries no windows at all.
        """
        constrained: "UsageWindow | None" = None
        for window in self.windows():
            if (
                constrained is None
                or window.effective_utilization > constrained.effective_utilization
            ):
                constrained = window
        return constrained

    def window_for_model(self, model: "str") -> "UsageWindow | None":
        if model in self.model_windows:
            return self.model_windows[model]
        return self.tertiary_window

    def availability_score(self) -> "int":
        """
        scores remaining capacity from 0 to 100 for rotation ranking.
        The primary window weighs 50%, the secondary 25%, the
        tertiary 15% and credit availability 10%.
        """
        if self.error:
            return 0

        score = 100.0
        for window, weight in (
            (self.primary_window, 50),
            (self.secondary_window, 25),
            (self.tertiary_window, 15),
        ):
            if window is not None:
                score -= window.effective_utilization * weight

        if (
            self.credits is not None
            and not self.credits.unlimited
            and not self.credits.has_credits
        ):
            score -= 10

        if math.isnan(score):
            return 0
        return min(100, max(0, int(score)))

    def is_near_limit(self, threshold: "float") -> "bool":
        return any(w.effective_utilization >= threshold for w in self.windows())

    def time_until_reset(self, now: "datetime") -> "timedelta":
        """
        returns the shortest time until any window resets, or zero
        when no reset time is known.
        """
        resets = [w.resets_at for w in self.windows() if w.resets_at is not None]
        if not resets:
            return timedelta(0)
        return max(timedelta(0), min(resets) - now)


class WarningLevel(enum.IntEnum):
    NONE = 0
    # depletion expected within 30 minutes
    APPROACHING = 1
    # depletion expected within 10 minutes
    IMMINENT = 2

    def __str__(self) -> "str":
        return self.name.lower()


@dataclass(slots=True)
class Prediction:
    """
    Prediction is one profile's depletion forecast. Problems are
    reported through error instead of raising, so one bad profile
    never aborts a batch.
    """

    profile: "str" = ""
    provider: "str" = ""
    # 0-100
    current_percent: "float" = 0.0
    burn_rate: "BurnRateInfo | None" = None
    predicted_time: "datetime | None" = None
    time_to_depletion: "timedelta" = timedelta(0)
    confidence: "float" = 0.0
    warning: "WarningLevel" = WarningLevel.NONE
    # session, logs, api, current_usage or a caller supplied label
    data_sources: "list[str]" = field(default_factory=list)
    error: "str" = ""
    resets_at: "datetime | None" = None
    resets_before_depletion: "bool" = False

    def is_valid(self) -> "bool":
        return not self.error and len(self.data_sources) > 0

    def should_rotate(
        self,
        threshold: "timedelta",
        min_confidence: "float" = 0.3,
    ) -> "bool":
        if self.time_to_depletion <= timedelta(0):
            return False
        return self.time_to_depletion < threshold and self.confidence >= min_confidence


class AlertType(enum.Enum):
    APPROACHING_LIMIT = "approaching_limit"
    IMMINENT_LIMIT = "imminent_limit"
    SWITCH_RECOMMENDED = "switch_recommended"
    ALL_PROFILES_LOW = "all_profiles_low"


class Urgency(enum.IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2

    def __str__(self) -> "str":
        return self.name.lower()


@dataclass(frozen=True, slots=True)
class Alert:
    type: "AlertType"
    urgency: "Urgency"
    message: "str"
    suggested_action: "str"
    provider: "str" = ""
    profile: "str" = ""
    time_until: "timedelta" = timedelta(0)
    # None for batch level alerts
    prediction: "Prediction | None" = None


def clamp_unit(value: "float") -> "float":
    """
    clamps value into [0, 1], mapping NaN to 0.
    """
    if math.isnan(value):
        return 0.0
    return min(max(value, 0.0), 1.0)
