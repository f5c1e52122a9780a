import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from burnwatch.models import BurnRateInfo, LogEntry, clamp_unit

DEFAULT_MIN_SAMPLE_SIZE = 3
DEFAULT_MIN_TIMESPAN_MINUTES = 5.0

# samples beyond this count no longer raise confidence
_SAMPLE_SATURATION = 20.0


@dataclass(frozen=True, slots=True)
class BurnRateOptions:
    """
    BurnRateOptions configures a burn rate calculation.

    token_limit and limit_window describe the account's budget. When
    either is unset, percent_per_hour is left at zero.
    """

    token_limit: "int" = 0
    limit_window: "timedelta | None" = None
    min_sample_size: "int" = DEFAULT_MIN_SAMPLE_SIZE
    min_timespan_minutes: "float" = DEFAULT_MIN_TIMESPAN_MINUTES

    @classmethod
    def default(cls) -> "BurnRateOptions":
        return cls()

    @classmethod
    def for_session(
        cls,
        token_limit: "int" = 0,
        limit_window: "timedelta | None" = None,
    ) -> "BurnRateOptions":
        """
        relaxed thresholds for live, low volume session data.
        """
        return cls(
            token_limit=token_limit,
            limit_window=limit_window,
            min_sample_size=2,
            min_timespan_minutes=1.0,
        )


def calculate_burn_rate(
    entries: "Sequence[LogEntry]",
    window: "timedelta",
    options: "BurnRateOptions | None" = None,
    now: "datetime | None" = None,
) -> "BurnRateInfo | None":
    """
    computes the token consumption rate of the entries that fall
    inside the trailing window. Entries need not be sorted.

    Returns None when the sample is smaller than min_sample_size or
    spans less than min_timespan_minutes.
    """
    if not entries:
        return None

    options = options or BurnRateOptions.default()
    now = now or datetime.now(timezone.utc)
    cutoff = now - window

    filtered = [e for e in entries if e.timestamp >= cutoff]

    min_sample_size = options.min_sample_size
    if min_sample_size <= 0:
        min_sample_size = DEFAULT_MIN_SAMPLE_SIZE
    if len(filtered) < min_sample_size:
        return None

    first_entry = min(e.timestamp for e in filtered)
    last_entry = max(e.timestamp for e in filtered)
    elapsed = last_entry - first_entry
    elapsed_minutes = elapsed.total_seconds() / 60

    min_timespan = options.min_timespan_minutes
    if min_timespan <= 0:
        min_timespan = DEFAULT_MIN_TIMESPAN_MINUTES
    if elapsed_minutes < min_timespan:
        return None

    total_tokens = 0
    model_tokens: "dict[str, int]" = {}
    for entry in filtered:
        tokens = entry.effective_total_tokens()
        total_tokens += tokens
        if entry.model:
            model_tokens[entry.model] = model_tokens.get(entry.model, 0) + tokens

    tokens_per_minute = total_tokens / elapsed_minutes
    tokens_per_hour = tokens_per_minute * 60

    by_model = {
        model: tokens / elapsed_minutes * 60 for model, tokens in model_tokens.items()
    }

    percent_per_hour = 0.0
    if options.token_limit > 0 and options.limit_window is not None:
        limit_window_hours = options.limit_window.total_seconds() / 3600
        if limit_window_hours > 0:
            limit_per_hour = options.token_limit / limit_window_hours
            percent_per_hour = tokens_per_hour / limit_per_hour * 100

    return BurnRateInfo(
        tokens_per_minute=tokens_per_minute,
        tokens_per_hour=tokens_per_hour,
        percent_per_hour=percent_per_hour,
        sample_period=window,
        sample_size=len(filtered),
        confidence=calculate_confidence(filtered, elapsed, window, now),
        by_model=by_model,
        total_tokens=total_tokens,
        first_entry=first_entry,
        last_entry=last_entry,
    )


def calculate_confidence(
    entries: "Sequence[LogEntry]",
    elapsed: "timedelta",
    window: "timedelta",
    now: "datetime",
) -> "float":
    """
    scores sample quality from 0 to 1 as the sum of four capped
    components: sample size (0.4), window coverage (0.3), recency of
    the newest entry (0.2) and regularity of the entry timing (0.1).
    """
    if not entries:
        return 0.0

    sample_factor = min(len(entries) / _SAMPLE_SATURATION, 1.0) * 0.4

    coverage_factor = 0.0
    if window > timedelta(0):
        coverage_factor = min(elapsed / window, 1.0) * 0.3

    age = now - max(e.timestamp for e in entries)
    recency_factor = _recency_factor(age)

    consistency_factor = calculate_consistency_factor(entries)

    return clamp_unit(
        sample_factor + coverage_factor + recency_factor + consistency_factor
    )


def _recency_factor(age: "timedelta") -> "float":
    if age < timedelta(minutes=5):
        return 0.2
    if age < timedelta(minutes=30):
        return 0.15
    if age < timedelta(hours=1):
        return 0.1
    if age < timedelta(hours=2):
        return 0.05
    return 0.0


def calculate_consistency_factor(entries: "Sequence[LogEntry]") -> "float":
    """
    rates how regular the spacing between entries is, using the
    coefficient of variation of the positive gaps between sorted
    timestamps. Lower variation scores higher.
    """
    if len(entries) < 3:
        return 0.05

    timestamps = sorted(e.timestamp for e in entries)
    gaps = [
        gap
        for gap in (
            (later - earlier).total_seconds()
            for earlier, later in zip(timestamps, timestamps[1:])
        )
        if gap > 0
    ]
    if len(gaps) < 2:
        return 0.05

    mean = sum(gaps) / len(gaps)
    variance = sum((g - mean) ** 2 for g in gaps) / len(gaps)
    cv = math.sqrt(variance) / mean

    if cv < 0.5:
        return 0.1
    if cv < 1.0:
        return 0.07
    if cv < 2.0:
        return 0.04
    return 0.02
