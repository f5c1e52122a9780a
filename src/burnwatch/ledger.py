import bisect
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone

import structlog

from burnwatch.burnrate import BurnRateOptions, calculate_burn_rate
from burnwatch.models import (
    SOURCE_API_RESPONSE,
    SOURCE_LOG_PARSE,
    SOURCE_STREAM_ESTIMATE,
    BurnRateInfo,
    LogEntry,
    TokenEntry,
)

logger = structlog.get_logger()

DEFAULT_WINDOW_SIZE = timedelta(hours=2)
DEFAULT_MAX_ENTRIES = 10_000

# rough estimate for english text
_CHARS_PER_TOKEN = 4
# log records within this distance of a ledger entry are the same event
_MERGE_TOLERANCE = timedelta(seconds=1)


def _utcnow() -> "datetime":
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class SessionStats:
    total_entries: "int" = 0
    total_tokens: "int" = 0
    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_tokens: "int" = 0
    window_size: "timedelta" = DEFAULT_WINDOW_SIZE
    oldest_entry: "datetime | None" = None
    newest_entry: "datetime | None" = None
    by_model: "dict[str, int]" = field(default_factory=dict)
    by_source: "dict[str, int]" = field(default_factory=dict)


class SessionLedger:
    """
    SessionLedger: Is a thread-safe, rolling record of token usage
    for the currently active profile.

    A single lock guards the entry list together with the running
    input/output/cache totals, so readers never observe a total that
    disagrees with the entries. Every accessor returns copies.

    Entries are evicted oldest first once more than max_entries are
    held, and prune() drops entries older than window_size.
    """

    def __init__(
        self,
        window_size: "timedelta" = DEFAULT_WINDOW_SIZE,
        max_entries: "int" = DEFAULT_MAX_ENTRIES,
        on_usage: "Callable[[TokenEntry], None] | None" = None,
        clock: "Callable[[], datetime]" = _utcnow,
    ) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._entries: "list[TokenEntry]" = []
        self._window_size = window_size
        self._max_entries = max_entries
        self._on_usage = on_usage
        self._clock = clock

        self._total_input: "int" = 0
        self._total_output: "int" = 0
        self._total_cache: "int" = 0

    @property
    def window_size(self) -> "timedelta":
        return self._window_size

    @property
    def max_entries(self) -> "int":
        return self._max_entries

    def record(self, entry: "TokenEntry") -> "None":
        """
        appends an entry, stamping it with the current time when it
        has none, and notifies the usage observer.
        """
        if entry.timestamp is None:
            entry = replace(entry, timestamp=self._clock())

        with self._lock:
            self._entries.append(entry)
            self._add_totals(entry)
            evicted = self._enforce_max_entries()

        if evicted:
            logger.debug("ledger_entries_evicted", count=evicted)

        # the observer runs after the lock is released but before
        # record() returns, so later reads by the caller see the entry
        if self._on_usage is not None:
            try:
                self._on_usage(entry)
            except Exception:
                logger.exception("ledger_observer_error")

    def record_from_response(
        self,
        model: "str",
        input_tokens: "int",
        output_tokens: "int",
        conversation_id: "str" = "",
        message_id: "str" = "",
        cache_tokens: "int" = 0,
    ) -> "None":
        self.record(
            TokenEntry(
                timestamp=self._clock(),
                model=model,
                conversation_id=conversation_id,
                message_id=message_id,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cache_tokens=cache_tokens,
                source=SOURCE_API_RESPONSE,
            )
        )

    def estimate_from_stream(self, model: "str", chunk: "str") -> "None":
        """
        records an output token estimate for a chunk of streamed text
        at roughly one token per four characters. Any non-empty chunk
        counts as at least one token.
        """
        if not chunk:
            return

        estimated = max(1, len(chunk) // _CHARS_PER_TOKEN)
        self.record(
            TokenEntry(
                timestamp=self._clock(),
                model=model,
                output_tokens=estimated,
                source=SOURCE_STREAM_ESTIMATE,
            )
        )

    def burn_rate(
        self,
        window: "timedelta",
        token_limit: "int" = 0,
        limit_window: "timedelta | None" = None,
    ) -> "BurnRateInfo | None":
        """
        calculates the burn rate over the trailing window using the
        relaxed session thresholds. Returns None when there is not
        enough data.
        """
        now = self._clock()
        with self._lock:
            entries = self._entries_in_window(window, now)

        if not entries:
            return None

        log_entries = [
            LogEntry(
                timestamp=e.timestamp,
                model=e.model,
                conversation_id=e.conversation_id,
                message_id=e.message_id,
                input_tokens=e.input_tokens,
                output_tokens=e.output_tokens,
                cache_read_tokens=e.cache_tokens,
                total_tokens=e.total_tokens,
            )
            for e in entries
        ]
        options = BurnRateOptions.for_session(token_limit, limit_window)
        return calculate_burn_rate(log_entries, window, options, now=now)

    def merge_log_data(self, log_entries: "Sequence[LogEntry]") -> "int":
        """
        reconciles historical log records with the ledger and returns
        the number of entries added.

        A log record matches a ledger entry by message id when both
        carry one, otherwise by timestamp within one second. Matched
        stream estimates take the log's token counts and are promoted
        to log_parse. Unmatched records are appended.
        """
        if not log_entries:
            return 0

        with self._lock:
            by_message_id: "dict[str, int]" = {}
            for idx, existing in enumerate(self._entries):
                if existing.message_id:
                    by_message_id[existing.message_id] = idx
            # (timestamp, index) pairs kept sorted for range lookups
            by_time = sorted(
                (e.timestamp, idx) for idx, e in enumerate(self._entries)
            )
            times = [ts for ts, _ in by_time]

            added = 0
            promoted = 0
            for record in log_entries:
                idx = None
                if record.message_id:
                    idx = by_message_id.get(record.message_id)
                if idx is None:
                    idx = self._match_by_time(record.timestamp, times, by_time)

                if idx is not None:
                    if self._entries[idx].source == SOURCE_STREAM_ESTIMATE:
                        self._promote(idx, record)
                        promoted += 1
                    continue

                entry = TokenEntry(
                    timestamp=record.timestamp,
                    model=record.model,
                    conversation_id=record.conversation_id,
                    message_id=record.message_id,
                    input_tokens=record.input_tokens,
                    output_tokens=record.output_tokens,
                    cache_tokens=record.cache_read_tokens + record.cache_create_tokens,
                    source=SOURCE_LOG_PARSE,
                )
                self._entries.append(entry)
                self._add_totals(entry)
                added += 1

                new_idx = len(self._entries) - 1
                if entry.message_id:
                    by_message_id[entry.message_id] = new_idx
                pos = bisect.bisect_left(times, entry.timestamp)
                times.insert(pos, entry.timestamp)
                by_time.insert(pos, (entry.timestamp, new_idx))

            evicted = self._enforce_max_entries()

        logger.debug(
            "ledger_log_data_merged",
            added=added,
            promoted=promoted,
            evicted=evicted,
        )
        return added

    def prune(self) -> "int":
        """
        removes entries older than the window size. Returns the
        number of pruned entries.
        """
        cutoff = self._clock() - self._window_size
        with self._lock:
            kept: "list[TokenEntry]" = []
            for entry in self._entries:
                if entry.timestamp < cutoff:
                    self._subtract_totals(entry)
                else:
                    kept.append(entry)
            pruned = len(self._entries) - len(kept)
            self._entries = kept
        return pruned

    def clear(self) -> "None":
        with self._lock:
            self._entries = []
            self._total_input = 0
            self._total_output = 0
            self._total_cache = 0

    def total_tokens(self) -> "int":
        with self._lock:
            return self._total_input + self._total_output + self._total_cache

    def tokens_by_type(self) -> "tuple[int, int, int]":
        """
        returns (input, output, cache) totals.
        """
        with self._lock:
            return self._total_input, self._total_output, self._total_cache

    def entry_count(self) -> "int":
        with self._lock:
            return len(self._entries)

    def entries_in_window(self, window: "timedelta") -> "int":
        now = self._clock()
        with self._lock:
            return len(self._entries_in_window(window, now))

    def tokens_in_window(self, window: "timedelta") -> "int":
        now = self._clock()
        with self._lock:
            entries = self._entries_in_window(window, now)
        return sum(e.total_tokens for e in entries)

    def by_model(self) -> "dict[str, int]":
        with self._lock:
            return _group_tokens(self._entries, "model")

    def by_source(self) -> "dict[str, int]":
        with self._lock:
            return _group_tokens(self._entries, "source")

    def snapshot(self) -> "list[TokenEntry]":
        with self._lock:
            return list(self._entries)

    def stats(self) -> "SessionStats":
        with self._lock:
            entries = list(self._entries)
            stats = SessionStats(
                total_entries=len(entries),
                total_tokens=self._total_input
                + self._total_output
                + self._total_cache,
                input_tokens=self._total_input,
                output_tokens=self._total_output,
                cache_tokens=self._total_cache,
                window_size=self._window_size,
            )

        if entries:
            stats.oldest_entry = min(e.timestamp for e in entries)
            stats.newest_entry = max(e.timestamp for e in entries)
        stats.by_model = _group_tokens(entries, "model")
        stats.by_source = _group_tokens(entries, "source")
        return stats

    # the helpers below must be called with the lock held

    def _entries_in_window(
        self,
        window: "timedelta",
        now: "datetime",
    ) -> "list[TokenEntry]":
        cutoff = now - window
        return [e for e in self._entries if e.timestamp >= cutoff]

    def _enforce_max_entries(self) -> "int":
        excess = len(self._entries) - self._max_entries
        if excess <= 0:
            return 0
        for entry in self._entries[:excess]:
            self._subtract_totals(entry)
        del self._entries[:excess]
        return excess

    def _promote(self, idx: "int", record: "LogEntry") -> "None":
        existing = self._entries[idx]
        updated = replace(
            existing,
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            cache_tokens=record.cache_read_tokens + record.cache_create_tokens,
            source=SOURCE_LOG_PARSE,
        )
        self._subtract_totals(existing)
        self._add_totals(updated)
        self._entries[idx] = updated

    @staticmethod
    def _match_by_time(
        timestamp: "datetime",
        times: "list[datetime]",
        by_time: "list[tuple[datetime, int]]",
    ) -> "int | None":
        pos = bisect.bisect_left(times, timestamp - _MERGE_TOLERANCE)
        if pos < len(times) and times[pos] <= timestamp + _MERGE_TOLERANCE:
            return by_time[pos][1]
        return None

    def _add_totals(self, entry: "TokenEntry") -> "None":
        self._total_input += entry.input_tokens
        self._total_output += entry.output_tokens
        self._total_cache += entry.cache_tokens

    def _subtract_totals(self, entry: "TokenEntry") -> "None":
        self._total_input -= entry.input_tokens
        self._total_output -= entry.output_tokens
        self._total_cache -= entry.cache_tokens


def _group_tokens(entries: "Sequence[TokenEntry]", attr: "str") -> "dict[str, int]":
    result: "dict[str, int]" = {}
    for entry in entries:
        key = getattr(entry, attr)
        if key:
            result[key] = result.get(key, 0) + entry.total_tokens
    return result
