import asyncio
import json
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

import structlog

from burnwatch.models import BurnRateInfo, CreditInfo, UsageInfo, UsageWindow

logger = structlog.get_logger()


class UsageSupplier(Protocol):
    """
    UsageSupplier stands as the common protocol for anything that
    hands account snapshots to the monitor, such as a provider API
    client or a file written by the profile manager.
    """

    @property
    def name(self) -> "str": ...

    async def fetch_snapshots(self) -> "Sequence[UsageInfo]": ...


def parse_time(value: "Any") -> "datetime | None":
    """
    parses an ISO-8601 string or unix timestamp. Naive times are
    taken as UTC.
    """
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)

    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_seconds(value: "Any") -> "timedelta | None":
    if value in (None, ""):
        return None
    return timedelta(seconds=float(value))


def parse_window(data: "dict[str, Any] | None") -> "UsageWindow | None":
    if not data:
        return None
    return UsageWindow(
        utilization=float(data.get("utilization", 0.0)),
        used_percent=float(data.get("used_percent", 0.0)),
        resets_at=parse_time(data.get("resets_at")),
        window_duration=_parse_seconds(data.get("window_duration")),
    )


def parse_burn_rate(data: "dict[str, Any] | None") -> "BurnRateInfo | None":
    if not data:
        return None
    return BurnRateInfo(
        tokens_per_minute=float(data.get("tokens_per_minute", 0.0)),
        tokens_per_hour=float(data.get("tokens_per_hour", 0.0)),
        percent_per_hour=float(data.get("percent_per_hour", 0.0)),
        sample_period=_parse_seconds(data.get("sample_period")) or timedelta(0),
        sample_size=int(data.get("sample_size", 0)),
        confidence=float(data.get("confidence", 0.0)),
        by_model={k: float(v) for k, v in (data.get("by_model") or {}).items()},
        total_tokens=int(data.get("total_tokens", 0)),
        first_entry=parse_time(data.get("first_entry")),
        last_entry=parse_time(data.get("last_entry")),
    )


def parse_usage_info(data: "dict[str, Any]") -> "UsageInfo":
    """
    decodes one account snapshot. Times are ISO-8601 strings and
    durations are seconds.
    """
    credits = None
    if data.get("credits"):
        raw = data["credits"]
        balance = raw.get("balance")
        credits = CreditInfo(
            has_credits=bool(raw.get("has_credits", False)),
            unlimited=bool(raw.get("unlimited", False)),
            balance=float(balance) if balance is not None else None,
        )

    model_windows: "dict[str, UsageWindow]" = {}
    for model, raw_window in (data.get("model_windows") or {}).items():
        window = parse_window(raw_window)
        if window is not None:
            model_windows[model] = window

    return UsageInfo(
        provider=data.get("provider", ""),
        profile_name=data.get("profile_name", ""),
        plan_type=data.get("plan_type", ""),
        primary_window=parse_window(data.get("primary_window")),
        secondary_window=parse_window(data.get("secondary_window")),
        tertiary_window=parse_window(data.get("tertiary_window")),
        model_windows=model_windows,
        credits=credits,
        burn_rate=parse_burn_rate(data.get("burn_rate")),
        fetched_at=parse_time(data.get("fetched_at")),
        error=data.get("error", ""),
    )


def parse_snapshots(payload: "Any") -> "list[UsageInfo]":
    """
    accepts a single snapshot object, a list of them, or an object
    wrapping the list under "profiles".
    """
    if isinstance(payload, dict) and "profiles" in payload:
        payload = payload["profiles"]
    if isinstance(payload, dict):
        payload = [payload]
    if not isinstance(payload, list):
        raise ValueError(f"unexpected snapshot payload type: {type(payload).__name__}")

    snapshots: "list[UsageInfo]" = []
    for item in payload:
        # profile manager output nests the snapshot under "usage"
        if isinstance(item, dict) and isinstance(item.get("usage"), dict):
            merged = dict(item["usage"])
            merged.setdefault("provider", item.get("provider", ""))
            merged.setdefault("profile_name", item.get("profile_name", ""))
            item = merged
        snapshots.append(parse_usage_info(item))
    return snapshots


class SnapshotFileSupplier:
    """
    SnapshotFileSupplier reads account snapshots from a JSON file
    that another process keeps up to date.
    """

    def __init__(self, path: "str | Path") -> "None":
        self._path = Path(path)

    @property
    def name(self) -> "str":
        return f"file:{self._path.name}"

    async def fetch_snapshots(self) -> "list[UsageInfo]":
        raw = await asyncio.to_thread(self._path.read_text, encoding="utf-8")
        snapshots = parse_snapshots(json.loads(raw))
        logger.debug(
            "snapshots_loaded",
            path=str(self._path),
            count=len(snapshots),
        )
        return snapshots
