from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

import structlog

from burnwatch.burnrate import BurnRateOptions, calculate_burn_rate
from burnwatch.ledger import SessionLedger
from burnwatch.models import BurnRateInfo, ScanResult, UsageInfo

logger = structlog.get_logger()

SOURCE_SESSION = "session"
SOURCE_LOGS = "logs"
SOURCE_API = "api"


class LogScanner(Protocol):
    """
    LogScanner is implemented by the provider specific log parsers.
    scan() returns every entry with a timestamp at or after since.
    An empty log_dir means the provider's default directory.
    """

    def scan(self, log_dir: "str", since: "datetime") -> "ScanResult": ...


class BurnRateSource(Protocol):
    """
    BurnRateSource is one link of the prediction engine's priority
    chain. try_resolve() returns None when the source has nothing
    usable for the given account.
    """

    @property
    def name(self) -> "str": ...

    def try_resolve(self, usage_info: "UsageInfo") -> "BurnRateInfo | None": ...


class SessionSource:
    """
    SessionSource reads the live burn rate from the session ledger.
    """

    def __init__(
        self,
        ledger: "SessionLedger",
        window: "timedelta",
        token_limit: "int" = 0,
        limit_window: "timedelta | None" = None,
    ) -> "None":
        self._ledger = ledger
        self._window = window
        self._token_limit = token_limit
        self._limit_window = limit_window

    @property
    def name(self) -> "str":
        return SOURCE_SESSION

    def try_resolve(self, usage_info: "UsageInfo") -> "BurnRateInfo | None":
        return self._ledger.burn_rate(
            self._window,
            token_limit=self._token_limit,
            limit_window=self._limit_window,
        )


class LogSource:
    """
    LogSource computes a burn rate from historical log records. Scan
    failures make the source unavailable rather than failing the
    prediction.
    """

    def __init__(
        self,
        scanner: "LogScanner",
        window: "timedelta",
        clock: "Callable[[], datetime]",
        log_dir: "str" = "",
        options: "BurnRateOptions | None" = None,
    ) -> "None":
        self._scanner = scanner
        self._window = window
        self._clock = clock
        self._log_dir = log_dir
        self._options = options or BurnRateOptions.default()

    @property
    def name(self) -> "str":
        return SOURCE_LOGS

    def try_resolve(self, usage_info: "UsageInfo") -> "BurnRateInfo | None":
        now = self._clock()
        try:
            result = self._scanner.scan(self._log_dir, now - self._window)
        except Exception as exc:
            logger.warning(
                "log_scan_failed",
                profile=usage_info.profile_name,
                error=str(exc),
            )
            return None

        if not result.entries:
            return None
        return calculate_burn_rate(result.entries, self._window, self._options, now=now)


class ApiSource:
    """
    ApiSource uses the burn rate the provider API attached to the
    snapshot, if any.
    """

    @property
    def name(self) -> "str":
        return SOURCE_API

    def try_resolve(self, usage_info: "UsageInfo") -> "BurnRateInfo | None":
        return usage_info.burn_rate
