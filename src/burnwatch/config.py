import os
from dataclasses import dataclass
from datetime import timedelta

from burnwatch.alerts import AlertOptions
from burnwatch.prediction import EngineConfig


def _env_float(name: "str", default: "float") -> "float":
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}") from None


def _env_int(name: "str", default: "int") -> "int":
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}") from None


def _env_bool(name: "str", default: "bool") -> "bool":
    value = os.environ.get(name, "")
    if not value:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186"
    listen_address: "str" = ":9186"
    # forecasting interval in seconds
    check_interval: "int" = 60
    log_level: "str" = "info"
    # console or json
    log_format: "str" = "console"

    snapshot_file: "str" = ""
    webhook_url: "str" = ""

    # alert thresholds, percent of the most constrained window
    warning_percent: "float" = 70.0
    critical_percent: "float" = 85.0
    rotation_threshold_minutes: "float" = 30.0
    min_confidence: "float" = 0.3

    session_window_minutes: "float" = 30.0
    log_window_minutes: "float" = 120.0
    # account budget for turning token rates into percent per hour
    token_limit: "int" = 0
    limit_window_hours: "float" = 5.0
    cap_at_reset: "bool" = False

    @classmethod
    def from_env(cls) -> "Config":
        defaults = cls()
        return cls(
            snapshot_file=os.environ.get("BURNWATCH_SNAPSHOT_FILE", ""),
            webhook_url=os.environ.get("BURNWATCH_WEBHOOK_URL", ""),
            warning_percent=_env_float(
                "BURNWATCH_WARNING_PERCENT", defaults.warning_percent
            ),
            critical_percent=_env_float(
                "BURNWATCH_CRITICAL_PERCENT", defaults.critical_percent
            ),
            rotation_threshold_minutes=_env_float(
                "BURNWATCH_ROTATION_THRESHOLD_MINUTES",
                defaults.rotation_threshold_minutes,
            ),
            min_confidence=_env_float(
                "BURNWATCH_MIN_CONFIDENCE", defaults.min_confidence
            ),
            session_window_minutes=_env_float(
                "BURNWATCH_SESSION_WINDOW_MINUTES", defaults.session_window_minutes
            ),
            log_window_minutes=_env_float(
                "BURNWATCH_LOG_WINDOW_MINUTES", defaults.log_window_minutes
            ),
            token_limit=_env_int("BURNWATCH_TOKEN_LIMIT", defaults.token_limit),
            limit_window_hours=_env_float(
                "BURNWATCH_LIMIT_WINDOW_HOURS", defaults.limit_window_hours
            ),
            cap_at_reset=_env_bool("BURNWATCH_CAP_AT_RESET", defaults.cap_at_reset),
        )

    def validate(self) -> "None":
        """
        raises ValueError on inconsistent settings.
        """
        for name in ("warning_percent", "critical_percent"):
            value = getattr(self, name)
            if value < 0 or value > 100:
                raise ValueError(f"{name} must be between 0 and 100, got {value}")
        if self.warning_percent > self.critical_percent:
            raise ValueError("warning_percent should be <= critical_percent")
        if not 0 <= self.min_confidence <= 1:
            raise ValueError("min_confidence must be between 0 and 1")
        for name in (
            "rotation_threshold_minutes",
            "session_window_minutes",
            "log_window_minutes",
            "limit_window_hours",
            "token_limit",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        if self.check_interval <= 0:
            raise ValueError("check_interval must be positive")

    @property
    def webhook_enabled(self) -> "bool":
        return bool(self.webhook_url)

    def engine_config(self) -> "EngineConfig":
        limit_window = None
        if self.limit_window_hours > 0:
            limit_window = timedelta(hours=self.limit_window_hours)
        return EngineConfig(
            session_window=timedelta(minutes=self.session_window_minutes),
            log_window=timedelta(minutes=self.log_window_minutes),
            token_limit=self.token_limit,
            limit_window=limit_window,
            cap_at_reset=self.cap_at_reset,
        )

    def alert_options(self) -> "AlertOptions":
        return AlertOptions(
            warning_percent=self.warning_percent,
            critical_percent=self.critical_percent,
            rotation_threshold=timedelta(minutes=self.rotation_threshold_minutes),
            min_confidence=self.min_confidence,
        )
