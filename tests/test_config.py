from datetime import timedelta

import pytest

from burnwatch.__main__ import _parse_listen_address, load_config
from burnwatch.cli import parse_args
from burnwatch.config import Config

_ENV_VARS = [
    "BURNWATCH_SNAPSHOT_FILE",
    "BURNWATCH_WEBHOOK_URL",
    "BURNWATCH_WARNING_PERCENT",
    "BURNWATCH_CRITICAL_PERCENT",
    "BURNWATCH_ROTATION_THRESHOLD_MINUTES",
    "BURNWATCH_MIN_CONFIDENCE",
    "BURNWATCH_SESSION_WINDOW_MINUTES",
    "BURNWATCH_LOG_WINDOW_MINUTES",
    "BURNWATCH_TOKEN_LIMIT",
    "BURNWATCH_LIMIT_WINDOW_HOURS",
    "BURNWATCH_CAP_AT_RESET",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: "pytest.MonkeyPatch") -> "None":
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestConfigFromEnv:
    def test_defaults(self) -> "None":
        config = Config.from_env()
        assert config.snapshot_file == ""
        assert config.webhook_url == ""
        assert config.warning_percent == 70.0
        assert config.critical_percent == 85.0
        assert config.min_confidence == 0.3
        assert config.token_limit == 0
        assert config.cap_at_reset is False

    def test_reads_env_vars(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        monkeypatch.setenv("BURNWATCH_SNAPSHOT_FILE", "/var/lib/caam/usage.json")
        monkeypatch.setenv("BURNWATCH_WEBHOOK_URL", "https://hooks.example.com/x")
        monkeypatch.setenv("BURNWATCH_WARNING_PERCENT", "60")
        monkeypatch.setenv("BURNWATCH_CRITICAL_PERCENT", "90.5")
        monkeypatch.setenv("BURNWATCH_ROTATION_THRESHOLD_MINUTES", "15")
        monkeypatch.setenv("BURNWATCH_MIN_CONFIDENCE", "0.5")
        monkeypatch.setenv("BURNWATCH_TOKEN_LIMIT", "200000")
        monkeypatch.setenv("BURNWATCH_LIMIT_WINDOW_HOURS", "168")
        monkeypatch.setenv("BURNWATCH_CAP_AT_RESET", "true")

        config = Config.from_env()

        assert config.snapshot_file == "/var/lib/caam/usage.json"
        assert config.webhook_url == "https://hooks.example.com/x"
        assert config.warning_percent == 60.0
        assert config.critical_percent == 90.5
        assert config.rotation_threshold_minutes == 15.0
        assert config.min_confidence == 0.5
        assert config.token_limit == 200_000
        assert config.limit_window_hours == 168.0
        assert config.cap_at_reset is True

    @pytest.mark.parametrize(
        "value,expected",
        [("1", True), ("yes", True), ("ON", True), ("false", False), ("0", False)],
    )
    def test_bool_values(
        self,
        monkeypatch: "pytest.MonkeyPatch",
        value: "str",
        expected: "bool",
    ) -> "None":
        monkeypatch.setenv("BURNWATCH_CAP_AT_RESET", value)
        assert Config.from_env().cap_at_reset is expected

    def test_invalid_number_raises(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        monkeypatch.setenv("BURNWATCH_TOKEN_LIMIT", "lots")
        with pytest.raises(ValueError):
            Config.from_env()


class TestValidate:
    def test_defaults_are_valid(self) -> "None":
        Config().validate()

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"warning_percent": -1},
            {"critical_percent": 101},
            {"warning_percent": 90, "critical_percent": 80},
            {"min_confidence": 1.5},
            {"token_limit": -10},
            {"session_window_minutes": -5},
            {"check_interval": 0},
        ],
    )
    def test_invalid(self, kwargs: "dict[str, object]") -> "None":
        with pytest.raises(ValueError):
            Config(**kwargs).validate()


class TestDerivedSettings:
    def test_webhook_enabled(self) -> "None":
        assert Config(webhook_url="https://hooks.example.com/x").webhook_enabled is True
        assert Config(webhook_url="").webhook_enabled is False

    def test_engine_config(self) -> "None":
        engine = Config(
            session_window_minutes=15,
            log_window_minutes=60,
            token_limit=1000,
            limit_window_hours=5,
            cap_at_reset=True,
        ).engine_config()

        assert engine.session_window == timedelta(minutes=15)
        assert engine.log_window == timedelta(hours=1)
        assert engine.token_limit == 1000
        assert engine.limit_window == timedelta(hours=5)
        assert engine.cap_at_reset is True

    def test_engine_config_without_limit_window(self) -> "None":
        assert Config(limit_window_hours=0).engine_config().limit_window is None

    def test_alert_options(self) -> "None":
        opts = Config(warning_percent=50, rotation_threshold_minutes=10).alert_options()
        assert opts.warning_percent == 50
        assert opts.critical_percent == 85
        assert opts.rotation_threshold == timedelta(minutes=10)


class TestParseArgs:
    def test_defaults(self) -> "None":
        config = parse_args([])
        assert config.listen_address == ":9186"
        assert config.check_interval == 60
        assert config.log_level == "info"
        assert config.log_format == "console"
        assert config.cap_at_reset is False

    def test_flags(self) -> "None":
        config = parse_args(
            [
                "--web.listen-address",
                "127.0.0.1:9999",
                "--check.interval",
                "15",
                "--log.level",
                "debug",
                "--log.format",
                "json",
                "--snapshot.file",
                "usage.json",
                "--cap-at-reset",
            ]
        )
        assert config.listen_address == "127.0.0.1:9999"
        assert config.check_interval == 15
        assert config.log_level == "debug"
        assert config.log_format == "json"
        assert config.snapshot_file == "usage.json"
        assert config.cap_at_reset is True

    def test_flags_override_env(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        monkeypatch.setenv("BURNWATCH_SNAPSHOT_FILE", "from-env.json")
        assert parse_args([]).snapshot_file == "from-env.json"
        assert parse_args(["--snapshot.file", "flag.json"]).snapshot_file == "flag.json"

    def test_invalid_log_format(self) -> "None":
        with pytest.raises(SystemExit):
            parse_args(["--log.format", "xml"])


class TestParseListenAddress:
    @pytest.mark.parametrize(
        "addr,expected",
        [
            (":9186", ("0.0.0.0", 9186)),
            ("127.0.0.1:8080", ("127.0.0.1", 8080)),
        ],
    )
    def test_parse(self, addr: "str", expected: "tuple[str, int]") -> "None":
        assert _parse_listen_address(addr) == expected


class TestLoadConfig:
    def test_valid(self) -> "None":
        config = load_config([])
        assert isinstance(config, Config)
        assert config.check_interval == 60

    def test_malformed_env_var_exits(self, monkeypatch: "pytest.MonkeyPatch") -> "None":
        monkeypatch.setenv("BURNWATCH_TOKEN_LIMIT", "abc")
        with pytest.raises(SystemExit) as exc_info:
            load_config([])

        message = str(exc_info.value)
        assert "Invalid configuration" in message
        assert "BURNWATCH_TOKEN_LIMIT" in message

    def test_inconsistent_settings_exit(self) -> "None":
        with pytest.raises(SystemExit, match="check_interval"):
            load_config(["--check.interval", "0"])
