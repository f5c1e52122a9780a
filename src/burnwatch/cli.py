import argparse

from burnwatch.config import Config


def parse_args(argv: "list[str] | None" = None) -> "Config":
    parser = argparse.ArgumentParser(
        prog="burnwatch",
        description="Rate limit depletion forecaster for AI coding CLI profiles",
    )
    parser.add_argument(
        "--web.listen-address",
        dest="listen_address",
        default=":9186",
        help="Address to expose metrics on (default: :9186)",
    )
    parser.add_argument(
        "--check.interval",
        dest="check_interval",
        type=int,
        default=60,
        help="Forecast interval in seconds (default: 60)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--log.format",
        dest="log_format",
        default="console",
        choices=["console", "json"],
        help="Log output format (default: console)",
    )
    parser.add_argument(
        "--snapshot.file",
        dest="snapshot_file",
        default=None,
        help="JSON file with account usage snapshots "
        "(default: $BURNWATCH_SNAPSHOT_FILE)",
    )
    parser.add_argument(
        "--cap-at-reset",
        dest="cap_at_reset",
        action="store_true",
        default=None,
        help="Retarget predictions to the window reset when it comes first",
    )

    args = parser.parse_args(argv)
    config = Config.from_env()
    config.listen_address = args.listen_address
    config.check_interval = args.check_interval
    config.log_level = args.log_level
    config.log_format = args.log_format
    if args.snapshot_file is not None:
        config.snapshot_file = args.snapshot_file
    if args.cap_at_reset is not None:
        config.cap_at_reset = args.cap_at_reset
    return config
