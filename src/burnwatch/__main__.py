import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from burnwatch.cli import parse_args
from burnwatch.config import Config
from burnwatch.logging import setup_logging
from burnwatch.metrics import MetricsUpdater
from burnwatch.monitor import Monitor
from burnwatch.notify import LogNotifier, Notifier, WebhookNotifier
from burnwatch.prediction import PredictionEngine
from burnwatch.snapshot import SnapshotFileSupplier, UsageSupplier

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def load_config(argv: "list[str] | None" = None) -> "Config":
    """
    reads flags and environment and validates the result. Any
    configuration error exits with a message instead of a traceback.
    """
    try:
        config = parse_args(argv)
        config.validate()
    except ValueError as exc:
        raise SystemExit(f"Invalid configuration: {exc}") from exc
    return config


def main() -> "None":
    config = load_config()
    setup_logging(config.log_level, config.log_format)

    suppliers: "list[UsageSupplier]" = []
    if config.snapshot_file:
        suppliers.append(SnapshotFileSupplier(config.snapshot_file))
        logger.info("supplier_enabled", supplier="file", path=config.snapshot_file)

    if not suppliers:
        raise SystemExit(
            "No snapshot source configured. Set BURNWATCH_SNAPSHOT_FILE "
            "or pass --snapshot.file."
        )

    notifiers: "list[Notifier]" = [LogNotifier()]
    if config.webhook_enabled:
        notifiers.append(WebhookNotifier(config.webhook_url))
        logger.info("notifier_enabled", notifier="webhook")

    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)

    monitor = Monitor(
        suppliers,
        PredictionEngine(config=config.engine_config()),
        MetricsUpdater(),
        notifiers,
        alert_options=config.alert_options(),
        interval_seconds=config.check_interval,
    )

    async def _run() -> "None":
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the monitor
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, monitor.stop)

        try:
            await monitor.run()
        finally:
            logger.info("shutting_down")
            await monitor.close()
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
