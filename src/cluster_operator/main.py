"""Main entry point for the cluster lifecycle operator.

Loads resource manifests into the in-memory store, then runs the
dispatcher until SIGTERM or SIGINT.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime

from .config import Config, ConfigurationError
from .manager import Manager
from .reconciler import Reconciler
from .spec_loader import SpecLoadError, load_into
from .store import MemoryStore

# LogRecord attributes that are not structured extras
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structured logging with JSON output for production."""
    handler = logging.StreamHandler(sys.stdout)
    if json_logs:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from the AWS SDK
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


async def main(config: Config | None = None) -> int:
    """Run the operator.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    if config is None:
        try:
            config = Config.from_env()
        except ConfigurationError as e:
            setup_logging()
            logging.getLogger(__name__).error("Configuration error", extra={"error": str(e)})
            return 1

    setup_logging(config.log_level, config.json_logs)
    logger = logging.getLogger(__name__)

    logger.info(
        "Starting cluster lifecycle operator",
        extra={
            "manifests_dir": str(config.manifests_dir) if config.manifests_dir else None,
            "default_region": config.default_region,
            "max_workers": config.max_workers,
        },
    )

    store = MemoryStore()
    if config.manifests_dir is not None:
        try:
            count = load_into(store, config.manifests_dir)
        except SpecLoadError as e:
            logger.error(
                "Manifest loading failed",
                extra={"error": str(e), "manifests_dir": str(config.manifests_dir)},
            )
            return 1
        logger.info("Loaded manifests", extra={"count": count})

    manager = Manager(config, store, Reconciler(config, store))

    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        manager.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        await manager.run()
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    logger.info("Operator stopped")
    return 0


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
