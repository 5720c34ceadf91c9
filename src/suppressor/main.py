"""Main entry point for the maintenance alert suppressor.

Reads one Event Grid delivery (file path argument or stdin), dispatches it
and prints the outcomes as JSON. Exit codes:
    0: every event succeeded (or partially succeeded)
    1: the delivery failed and should be redelivered
    2: security violation (credentials in the environment)
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import Config, ConfigurationError
from .errors import DeliveryError, EventLoadError, EventParseError
from .event_loader import load_payload, load_stream
from .handler import MaintenanceHandler
from .resolver import AffectedResourceResolver
from .router import EventRouter, validation_response
from .security import SecretlessViolationError, get_managed_identity_credential
from .suppression import SuppressionRuleManager

# LogRecord attributes that are not structured "extra" fields
_RESERVED_RECORD_ATTRS = frozenset(
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
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO) -> None:
    """Configure structured logging with JSON output."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if not any(isinstance(h.formatter, JsonFormatter) for h in root_logger.handlers):
        # Outcomes go to stdout, logs to stderr
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JsonFormatter())
        root_logger.addHandler(handler)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_router(config: Config) -> EventRouter:
    """Wire credential, resolver, manager, handler and router.

    Raises:
        SecretlessViolationError: If credential environment variables are set.
    """
    credential = get_managed_identity_credential(config.managed_identity_client_id)
    resolver = AffectedResourceResolver(credential, config)
    manager = SuppressionRuleManager(credential, config)
    handler = MaintenanceHandler(resolver, manager, config)
    return EventRouter(handler, config)


def read_payload(argv: list[str]) -> Any:
    """Read the delivery from the path in ``argv`` or from stdin."""
    if argv:
        return load_payload(Path(argv[0]))
    return load_stream(sys.stdin)


async def main(argv: list[str] | None = None) -> int:
    """Handle one delivery.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    setup_logging()
    logger = logging.getLogger(__name__)
    argv = sys.argv[1:] if argv is None else argv

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 1

    try:
        payload = read_payload(argv)
        handshake = validation_response(payload)
    except (EventLoadError, EventParseError) as e:
        logger.error("Unreadable delivery", extra={"error": str(e)})
        return 1

    if handshake is not None:
        print(json.dumps(handshake))
        return 0

    try:
        router = build_router(config)
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return 2

    loop = asyncio.get_event_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        router.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))

    try:
        outcomes = await router.dispatch(payload)
    except EventParseError as e:
        logger.error("Invalid delivery", extra={"error": str(e)})
        return 1
    except DeliveryError as e:
        print(json.dumps([o.to_dict() for o in e.outcomes], indent=2))
        logger.error("Delivery failed", extra={"failures": e.failures})
        return 1
    except Exception as e:
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return 1

    print(json.dumps([o.to_dict() for o in outcomes], indent=2))
    return 0


def run() -> None:
    """Entry point for the handler."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
