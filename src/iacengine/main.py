"""Process-level setup for the iace command line.

Logging goes to stderr so that plan and output rendering on stdout stays
machine readable. SIGINT and SIGTERM during an apply request cooperative
cancellation: running provider operations finish and are recorded, nothing
new is started.
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TypeVar

T = TypeVar("T")

# LogRecord attributes that are not user-supplied ``extra`` fields
_RESERVED_RECORD_KEYS = frozenset(
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

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class _StderrHandler(logging.StreamHandler):
    """Writes to whatever sys.stderr is at emit time.

    Repeated setup replaces this handler instead of stacking another one.
    """

    def __init__(self) -> None:
        logging.Handler.__init__(self)

    @property
    def stream(self):  # type: ignore[override]
        return sys.stderr


def setup_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure root logging.

    Args:
        level: Root log level name.
        json_output: JSON lines when True, plain text otherwise.
    """
    handler = _StderrHandler()
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    for existing in [h for h in root_logger.handlers if isinstance(h, _StderrHandler)]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def run_cancellable(func: Callable[[asyncio.Event], Awaitable[T]]) -> T:
    """Run func with an Event that SIGINT / SIGTERM set.

    Args:
        func: Coroutine function receiving the cancellation event.

    Returns:
        Whatever func returns.
    """
    logger = logging.getLogger(__name__)
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.warning(
            "Received signal, finishing running operations before stopping",
            extra={"signal": sig.name},
        )
        cancel.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler, sig)
        except (NotImplementedError, RuntimeError):
            # Not the main thread (or no signal support): run without handlers
            logger.debug("Signal handlers unavailable", extra={"signal": sig.name})
            continue
        installed.append(sig)

    try:
        return await func(cancel)
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


def run() -> None:
    """Entry point for ``python -m iacengine.main``."""
    from .cli import cli

    cli()


if __name__ == "__main__":
    run()
