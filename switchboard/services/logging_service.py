"""
Logging setup for the switchboard entry point.

The core modules only ever use ``logging.getLogger(__name__)`` or a logger
handed to them; everything process-wide lives here and is called from the
entry point.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import List, Optional

from switchboard.tool.config_loader import LoggingConfig

STRUCTURED_CONSOLE_FORMAT = "[%(asctime)s %(levelname).3s] %(name)s: %(message)s"
STRUCTURED_FILE_FORMAT = (
    "[%(asctime)s.%(msecs)03d %(levelname).3s] %(name)s: %(message)s"
)
PLAIN_FORMAT = "%(levelname)s:%(name)s:%(message)s"

# Fields the core attaches through ``extra=``
STRUCTURED_FIELDS = ("server_id", "tool_name", "attempt", "delay")

FILE_BACKUP_COUNT = 7


class StructuredFormatter(logging.Formatter):
    """Appends the known ``extra`` fields of a record as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        fields = [
            f"{name}={getattr(record, name)}"
            for name in STRUCTURED_FIELDS
            if getattr(record, name, None) is not None
        ]
        if not fields:
            return message
        head, sep, tail = message.partition("\n")
        return f"{head} {{{' '.join(fields)}}}{sep}{tail}"


def build_handlers(config: LoggingConfig) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []

    if config.console:
        console = logging.StreamHandler(sys.stderr)
        if config.structured:
            console.setFormatter(
                StructuredFormatter(STRUCTURED_CONSOLE_FORMAT, datefmt="%H:%M:%S")
            )
        else:
            console.setFormatter(logging.Formatter(PLAIN_FORMAT))
        handlers.append(console)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = TimedRotatingFileHandler(
            log_path,
            when="midnight",
            backupCount=FILE_BACKUP_COUNT,
            encoding="utf-8",
        )
        if config.structured:
            file_handler.setFormatter(
                StructuredFormatter(STRUCTURED_FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
            )
        else:
            file_handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
        handlers.append(file_handler)

    return handlers


def configure_logging(config: LoggingConfig) -> logging.Logger:
    """Install handlers on the root logger and return the app logger."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    for handler in build_handlers(config):
        root.addHandler(handler)
    root.setLevel(config.level)

    return logging.getLogger("switchboard")


def install_exception_hooks(
    logger: logging.Logger, loop: Optional[asyncio.AbstractEventLoop] = None
) -> None:
    """Route uncaught exceptions to ``logger``. Entry points only."""

    def _excepthook(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception occurred", exc_info=(exc_type, exc_value, exc_tb)
        )

    sys.excepthook = _excepthook

    if loop is not None:

        def _loop_handler(_loop, context):
            exception = context.get("exception")
            logger.error(
                "Unobserved task exception occurred: %s",
                context.get("message"),
                exc_info=exception,
            )

        loop.set_exception_handler(_loop_handler)
