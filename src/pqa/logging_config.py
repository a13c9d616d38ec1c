"""Process-wide logging setup for the CLI and API server."""

from __future__ import annotations

import json
import logging
import sys

_QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    """JSON formatter emitting one structured entry per line.

    Produces entries shaped like::

        {"severity": "INFO", "message": "...", "logger": "...", "time": "..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON object with severity."""
        entry = {
            "severity": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
        }
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def configure_logging(level: str = "INFO", fmt: str = "text") -> None:
    """Install a stderr handler on the root logger.

    Args:
        level: Log level name (``DEBUG``, ``INFO`` ...). Unknown names fall back to INFO.
        fmt: ``json`` for structured lines, anything else for plain text.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if fmt == "json":
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(JsonFormatter())
        logging.root.handlers.clear()
        logging.root.addHandler(handler)
        logging.root.setLevel(log_level)
    else:
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
            stream=sys.stderr,
        )

    # Quieten noisy libraries
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
