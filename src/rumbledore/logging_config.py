"""
Logging setup for Rumbledore processes.

Modules log through logging.getLogger(__name__); this module only decides
where those records go and how they look. Call configure_logging() once at
process start (the CLI does this for you).
"""

import json
import logging
import sys
from typing import Optional

from rumbledore.config import Settings, get_settings

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
CONSOLE_DATEFMT = "%H:%M:%S"


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Install a single stderr handler on the root logger.

    Args:
        settings: Uses log_level and log_format; defaults to get_settings()
    """
    settings = settings or get_settings()

    handler = logging.StreamHandler(sys.stderr)
    if settings.log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=CONSOLE_DATEFMT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(settings.log_level)

    # SQL echo is controlled by the engine, keep the sqlalchemy logger quiet otherwise
    if settings.log_level != "DEBUG":
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
