"""
Structured logging for the downloader API.

Provides:
    - StructuredFormatter: JSON formatter for machine-parseable log output.
    - configure_logging: One-shot root logger setup used by the app lifespan.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict

PLAIN_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for machine-parseable log output.

    Each log record is serialised as a single JSON line containing at minimum:
        timestamp, level, logger, message.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = "INFO", log_format: str = "structured") -> None:
    """Configure the root logger.

    Parameters
    ----------
    level : str
        Minimum log level.  One of DEBUG, INFO, WARNING, ERROR, CRITICAL.
    log_format : str
        ``"json"`` for one JSON object per line, anything else for the
        pipe-separated human format.
    """
    effective_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=effective_level,
        format=PLAIN_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )
    if log_format == "json":
        formatter = StructuredFormatter()
        for handler in logging.getLogger().handlers:
            handler.setFormatter(formatter)
