"""
Logging setup shared by the HTTP surface, the import/export pipelines and
their worker threads.

Log lines carry the thread name so records written by the parse worker and
the sub-batch pool can be told apart from the controlling thread.
"""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Iterable, Optional

# Third-party loggers that log every HTTP round trip at INFO/DEBUG
QUIET_LOGGERS = ("urllib3", "requests", "multipart")

_is_configured = False


def configure_logging(level: Optional[str] = None, quiet_loggers: Iterable[str] = QUIET_LOGGERS) -> None:
    """
    Install a single console handler on the root logger, once per process.

    Args:
        level: Log level for the root and ``record_transfer`` loggers (default INFO)
        quiet_loggers: Loggers capped at WARNING regardless of ``level``
    """
    global _is_configured

    if _is_configured:
        return

    log_level = (level or "INFO").upper()

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "pipeline": {
                    "format": "%(asctime)s | %(levelname)-7s | %(threadName)s | %(name)s | %(message)s",
                    "datefmt": "%Y-%m-%d %H:%M:%S",
                }
            },
            "handlers": {
                "stdout": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "formatter": "pipeline",
                    "level": log_level,
                }
            },
            "root": {"handlers": ["stdout"], "level": log_level},
            "loggers": {name: {"level": "WARNING"} for name in quiet_loggers},
        }
    )

    logging.getLogger("record_transfer").setLevel(log_level)
    _is_configured = True
