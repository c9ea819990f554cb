"""Logging configuration."""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from tradejournal.core.config import LoggingConfig, logging_config

APP_NAME = "tradejournal"


def add_app_name(logger, method_name, event_dict):
    """Tag every event with the application name."""
    event_dict.setdefault("app", APP_NAME)
    return event_dict


def setup_logging(config: Optional[LoggingConfig] = None):
    """Configure structured logging.

    Events are rendered as JSON lines on stdout and, when a log file is
    configured, mirrored to that file. Context bound with
    ``structlog.contextvars`` (the engine binds ``user_id`` for the span of
    a refresh) is merged into every event.
    """
    config = config or logging_config
    level = getattr(logging, config.log_level.upper())

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            add_app_name,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True)
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if not config.log_file:
        return

    log_path = Path(config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Records are already JSON; keep one per line in the file as on stdout
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter("%(message)s"))
    logging.getLogger().addHandler(file_handler)
