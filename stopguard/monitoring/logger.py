"""
Structured logging for stopguard.

Every protection event is one structlog line keyed by an UPPER_SNAKE event
name. Prices and quantities are ``Decimal`` throughout, so they are rendered
as plain strings before the JSON renderer sees them. The instrument symbol
and environment are bound once per process via contextvars.
"""
import logging
import sys
from decimal import Decimal
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

import structlog

from stopguard.config.config import MonitoringConfig

_FILE_HANDLER_NAME = "stopguard-file"


def render_decimals(_logger: Any, _method_name: str, event_dict: dict) -> dict:
    """Structlog processor: Decimal values become their plain string form."""
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = format(value, "f")
    return event_dict


def bind_trading_context(symbol: str, environment: Optional[str] = None) -> None:
    """Attach the traded symbol (and environment) to every later log line."""
    structlog.contextvars.clear_contextvars()
    if environment:
        structlog.contextvars.bind_contextvars(symbol=symbol, environment=environment)
    else:
        structlog.contextvars.bind_contextvars(symbol=symbol)


def setup_logging(monitoring: Optional[MonitoringConfig] = None) -> None:
    """
    Configure structlog and the stdlib root logger from the monitoring section.

    Safe to call more than once: the rotating file handler is replaced, not
    duplicated.
    """
    monitoring = monitoring or MonitoringConfig()
    level = getattr(logging, monitoring.log_level)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.root.setLevel(level)

    processors = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.contextvars.merge_contextvars,
        render_decimals,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if monitoring.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    for handler in list(logging.root.handlers):
        if handler.get_name() == _FILE_HANDLER_NAME:
            logging.root.removeHandler(handler)
            handler.close()

    if monitoring.log_file:
        log_path = Path(monitoring.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=monitoring.log_file_max_mb * 1024 * 1024,
            backupCount=monitoring.log_file_backups,
        )
        file_handler.set_name(_FILE_HANDLER_NAME)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(file_handler)

        get_logger(__name__).info(
            "LOGGING_INITIALIZED",
            log_file=str(log_path),
            log_level=monitoring.log_level,
            log_format=monitoring.log_format,
        )


def get_logger(name: str) -> structlog.BoundLogger:
    """Structured logger for a module (pass ``__name__``)."""
    return structlog.get_logger(name)
