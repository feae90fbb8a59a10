"""Structured logging setup.

Every module logs through ``structlog.get_logger(__name__)`` with dotted event
names. The risk engine binds its wallet into the logging context on start, so
events from the monitor loop and the circuit breaker carry it implicitly.
"""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from dexguard.core.config import LoggingConfig

# File handler installed by the most recent setup_logging call
_file_handler: Optional[logging.Handler] = None


def _add_service(logger, method_name, event_dict):
    event_dict.setdefault("service", "dexguard")
    return event_dict


def setup_logging(config: Optional[LoggingConfig] = None):
    """Configure stdlib logging and the structlog processor chain.

    Calling it again swaps the previous file handler instead of stacking a new one.
    """
    global _file_handler

    config = config or LoggingConfig()
    level = getattr(logging, config.level.upper())
    root_logger = logging.getLogger()

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    root_logger.setLevel(level)

    if _file_handler is not None:
        root_logger.removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        _file_handler = logging.FileHandler(log_path)
        _file_handler.setLevel(level)
        root_logger.addHandler(_file_handler)

    if config.format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _add_service,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def bind_wallet_context(wallet_address: str):
    """Attach the wallet to every event logged from the current context onwards.

    Tasks created afterwards inherit it.
    """
    structlog.contextvars.bind_contextvars(wallet=wallet_address)


def clear_wallet_context():
    structlog.contextvars.unbind_contextvars("wallet")
