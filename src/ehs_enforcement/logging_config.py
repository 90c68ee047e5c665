"""Logging setup for the enforcement scraper.

Every handler installed by :func:`setup_logging` tags records with the scrape
session that produced them. Code running inside a session logs through
:func:`session_logger`; anything else shows ``-`` in the session column, so
lines from concurrent sessions can be told apart in one log file.
"""

import logging
import sys
from pathlib import Path
from typing import Any, MutableMapping, Optional, Tuple


DEFAULT_LOG_DIR = Path("logs")
DEFAULT_LOG_FILE = "ehs_enforcement.log"
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(session)s] %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
ROOT_LOGGER_NAME = "ehs_enforcement"
NO_SESSION = "-"

# HTTP client libraries log every request at INFO.
NOISY_LOGGERS = ("httpx", "httpcore")


class SessionContextFilter(logging.Filter):
    """Give every record a ``session`` attribute for the log format."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "session", None):
            record.session = NO_SESSION
        return True


class SessionLoggerAdapter(logging.LoggerAdapter):
    """Logger bound to one scrape session (``session`` and ``agency`` extras)."""

    def __init__(self, logger: logging.Logger, session_id: str, agency: Optional[str] = None) -> None:
        context = f"{agency}:{session_id[:8]}" if agency else session_id[:8]
        super().__init__(logger, {"session": context, "session_id": session_id, "agency": agency})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(
    log_file: Optional[Path] = None,
    log_dir: Optional[Path] = None,
    level: int = logging.INFO,
    console: bool = True,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """Configure the package logger with a file handler and optional console output.

    Args:
        log_file: Path to log file (default: logs/ehs_enforcement.log)
        log_dir: Directory for log files (default: logs/)
        level: Logging level (default: INFO)
        console: Whether to also log to stdout (default: True)
        format_string: Custom format; may use ``%(session)s``

    Returns:
        The configured package root logger
    """
    log_dir = log_dir or DEFAULT_LOG_DIR
    if log_file is None:
        log_file = log_dir / DEFAULT_LOG_FILE
    elif not log_file.is_absolute():
        log_file = log_dir / log_file
    log_file.parent.mkdir(parents=True, exist_ok=True)

    formatter = logging.Formatter(format_string or DEFAULT_FORMAT, datefmt=DEFAULT_DATE_FORMAT)
    context_filter = SessionContextFilter()

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handlers = [logging.FileHandler(log_file, encoding="utf-8")]
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        # Filters on a handler also see records from child loggers.
        handler.addFilter(context_filter)
        logger.addHandler(handler)

    logger.propagate = False
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger.info("Logging initialized: %s", log_file)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``ehs_enforcement`` namespace, e.g. ``get_logger("session")``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def session_logger(name: str, session_id: str, agency: Optional[str] = None) -> SessionLoggerAdapter:
    """Logger whose records carry ``session_id`` and ``agency``."""
    return SessionLoggerAdapter(get_logger(name), session_id, agency)
