import json
import logging
import os
from datetime import UTC, datetime
from typing import Any, Dict, Optional

from colorama import Fore, Style, init

init(autoreset=True)

DEFAULT_LOG_FILE = "data/logs/scrape.log"
EVENTS_FILE_NAME = "session_events.jsonl"
EVENT_LOGGER_NAME = "session.events"

FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(asctime)s - %(levelname_colored)s - %(message)s"
EVENT_CONSOLE_FORMAT = "%(asctime)s - %(levelname_colored)s - [%(event_type_colored)s] - %(message)s"


def _resolve_log_file(log_file: Optional[str]) -> Optional[str]:
    """Explicit path, else SCRAPER_LOG_FILE, else the default; empty disables."""
    if log_file is None:
        log_file = os.environ.get("SCRAPER_LOG_FILE", DEFAULT_LOG_FILE)
    return log_file or None


def _resolve_level(level: Optional[int]) -> int:
    if level is not None:
        return level
    name = os.environ.get("SCRAPER_LOG_LEVEL", "INFO").upper()
    return getattr(logging, name, logging.INFO)


def _colorize(color: str, text: str) -> str:
    return f"{color}{text}{Style.RESET_ALL}"


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, carrying ``event_type`` and ``event_data``."""

    def format(self, record):
        entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event_type": getattr(record, "event_type", "general"),
            "event_data": getattr(record, "event_data", {}),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter colouring the level and the session event type."""

    LEVEL_COLORS = {
        "DEBUG": Fore.CYAN,
        "INFO": Fore.BLUE,
        "WARNING": Fore.YELLOW,
        "ERROR": Fore.RED,
        "CRITICAL": Fore.MAGENTA + Style.BRIGHT,
    }

    EVENT_COLORS = {
        "acquisition": Fore.MAGENTA,
        "fetch": Fore.GREEN,
        "cookie": Fore.CYAN,
        "behavior": Fore.YELLOW,
        "classification": Fore.YELLOW + Style.BRIGHT,
    }

    def format(self, record):
        event_type = getattr(record, "event_type", "general")
        record.levelname_colored = _colorize(
            self.LEVEL_COLORS.get(record.levelname, Fore.WHITE), record.levelname
        )
        record.event_type_colored = _colorize(
            self.EVENT_COLORS.get(event_type, Fore.WHITE), event_type.upper()
        )
        return super().format(record)


class EventDefaultsFilter(logging.Filter):
    """Give plain records the event attributes the formatters read."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.__dict__.setdefault("event_type", "general")
        record.__dict__.setdefault("event_data", {})
        return True


def _file_handler(path: str, formatter: logging.Formatter, level: int) -> logging.Handler:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _console_handler(fmt: str, level: int) -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(ColoredFormatter(fmt))
    return handler


def _reset(logger: logging.Logger, level: int) -> None:
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    if not any(isinstance(f, EventDefaultsFilter) for f in logger.filters):
        logger.addFilter(EventDefaultsFilter())


def setup_logger(name="scraper", level=None, log_file=None, console=True):
    """Configure ``name`` with an optional plain-text file and a coloured console."""
    level = _resolve_level(level)
    log_file = _resolve_log_file(log_file)

    logger = logging.getLogger(name)
    _reset(logger, level)

    if log_file:
        logger.addHandler(_file_handler(log_file, logging.Formatter(FILE_FORMAT), level))
    if console:
        logger.addHandler(_console_handler(CONSOLE_FORMAT, level))
    return logger


def setup_event_logger(name=EVENT_LOGGER_NAME, level=None, structured_file=None, console=True):
    """Configure the session event logger: JSON lines on disk plus console.

    Args:
        name: Logger name
        level: Logging level, defaults to SCRAPER_LOG_LEVEL
        structured_file: JSON lines path; defaults to ``session_events.jsonl``
            beside the main log file (no file when file logging is disabled)
        console: Whether to enable console logging
    """
    level = _resolve_level(level)
    if structured_file is None:
        main_log = _resolve_log_file(None)
        if main_log:
            structured_file = os.path.join(os.path.dirname(main_log) or ".", EVENTS_FILE_NAME)

    logger = logging.getLogger(name)
    logger.propagate = False
    _reset(logger, level)

    if structured_file:
        logger.addHandler(_file_handler(structured_file, StructuredFormatter(), level))
    if console:
        logger.addHandler(_console_handler(EVENT_CONSOLE_FORMAT, level))
    return logger


def get_event_logger() -> logging.Logger:
    logger = logging.getLogger(EVENT_LOGGER_NAME)
    return logger if logger.handlers else setup_event_logger()


def log_session_event(event_type: str, event_data: Dict[str, Any], level: str = "INFO"):
    """Emit a structured event (acquisition, fetch, cookie, behavior)."""
    logger = get_event_logger()
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    if logger.isEnabledFor(numeric_level):
        logger.log(
            numeric_level,
            f"Session event: {event_type}",
            extra={"event_type": event_type, "event_data": event_data},
        )


def get_logger(name: str) -> logging.Logger:
    """Logger for ``name``, configured on first use."""
    logger = logging.getLogger(name)
    return logger if logger.handlers else setup_logger(name)
