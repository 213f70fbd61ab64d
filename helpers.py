import logging
from typing import Optional

import colorama
from colorama import Fore, Style

from config import Config

# Initialize colorama for colored output
colorama.init()

logger = logging.getLogger("torrent")

# Custom level for "success" events so they can be colored apart from plain info
SUCCESS = logging.INFO + 5
logging.addLevelName(SUCCESS, "SUCCESS")

LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "success": SUCCESS,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

COLORS = {
    logging.DEBUG: Fore.CYAN,
    logging.INFO: Fore.WHITE,
    SUCCESS: Fore.GREEN,
    logging.WARNING: Fore.YELLOW,
    logging.ERROR: Fore.RED,
}


class ColorFormatter(logging.Formatter):
    """Formatter that wraps console lines in a colour picked by level."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = COLORS.get(record.levelno, Fore.WHITE)
        return f"{color}{message}{Style.RESET_ALL}"


def setup_logging(level: str = Config.LOG_LEVEL, log_file: Optional[str] = Config.LOG_FILE):
    """
    Configure the client's logger with a coloured console handler and an optional file handler.

    Args:
        level: Name of the lowest level to emit (e.g. "INFO", "DEBUG")
        log_file: Path of a plain-text log file, or None for console only
    """
    fmt = '[%(asctime)s] %(message)s'
    datefmt = '%Y-%m-%d %H:%M:%S'

    logger.handlers.clear()
    logger.setLevel(level.upper())
    logger.propagate = False

    console = logging.StreamHandler()
    console.setFormatter(ColorFormatter(fmt, datefmt))
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(fmt, datefmt))
        logger.addHandler(file_handler)


def log_event(event_type: str, message: str, level: str = "info"):
    """
    Log an event as "[EVENT] message"

    Args:
        event_type: Type of event (e.g. PEER, TRACKER, SCHEDULER)
        message: Log message
        level: Log level (debug, info, success, warning, error)
    """
    logger.log(LEVELS.get(level, logging.INFO), f"[{event_type}] {message}")


def format_size(size: float) -> str:
    """Format size in bytes to human readable format"""
    for unit in ['B', 'KB', 'MB', 'GB']:
        if size < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"
