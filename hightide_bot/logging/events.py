from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"

LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}

TIMESTAMP_COLOR = "\033[90m"
EVENT_COLOR = "\033[96m"
KEY_COLOR = "\033[94m"
NUMBER_COLOR = "\033[93m"
STRING_COLOR = "\033[92m"
VALUE_COLOR = "\033[37m"

NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "discord": logging.INFO,
    "discord.gateway": logging.WARNING,
    "discord.http": logging.WARNING,
}


def _paint(value: Any) -> str:
    if value is None:
        return f"{DIM}None{RESET}"
    if isinstance(value, (bool, int, float)):
        return f"{NUMBER_COLOR}{value}{RESET}"
    if isinstance(value, str):
        return f"{STRING_COLOR}{value}{RESET}"
    return f"{VALUE_COLOR}{value}{RESET}"


class ColoredConsoleRenderer:
    """``[time] LEVEL event | key=value | ...`` with ANSI colors on a TTY."""

    def __init__(self, colored: bool = True):
        self.colored = colored and sys.stdout.isatty()
        self._fallback = structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "event"], drop_missing=True
        )

    def __call__(self, logger: Any, name: str, event_dict: dict) -> str:
        if not self.colored:
            return self._fallback(logger, name, event_dict)

        timestamp = event_dict.pop("timestamp", "")
        level = event_dict.pop("level", "info").upper()
        event = event_dict.pop("event", "")
        color = LEVEL_COLORS.get(level, LEVEL_COLORS["INFO"])

        line = f"{color}{BOLD}{level:8}{RESET} {EVENT_COLOR}{event}{RESET}"
        if timestamp:
            line = f"{TIMESTAMP_COLOR}[{timestamp}]{RESET} {line}"
        if event_dict:
            separator = f" {DIM}|{RESET} "
            pairs = separator.join(f"{KEY_COLOR}{key}{RESET}={_paint(value)}" for key, value in event_dict.items())
            line = f"{line}{separator}{pairs}"
        return line


class _StdlibFormatter(logging.Formatter):
    """Formats discord.py/httpx records to match the structlog console output."""

    def format(self, record: logging.LogRecord) -> str:
        if not sys.stdout.isatty():
            return super().format(record)
        color = LEVEL_COLORS.get(record.levelname, LEVEL_COLORS["INFO"])
        return (
            f"{TIMESTAMP_COLOR}[{self.formatTime(record, '%H:%M:%S')}]{RESET} "
            f"{color}{BOLD}{record.levelname:8}{RESET} "
            f"{DIM}{record.name}{RESET} {record.getMessage()}"
        )


def setup_logging(level: int = logging.INFO, use_json: bool = False) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Logging level (default: INFO)
        use_json: Emit one JSON object per line instead of the colored console format
    """
    renderer = structlog.processors.JSONRenderer() if use_json else ColoredConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S", utc=False),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(_StdlibFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logging.basicConfig(level=level, handlers=[handler], force=True)

    for name, noisy_level in NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)
