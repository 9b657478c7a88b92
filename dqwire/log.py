"""Log levels and ready-made log functions."""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import Any, Callable


class Level(IntEnum):
    """Severity of a log message."""

    NONE = 0
    DEBUG = 1
    INFO = 2
    WARN = 3
    ERROR = 4

    def __str__(self) -> str:
        return _LEVEL_NAMES.get(self, "UNKNOWN")


_LEVEL_NAMES = {
    Level.DEBUG: "DEBUG",
    Level.INFO: "INFO",
    Level.WARN: "WARN",
    Level.ERROR: "ERROR",
}

_STDLIB_LEVELS = {
    Level.DEBUG: logging.DEBUG,
    Level.INFO: logging.INFO,
    Level.WARN: logging.WARNING,
    Level.ERROR: logging.ERROR,
}

LogFunc = Callable[..., None]
"""A log function: ``log(level, format, *args)`` with %-style formatting."""


def _render(fmt: str, args: tuple[Any, ...]) -> str:
    return fmt % args if args else fmt


def stdout() -> LogFunc:
    """Return a log function that prints messages on standard output."""

    def log(level: Level, fmt: str, *args: Any) -> None:
        print(f"{level!s}: {_render(fmt, args)}")

    return log


def forward(logger: logging.Logger) -> LogFunc:
    """Return a log function that forwards messages to a standard logger."""

    def log(level: Level, fmt: str, *args: Any) -> None:
        severity = _STDLIB_LEVELS.get(level, logging.INFO)
        logger.log(severity, "%s: %s", str(level), _render(fmt, args))

    return log