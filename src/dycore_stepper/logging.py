"""dycore_stepper logging.

All logging for the package goes through the ``dycore_stepper`` logger,
created here. Modules log through child loggers obtained with
``logging.getLogger(__name__)``, so handlers and levels set on the package
logger apply to all of them.

Set ``DYCORE_STEPPER_LOG_LEVEL`` to any of ``DEBUG``, ``INFO``, ``WARNING``,
``ERROR`` or ``CRITICAL`` to choose the verbosity. The default is ``WARNING``.
No handler is attached on import; call :func:`set_log_handler` from a driver
script to send records to the console.
"""

from __future__ import annotations

import logging
import os
import sys
from logging import CRITICAL, DEBUG, ERROR, INFO, NOTSET, WARNING  # noqa: F401

__all__ = [
    "CRITICAL",
    "DEBUG",
    "ERROR",
    "INFO",
    "NOTSET",
    "WARNING",
    "LoggingError",
    "logger",
    "set_log_handler",
]

_LOG_LEVEL_ENV = "DYCORE_STEPPER_LOG_LEVEL"
_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


class LoggingError(Exception):
    """Raised when the logging configuration is invalid."""


def _resolve_level(value: str | int) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelNamesMapping().get(value.strip().upper())
    if level is None:
        msg = f"Unknown log level in {_LOG_LEVEL_ENV}: {value!r}"
        raise LoggingError(msg)
    return level


logger = logging.getLogger("dycore_stepper")
logger.addHandler(logging.NullHandler())
logger.setLevel(_resolve_level(os.environ.get(_LOG_LEVEL_ENV, WARNING)))


def set_log_handler(level: str | int | None = None) -> logging.Handler:
    """Attach a console handler to the package logger.

    Calling this more than once replaces the previously attached console
    handler instead of stacking duplicates.

    Args:
        level: Optional level for the handler and the logger. If None, the
            current logger level is kept.

    Returns:
        The attached handler.
    """
    for handler in list(logger.handlers):
        if getattr(handler, "_dycore_stepper_console", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._dycore_stepper_console = True  # type: ignore[attr-defined]  # noqa: SLF001

    if level is not None:
        resolved = _resolve_level(level)
        logger.setLevel(resolved)
        handler.setLevel(resolved)

    logger.addHandler(handler)
    return handler
