# tests/test_logging.py
"""Tests for the package logger configuration."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from dycore_stepper import logging as dlog


@pytest.fixture
def _restore_logger() -> Iterator[None]:
    level = dlog.logger.level
    handlers = list(dlog.logger.handlers)
    yield
    dlog.logger.setLevel(level)
    for handler in list(dlog.logger.handlers):
        if handler not in handlers:
            dlog.logger.removeHandler(handler)


def test_package_logger_has_null_handler() -> None:
    """Importing the package attaches no console output."""
    assert dlog.logger.name == "dycore_stepper"
    assert any(isinstance(h, logging.NullHandler) for h in dlog.logger.handlers)


def test_module_loggers_are_children() -> None:
    """Module loggers propagate to the package logger."""
    child = logging.getLogger("dycore_stepper.arkode")
    assert child.parent is dlog.logger


@pytest.mark.usefixtures("_restore_logger")
def test_set_log_handler_replaces_console_handler() -> None:
    """Repeated calls keep a single console handler."""
    first = dlog.set_log_handler("debug")
    second = dlog.set_log_handler(logging.INFO)
    assert first not in dlog.logger.handlers
    assert second in dlog.logger.handlers
    assert dlog.logger.level == logging.INFO
    assert second.level == logging.INFO


@pytest.mark.usefixtures("_restore_logger")
def test_set_log_handler_keeps_level_by_default() -> None:
    """Without a level the logger level is left alone."""
    dlog.logger.setLevel(logging.ERROR)
    handler = dlog.set_log_handler()
    assert dlog.logger.level == logging.ERROR
    assert handler.level == logging.NOTSET


@pytest.mark.usefixtures("_restore_logger")
def test_unknown_level_is_rejected() -> None:
    """Unknown level names raise LoggingError."""
    with pytest.raises(dlog.LoggingError, match="LOUD"):
        dlog.set_log_handler("LOUD")
