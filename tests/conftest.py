"""Shared fixtures for structbaggage tests."""

from __future__ import annotations

import logging

import pytest
import structlog
from structlog.contextvars import clear_contextvars

from structbaggage.augment import augment_event
from structbaggage.events import CallerInfo, EventSnapshot, LogEvent


@pytest.fixture(autouse=True)
def _reset_logging() -> None:  # type: ignore[misc]
    """Reset root logger handlers and level after each test."""
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level

    yield  # type: ignore[misc]

    root.handlers[:] = original_handlers
    root.setLevel(original_level)


@pytest.fixture(autouse=True)
def _reset_structlog() -> None:  # type: ignore[misc]
    """Reset structlog configuration and contextvars after each test."""
    yield  # type: ignore[misc]
    structlog.reset_defaults()
    clear_contextvars()


@pytest.fixture
def snapshot() -> EventSnapshot:
    event = LogEvent(
        message="hello %s",
        args=("world",),
        key_values=[("someKey", 93)],
        caller=CallerInfo("/app/main.py", 12, "main"),
        logger_name="svc",
        timestamp=1_700_000_000.5,
    )
    return augment_event(event, merge_into_context=True, merge_into_arguments=True)
