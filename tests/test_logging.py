"""Tests for chatcache.core.logging."""

import logging

import structlog

from chatcache.core.config import Settings
from chatcache.core.logging import QUIET_LOGGERS, add_app_context, setup_logging, turn_context


class TestTurnContext:
    def test_binds_and_clears(self):
        with turn_context(user_id="u1") as turn_id:
            bound = structlog.contextvars.get_contextvars()
            assert bound["user_id"] == "u1"
            assert bound["turn_id"] == turn_id

        assert "turn_id" not in structlog.contextvars.get_contextvars()

    def test_turn_ids_are_unique(self):
        with turn_context() as first:
            pass
        with turn_context() as second:
            pass
        assert first != second


class TestSetup:
    def test_quiets_driver_loggers(self):
        setup_logging(Settings(redis_url="", debug=True))
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_app_context_keeps_explicit_backend(self):
        event = add_app_context(None, "info", {"event": "x", "backend": "custom"})
        assert event["backend"] == "custom"
        assert "app" in event and "version" in event
