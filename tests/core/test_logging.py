"""Tests for dbsemaphore.core.logging: structlog configuration helpers."""

from __future__ import annotations

import structlog

from dbsemaphore.core.logging import (
    LogContext,
    bind_context,
    configure_logging,
    get_logger,
    unbind_context,
)


class TestConfigureLogging:
    def test_json_configuration(self):
        configure_logging(level="WARNING", json_format=True, service="test-svc")
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_console_configuration(self):
        configure_logging(level="DEBUG", json_format=False)
        processors = structlog.get_config()["processors"]
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)

    def test_logger_accepts_keyword_context(self):
        configure_logging(level="DEBUG", json_format=True)
        get_logger("tests").info("heartbeat_started", owner="host-1", interval_ms=1000)


class TestContextBinding:
    def test_bind_and_unbind(self):
        bind_context(owner="host-1")
        assert structlog.contextvars.get_contextvars()["owner"] == "host-1"
        unbind_context("owner")
        assert "owner" not in structlog.contextvars.get_contextvars()

    def test_log_context_scopes_keys(self):
        with LogContext(semaphore="jobs"):
            assert structlog.contextvars.get_contextvars()["semaphore"] == "jobs"
        assert "semaphore" not in structlog.contextvars.get_contextvars()
