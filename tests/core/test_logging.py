"""
Tests for the logging module.

Tests verify:
- JSON output carries level and service metadata
- LogContext binds and unbinds contextvars
- DEBUG logs are suppressed at INFO level
"""

import json

import pytest
import structlog

from adaptive_engine.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)


@pytest.fixture(autouse=True)
def _reset_structlog():
    clear_context()
    yield
    clear_context()
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_json_output(self, capsys):
        configure_logging(level="INFO", json_format=True, service="engine-test")
        get_logger("test").info("pool.acquire_timeout", service_name="ec2", waited=1.5)

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "pool.acquire_timeout"
        assert record["level"] == "info"
        assert record["service.name"] == "engine-test"
        assert record["waited"] == 1.5
        assert "timestamp" in record

    def test_debug_suppressed_at_info(self, capsys):
        configure_logging(level="INFO", json_format=True)
        get_logger("test").debug("dedup.plan_built")
        assert "dedup.plan_built" not in capsys.readouterr().out

    def test_bound_context_is_merged(self, capsys):
        configure_logging(level="DEBUG", json_format=True, add_timestamp=False)
        with LogContext(batch_id="b-1"):
            get_logger("test").info("orchestrator.batch_start")
        record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert record["batch_id"] == "b-1"
        assert "timestamp" not in record


class TestContext:
    def test_bind_and_unbind(self):
        bind_context(batch_id="b-1", service="s3")
        unbind_context("service")
        assert structlog.contextvars.get_contextvars() == {"batch_id": "b-1"}

    def test_log_context_restores(self):
        with LogContext(batch_id="b-2"):
            assert structlog.contextvars.get_contextvars()["batch_id"] == "b-2"
        assert "batch_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_async_log_context(self):
        async with LogContext(batch_id="b-3"):
            assert structlog.contextvars.get_contextvars()["batch_id"] == "b-3"
        assert structlog.contextvars.get_contextvars() == {}
