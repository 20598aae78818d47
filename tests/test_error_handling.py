"""Tests for the error taxonomy and retry handler."""

from __future__ import annotations

import pytest

from harness_core.core import (
    ChopsticksBlockError,
    HarnessError,
    LaunchError,
    NodeReadinessError,
    PortDiscoveryError,
    RetryConfig,
    RetryHandler,
)


class TestRetryHandler:
    """Bounded retries."""

    @pytest.mark.asyncio
    async def test_calls_at_most_max_retries_plus_one(self):
        calls = []
        retries = []

        async def flaky():
            calls.append(1)
            raise ConnectionError("down")

        handler = RetryHandler(
            RetryConfig(max_retries=3, base_delay=0.0),
            on_retry=lambda attempt, e: retries.append(attempt),
        )
        with pytest.raises(ConnectionError):
            await handler.execute(flaky)

        assert len(calls) == 4
        assert retries == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_only_listed_exceptions_are_retried(self):
        calls = []

        async def broken():
            calls.append(1)
            raise KeyError("fatal")

        handler = RetryHandler(RetryConfig(max_retries=5, base_delay=0.0, retry_on=(ConnectionError,)))
        with pytest.raises(KeyError):
            await handler.execute(broken)
        assert len(calls) == 1

    def test_fixed_delay_schedule(self):
        config = RetryConfig(base_delay=0.5, exponential_base=1.0)
        assert [config.delay_for(a) for a in range(4)] == [0.5, 0.5, 0.5, 0.5]


class TestErrors:
    def test_hierarchy(self):
        for error in (
            LaunchError("moonbeam", ["--dev"], reason="not found"),
            PortDiscoveryError(123, 600),
            ChopsticksBlockError("newBlock", chain="relay", leg="send"),
        ):
            assert isinstance(error, HarnessError)

    def test_discovery_error_fields(self):
        error = PortDiscoveryError(4321, 600)
        assert error.pid == 4321
        assert error.attempts == 600
        assert "4321" in str(error)

    def test_readiness_error_carries_log_tail(self):
        error = NodeReadinessError("timed out", port=9944, attempts=10, log_tail="line a\nline b")
        assert "--- captured output ---" in str(error)
        assert "line b" in str(error)
        assert error.port == 9944
