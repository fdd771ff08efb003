"""
Tests for retry policies, the keyed retry loop and RetryHandler.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from opstate.core.exceptions import ConfigurationError
from opstate.core.retry import (
    BackoffStrategy,
    RetryContext,
    RetryHandler,
    RetryPolicy,
    execute_with_retry,
)


def failing(error: BaseException, calls: list):
    """Build an async callable that records each call and always raises."""

    async def request():
        calls.append(1)
        raise error

    return request


# ============================================================================
# RetryPolicy Tests
# ============================================================================


class TestRetryPolicy:
    """Tests for delay arithmetic."""

    def test_default_values(self):
        policy = RetryPolicy()

        assert policy.max_retries == 3
        assert policy.base_delay == 1.0
        assert policy.max_delay == 10.0
        assert policy.backoff == BackoffStrategy.EXPONENTIAL

    def test_exponential_delays(self):
        policy = RetryPolicy(base_delay=0.1, multiplier=2)

        assert [policy.compute_delay(n) for n in range(3)] == pytest.approx(
            [0.1, 0.2, 0.4]
        )

    def test_linear_delays(self):
        policy = RetryPolicy(base_delay=1.0, backoff=BackoffStrategy.LINEAR)

        assert [policy.compute_delay(n) for n in range(3)] == [1.0, 2.0, 3.0]

    def test_constant_delays(self):
        policy = RetryPolicy(base_delay=0.5, backoff="constant")

        assert policy.backoff is BackoffStrategy.CONSTANT
        assert [policy.compute_delay(n) for n in range(3)] == [0.5, 0.5, 0.5]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, multiplier=2, max_delay=10.0)

        assert policy.compute_delay(10) == 10.0

    def test_can_retry(self):
        policy = RetryPolicy(max_retries=2)

        assert policy.can_retry(0) is True
        assert policy.can_retry(1) is True
        assert policy.can_retry(2) is False

    def test_rejects_negative_values(self):
        with pytest.raises(ConfigurationError):
            RetryPolicy(max_retries=-1)
        with pytest.raises(ConfigurationError):
            RetryPolicy(base_delay=-0.1)

    def test_context_tracks_policy(self):
        context = RetryContext(policy=RetryPolicy(max_retries=1, base_delay=0.3))

        assert context.next_delay == pytest.approx(0.3)
        context.retry_count = 1
        assert context.can_retry is False


# ============================================================================
# execute_with_retry Tests
# ============================================================================


class TestExecuteWithRetry:
    """Tests for the keyed retry loop."""

    @pytest.mark.asyncio
    async def test_success_first_try(self, scheduler):
        async def request():
            return "ok"

        result = await execute_with_retry(
            "listings", request, RetryPolicy(), scheduler=scheduler
        )

        assert result == "ok"
        assert scheduler.sleeps == []

    @pytest.mark.asyncio
    async def test_linear_backoff_then_original_error(self, scheduler):
        """Exhaustion re-raises the very error the request raised."""
        error = ConnectionError("backend down")
        calls = []
        policy = RetryPolicy(max_retries=3, base_delay=1.0, backoff=BackoffStrategy.LINEAR)

        task = asyncio.ensure_future(
            execute_with_retry("k", failing(error, calls), policy, scheduler=scheduler)
        )
        await scheduler.advance(6.0)

        assert task.done()
        assert task.exception() is error
        assert len(calls) == 4
        assert scheduler.sleeps == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_recovers_after_failures(self, scheduler):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise TimeoutError("slow")
            return "finally"

        task = asyncio.ensure_future(
            execute_with_retry(
                "k", flaky, RetryPolicy(max_retries=3, base_delay=0.1), scheduler=scheduler
            )
        )
        await scheduler.advance(1.0)

        assert task.result() == "finally"
        assert scheduler.sleeps == pytest.approx([0.1, 0.2])

    @pytest.mark.asyncio
    async def test_counter_mirrored_and_removed(self, scheduler):
        counters = {}
        seen = []

        async def request():
            seen.append(counters.get("k"))
            if len(seen) < 2:
                raise RuntimeError("once")
            return True

        task = asyncio.ensure_future(
            execute_with_retry(
                "k",
                request,
                RetryPolicy(max_retries=1, base_delay=0.5),
                scheduler=scheduler,
                counters=counters,
            )
        )
        await scheduler.advance(0.5)

        assert task.result() is True
        assert seen == [0, 1]
        assert "k" not in counters

    @pytest.mark.asyncio
    async def test_zero_retries(self, scheduler):
        calls = []

        with pytest.raises(ValueError):
            await execute_with_retry(
                "k",
                failing(ValueError("bad"), calls),
                RetryPolicy(max_retries=0),
                scheduler=scheduler,
            )

        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_failure_reporting_levels(self, scheduler):
        """Intermediate failures warn, the exhausting one is an error."""
        with patch("opstate.core.retry.logger") as mock_logger:
            task = asyncio.ensure_future(
                execute_with_retry(
                    "k",
                    failing(RuntimeError("x"), []),
                    RetryPolicy(max_retries=2, base_delay=0.1),
                    scheduler=scheduler,
                )
            )
            await scheduler.advance(1.0)

        assert isinstance(task.exception(), RuntimeError)
        assert mock_logger.warning.call_count == 2
        assert mock_logger.error.call_count == 1
        assert mock_logger.error.call_args[0][0] == "retry_exhausted"


# ============================================================================
# RetryHandler Tests
# ============================================================================


class TestRetryHandler:
    """Tests for caller-driven retries."""

    @pytest.mark.asyncio
    async def test_success_resets_count(self, scheduler):
        async def operation():
            return "loaded"

        handler = RetryHandler(
            operation, RetryPolicy(max_retries=3, base_delay=0), scheduler=scheduler
        )

        assert await handler.retry() == "loaded"
        assert handler.retry_count == 0
        assert handler.last_error is None

    @pytest.mark.asyncio
    async def test_backoff_grows_until_refused(self, scheduler):
        calls = []
        on_exhausted = MagicMock()
        handler = RetryHandler(
            failing(ConnectionError("down"), calls),
            RetryPolicy(max_retries=3, base_delay=0.1, multiplier=2),
            scheduler=scheduler,
            on_exhausted=on_exhausted,
        )

        for delay in (0.1, 0.2, 0.4):
            task = asyncio.ensure_future(handler.retry())
            await scheduler.advance(delay)
            assert isinstance(task.exception(), ConnectionError)

        assert scheduler.sleeps == pytest.approx([0.1, 0.2, 0.4])
        assert handler.retry_count == 3
        assert handler.can_retry is False
        on_exhausted.assert_called_once_with(handler.last_error)

        assert await handler.retry() is None
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_is_retrying_flag(self, scheduler):
        async def operation():
            return 1

        handler = RetryHandler(
            operation, RetryPolicy(base_delay=1.0), scheduler=scheduler
        )

        task = asyncio.ensure_future(handler.retry())
        await scheduler.settle()
        assert handler.is_retrying is True
        # A concurrent retry is refused
        assert await handler.retry() is None

        await scheduler.advance(1.0)
        assert task.result() == 1
        assert handler.is_retrying is False

    @pytest.mark.asyncio
    async def test_reset(self, scheduler):
        handler = RetryHandler(
            failing(RuntimeError("x"), []),
            RetryPolicy(max_retries=1, base_delay=0),
            scheduler=scheduler,
        )

        with pytest.raises(RuntimeError):
            await handler.retry()
        assert handler.can_retry is False

        handler.reset()

        assert handler.retry_count == 0
        assert handler.can_retry is True
        assert handler.last_error is None

    @pytest.mark.asyncio
    async def test_failing_exhausted_callback_is_logged(self, scheduler):
        def explode(_):
            raise RuntimeError("callback bug")

        handler = RetryHandler(
            failing(KeyError("k"), []),
            RetryPolicy(max_retries=1, base_delay=0),
            scheduler=scheduler,
            on_exhausted=explode,
        )

        with patch("opstate.core.retry.logger") as mock_logger:
            with pytest.raises(KeyError):
                await handler.retry()

        events = [c[0][0] for c in mock_logger.error.call_args_list]
        assert events == ["retry_exhausted", "retry_exhausted_callback_error"]
