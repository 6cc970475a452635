"""
Tests for step timeouts and retries.
"""

import asyncio

import pytest

from retail_checkout.errors import DownstreamUnavailableError, PaymentDeclinedError, StepTimeoutError
from retail_checkout.saga.policy import StepPolicy, with_retry, with_timeout

FAST = StepPolicy(timeout=0.2, attempts=3, backoff=0.001, max_backoff=0.002)


class Flaky:
    def __init__(self, failures, error=DownstreamUnavailableError("unavailable")):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestWithTimeout:
    @pytest.mark.asyncio
    async def test_slow_call_times_out(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(StepTimeoutError) as exc_info:
            await with_timeout(slow, 0.01, step="ChargePayment", saga_id="s-1")

        assert isinstance(exc_info.value, DownstreamUnavailableError)
        assert exc_info.value.details == {"step": "ChargePayment", "saga_id": "s-1"}


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        call = Flaky(failures=2)

        assert await with_retry(call, FAST, step="Reserve", saga_id="s-1") == "ok"
        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        call = Flaky(failures=10)

        with pytest.raises(DownstreamUnavailableError):
            await with_retry(call, FAST, step="Reserve", saga_id="s-1")
        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_definitive_errors_are_not_retried(self):
        call = Flaky(failures=10, error=PaymentDeclinedError("declined", reason="card declined"))

        with pytest.raises(PaymentDeclinedError):
            await with_retry(call, FAST, step="Charge", saga_id="s-1")
        assert call.calls == 1

    @pytest.mark.asyncio
    async def test_timeouts_are_retried(self):
        calls = 0

        async def slow_then_fast():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "ok"

        assert await with_retry(slow_then_fast, FAST, step="GetCart", saga_id="s-1") == "ok"
        assert calls == 2

    def test_backoff_doubles_up_to_the_cap(self):
        delays = StepPolicy(backoff=0.1, max_backoff=0.3).delays()
        assert [next(delays) for _ in range(4)] == [0.1, 0.2, 0.3, 0.3]
