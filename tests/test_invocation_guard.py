"""Tests for the AI invocation guard: rate limiting, circuit breaking and retry."""

import pytest

from conftest import FakeAIPort, FakeClock, RecordingSleep
from flow_orchestrator.core.exceptions import CircuitBreakerOpen, HandlerError, RateLimitExceeded
from flow_orchestrator.core.invocation_guard import (
    CircuitState,
    GuardConfig,
    InvocationGuard,
    RetryOptions,
)
from flow_orchestrator.core.ports import GuardedAIChatPort


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    config = GuardConfig(
        rate_limit_window_ms=1000,
        default_rate_limit=2,
        circuit_breaker_threshold=2,
        circuit_breaker_timeout_ms=5000,
        max_retries=2,
        retry_delay_ms=100,
        retry_backoff_multiplier=2.0,
    )
    return InvocationGuard(config, clock=clock, sleep=RecordingSleep())


class Flaky:
    """Callable failing ``failures`` times before returning ``result``."""

    def __init__(self, failures: int, error: Exception = None, result="done"):
        self.failures = failures
        self.error = error or RuntimeError("transient")
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


class TestRateLimiter:
    """Test the fixed-window rate limiter."""

    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_denies(self, guard):
        first = await guard.check_rate_limit("openai")
        second = await guard.check_rate_limit("openai")
        third = await guard.check_rate_limit("openai")

        assert (first.allowed, first.remaining) == (True, 1)
        assert (second.allowed, second.remaining) == (True, 0)
        assert third.allowed is False
        assert third.remaining == 0

    @pytest.mark.asyncio
    async def test_window_resets_lazily(self, guard, clock):
        for _ in range(3):
            await guard.check_rate_limit("openai")

        clock.advance(1001)
        result = await guard.check_rate_limit("openai")

        assert result.allowed is True
        assert result.remaining == 1

    @pytest.mark.asyncio
    async def test_providers_are_counted_separately(self, guard):
        await guard.check_rate_limit("a")
        await guard.check_rate_limit("a")
        assert (await guard.check_rate_limit("b")).allowed is True

    @pytest.mark.asyncio
    async def test_per_call_limit_overrides_default(self, guard):
        assert (await guard.check_rate_limit("p", limit=1)).allowed is True
        assert (await guard.check_rate_limit("p", limit=1)).allowed is False

    @pytest.mark.asyncio
    async def test_protected_call_rejected_without_invoking(self, guard):
        fn = Flaky(0)
        await guard.execute_with_protection("p", "m", fn)
        await guard.execute_with_protection("p", "m", fn)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await guard.execute_with_protection("p", "m", fn)

        assert fn.calls == 2
        assert exc_info.value.error_code == "RATE_LIMIT_EXCEEDED"
        assert exc_info.value.recoverable is True


class TestCircuitBreaker:
    """Test the per-model circuit breaker."""

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self, guard):
        await guard.record_failure("gpt")
        assert (await guard.check_circuit_breaker("gpt")).is_open is False

        await guard.record_failure("gpt")
        check = await guard.check_circuit_breaker("gpt")

        assert check.is_open is True
        assert check.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_protected_calls(self, guard):
        await guard.record_failure("gpt")
        await guard.record_failure("gpt")
        fn = Flaky(0)

        with pytest.raises(CircuitBreakerOpen) as exc_info:
            await guard.execute_with_protection("p", "gpt", fn)

        assert fn.calls == 0
        assert exc_info.value.error_code == "CIRCUIT_BREAKER_OPEN"

    @pytest.mark.asyncio
    async def test_half_open_admits_a_single_trial(self, guard, clock):
        await guard.record_failure("gpt")
        await guard.record_failure("gpt")
        clock.advance(5000)

        trial = await guard.check_circuit_breaker("gpt")
        concurrent = await guard.check_circuit_breaker("gpt")

        assert trial.is_open is False
        assert trial.state == CircuitState.HALF_OPEN
        assert concurrent.is_open is True

    @pytest.mark.asyncio
    async def test_successful_trial_closes_breaker(self, guard, clock):
        await guard.record_failure("gpt")
        await guard.record_failure("gpt")
        clock.advance(5000)

        assert await guard.execute_with_protection("p", "gpt", Flaky(0)) == "done"

        stats = await guard.get_stats()
        assert stats["circuit_breakers"]["gpt"]["state"] == "closed"
        assert stats["circuit_breakers"]["gpt"]["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_failed_trial_reopens_breaker(self, guard, clock):
        await guard.record_failure("gpt")
        await guard.record_failure("gpt")
        clock.advance(5000)

        with pytest.raises(RuntimeError):
            await guard.execute_with_protection("p", "gpt", Flaky(10), RetryOptions(max_retries=0))

        check = await guard.check_circuit_breaker("gpt")
        assert check.is_open is True
        assert check.reset_time == clock.now + 5000

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, guard):
        await guard.record_failure("gpt")
        await guard.record_success("gpt")
        await guard.record_failure("gpt")

        assert (await guard.check_circuit_breaker("gpt")).is_open is False


class TestRetry:
    """Test retry with multiplicative backoff."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, guard):
        fn = Flaky(2)

        assert await guard.execute_with_retry(fn) == "done"
        assert fn.calls == 3
        assert guard._sleep.calls == [0.1, 0.2]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, guard):
        fn = Flaky(10)

        with pytest.raises(RuntimeError):
            await guard.execute_with_retry(fn)

        assert fn.calls == 3

    @pytest.mark.asyncio
    async def test_non_recoverable_errors_are_not_retried(self, guard):
        fn = Flaky(10, error=HandlerError("bad request", recoverable=False))

        with pytest.raises(HandlerError):
            await guard.execute_with_retry(fn)

        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_custom_should_retry(self, guard):
        fn = Flaky(10, error=ValueError("nope"))
        options = RetryOptions(should_retry=lambda e: not isinstance(e, ValueError))

        with pytest.raises(ValueError):
            await guard.execute_with_retry(fn, options)

        assert fn.calls == 1

    @pytest.mark.asyncio
    async def test_exhausted_protected_call_counts_one_failure(self, guard):
        with pytest.raises(RuntimeError):
            await guard.execute_with_protection("p", "gpt", Flaky(10))

        stats = await guard.get_stats()
        assert stats["circuit_breakers"]["gpt"]["failure_count"] == 1


class TestMaintenance:
    """Test cleanup and statistics."""

    @pytest.mark.asyncio
    async def test_cleanup_removes_expired_windows(self, guard, clock):
        await guard.check_rate_limit("a")
        clock.advance(1001)
        await guard.check_rate_limit("b")

        removed = await guard.cleanup()

        assert removed == {"rate_limits": 1, "circuit_breakers": 0}
        assert set((await guard.get_stats())["rate_limits"]) == {"b"}

    @pytest.mark.asyncio
    async def test_cleanup_keeps_open_breakers(self, guard, clock):
        await guard.record_failure("gpt")
        await guard.record_failure("gpt")
        clock.advance(10_000)

        removed = await guard.cleanup()

        assert removed["circuit_breakers"] == 0


class TestGuardedAIChatPort:
    """Test the guard decorator around the AI port."""

    @pytest.mark.asyncio
    async def test_keys_rate_limit_and_breaker_by_model_config(self, guard):
        port = GuardedAIChatPort(FakeAIPort(), guard)
        config = {"provider": "anthropic", "model": "m-1", "rateLimit": 1}

        reply = await port.generate([{"role": "user", "content": "hi"}], config)
        assert reply["content"] == "ok"

        with pytest.raises(RateLimitExceeded):
            await port.generate([{"role": "user", "content": "hi"}], config)

        stats = await guard.get_stats()
        assert stats["rate_limits"]["anthropic"]["count"] == 1

    @pytest.mark.asyncio
    async def test_defaults_used_when_config_names_none(self, guard):
        port = GuardedAIChatPort(FakeAIPort(), guard, default_provider="prov", default_model="mod")

        await port.generate([], {})

        stats = await guard.get_stats()
        assert "prov" in stats["rate_limits"]
