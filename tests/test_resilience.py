"""with_timeout / with_retry combinators."""

import asyncio

import pytest

from configcenter.domain.errors import HandlerError, HandlerTimeoutError
from configcenter.services.resilience import with_retry, with_timeout


class TestWithTimeout:
    @pytest.mark.asyncio
    async def test_returns_result_in_time(self):
        async def fast():
            return "ok"

        assert await with_timeout(fast, 1.0)() == "ok"

    @pytest.mark.asyncio
    async def test_raises_handler_timeout(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(HandlerTimeoutError) as exc:
            await with_timeout(slow, 0.01, "mailer")()

        assert exc.value.operation == "mailer"
        assert "timeout after 10ms" in str(exc.value)

    @pytest.mark.asyncio
    async def test_errors_pass_through(self):
        async def broken():
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await with_timeout(broken, 1.0)()


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_after_failures(self):
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("not yet")
            return len(calls)

        assert await with_retry(flaky, attempts=3, delay_s=0) == 3

    @pytest.mark.asyncio
    async def test_wraps_last_error_after_exhaustion(self):
        failures = []

        async def always_fails():
            raise RuntimeError(f"attempt {len(failures) + 1}")

        with pytest.raises(HandlerError) as exc:
            await with_retry(
                always_fails,
                attempts=3,
                delay_s=0,
                on_failure=lambda attempt, error: failures.append(attempt),
            )

        assert failures == [1, 2, 3]
        assert exc.value.attempts == 3
        assert str(exc.value.cause) == "attempt 3"

    @pytest.mark.asyncio
    async def test_composes_with_timeout(self):
        attempts = []

        async def hangs():
            attempts.append(1)
            await asyncio.sleep(1)

        with pytest.raises(HandlerError) as exc:
            await with_retry(with_timeout(hangs, 0.01), attempts=2, delay_s=0)

        assert len(attempts) == 2
        assert isinstance(exc.value.cause, HandlerTimeoutError)

    @pytest.mark.asyncio
    async def test_at_least_one_attempt(self):
        async def ok():
            return 1

        assert await with_retry(ok, attempts=0, delay_s=0) == 1
