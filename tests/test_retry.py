import asyncio

import pytest

from airkeeper.exceptions import RetryExhausted
from airkeeper.retry import RetryPolicy, with_retry


@pytest.mark.asyncio
async def test_returns_first_success():
    calls = []

    async def operation():
        calls.append(1)
        return "ok"

    assert await with_retry(operation, attempts=2, attempt_timeout=1, delay=0) == "ok"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_retries_after_error():
    calls = []

    async def operation():
        calls.append(1)
        if len(calls) == 1:
            raise ConnectionError("boom")
        return 42

    assert await with_retry(operation, attempts=2, attempt_timeout=1, delay=0) == 42
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_exhaustion_carries_last_cause():
    async def operation():
        raise ValueError("always")

    with pytest.raises(RetryExhausted) as excinfo:
        await with_retry(operation, attempts=3, attempt_timeout=1, delay=0, description="read")
    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.cause, ValueError)
    assert "read" in excinfo.value.message


@pytest.mark.asyncio
async def test_each_attempt_is_bounded_by_timeout():
    calls = []

    async def operation():
        calls.append(1)
        await asyncio.sleep(10)

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(RetryExhausted) as excinfo:
        await with_retry(operation, attempts=2, attempt_timeout=0.05, delay=0)
    assert loop.time() - started < 2
    assert len(calls) == 2
    assert isinstance(excinfo.value.cause, asyncio.TimeoutError)


@pytest.mark.asyncio
async def test_attempts_must_be_positive():
    async def operation():
        return None

    with pytest.raises(ValueError):
        await with_retry(operation, attempts=0)


@pytest.mark.asyncio
async def test_retry_policy_run():
    policy = RetryPolicy(attempts=1, timeout=1, delay=0)

    async def operation():
        return "value"

    assert await policy.run(operation, description="policy") == "value"
