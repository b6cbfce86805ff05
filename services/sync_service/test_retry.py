"""Tests for retry helpers."""

import pytest
from unittest.mock import AsyncMock, patch

from shared.errors import RemoteStoreError
from services.sync_service.retry import (
    JITTER_RATIO,
    backoff_delay,
    execute_with_retry,
    retry_with_exponential_backoff,
)


def test_backoff_delay_grows_exponentially():
    with patch("services.sync_service.retry.random.uniform", return_value=0.0):
        assert backoff_delay(0, 0.2) == pytest.approx(0.2)
        assert backoff_delay(1, 0.2) == pytest.approx(0.4)
        assert backoff_delay(3, 0.2) == pytest.approx(1.6)


def test_backoff_delay_jitter_is_bounded():
    for _ in range(50):
        delay = backoff_delay(2, 1.0)
        assert 4.0 <= delay <= 4.0 + JITTER_RATIO


@pytest.mark.asyncio
async def test_execute_with_retry_returns_first_success():
    operation = AsyncMock(side_effect=[RemoteStoreError("boom"), "done"])

    with patch("services.sync_service.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        result = await execute_with_retry(operation, max_attempts=3, base_delay=0.1)

    assert result == "done"
    assert operation.await_count == 2
    sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_execute_with_retry_raises_last_error():
    errors = [RemoteStoreError(f"failure {i}") for i in range(3)]
    operation = AsyncMock(side_effect=errors)

    with patch("services.sync_service.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(RemoteStoreError, match="failure 2"):
            await execute_with_retry(operation, max_attempts=3, base_delay=0.1)

    assert operation.await_count == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_execute_with_retry_does_not_retry_other_exceptions():
    operation = AsyncMock(side_effect=KeyError("missing"))

    with pytest.raises(KeyError):
        await execute_with_retry(operation, max_attempts=5, exceptions=(RemoteStoreError,))

    assert operation.await_count == 1


@pytest.mark.asyncio
async def test_decorator_retries_coroutine():
    calls = []

    @retry_with_exponential_backoff(max_retries=2, initial_delay=0)
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("unreachable")
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3


def test_decorator_rejects_plain_functions():
    with pytest.raises(TypeError):
        @retry_with_exponential_backoff()
        def not_async():
            return None
