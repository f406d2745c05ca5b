# tests/test_retry.py
"""
測試 async_retry：只重試指定異常，次數用完後拋出最後一次異常
"""

import asyncio

import pytest

from utils.retry import async_retry


@pytest.fixture
def no_sleep(monkeypatch):
    waits = []

    async def fake_sleep(seconds):
        waits.append(seconds)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    return waits


@pytest.mark.asyncio
async def test_retries_until_success_with_backoff(no_sleep):
    calls = []
    retries = []

    @async_retry(max_attempts=3, delay=1.0, backoff=2.0, exceptions=(ConnectionError,),
                 on_retry=lambda attempt, e, wait: retries.append((attempt, wait)))
    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ConnectionError("down")
        return "ok"

    assert await flaky() == "ok"
    assert len(calls) == 3
    assert no_sleep == [1.0, 2.0]
    assert retries == [(1, 1.0), (2, 2.0)]


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts(no_sleep):
    @async_retry(max_attempts=2, exceptions=(ConnectionError,))
    async def always_down():
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        await always_down()
    assert len(no_sleep) == 1


@pytest.mark.asyncio
async def test_other_exceptions_are_not_retried(no_sleep):
    calls = []

    @async_retry(max_attempts=3, exceptions=(ConnectionError,))
    async def broken():
        calls.append(1)
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await broken()
    assert len(calls) == 1
    assert no_sleep == []
