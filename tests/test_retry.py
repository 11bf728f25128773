import asyncio

import httpx
import pytest

from gitchat.github import GatewayError
from gitchat.retry import ProviderError, backoff_delay, call_with_retries, is_transient


def test_transient_classification():
    assert is_transient(httpx.ConnectError("down"))
    assert is_transient(ProviderError("busy", status=429))
    assert is_transient(ProviderError("no status"))
    assert not is_transient(ProviderError("bad", status=400))
    assert is_transient(GatewayError("oops", status=502))
    assert not is_transient(GatewayError("missing", status=404))
    assert not is_transient(ValueError("x"))


def test_backoff_grows_and_is_capped():
    assert 1.0 <= backoff_delay(1, base=1.0, cap=30) <= 1.5
    assert 4.0 <= backoff_delay(3, base=1.0, cap=30) <= 4.5
    assert backoff_delay(10, base=1.0, cap=30) <= 30.5


def test_call_with_retries_recovers_and_reports():
    attempts = []
    retried = []
    delays = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ProviderError("busy", status=503)
        return "ok"

    async def fake_sleep(delay):
        delays.append(delay)

    result = asyncio.run(
        call_with_retries(flaky, retries=3, base_delay=1.0, on_retry=lambda n, exc, d: retried.append(n), sleep=fake_sleep)
    )
    assert result == "ok"
    assert retried == [1, 2]
    assert len(delays) == 2 and delays[1] > delays[0] - 0.5


def test_non_transient_is_raised_immediately():
    attempts = []

    async def broken():
        attempts.append(1)
        raise ProviderError("bad", status=400)

    async def fake_sleep(delay):
        raise AssertionError("should not sleep")

    with pytest.raises(ProviderError):
        asyncio.run(call_with_retries(broken, retries=5, sleep=fake_sleep))
    assert len(attempts) == 1
