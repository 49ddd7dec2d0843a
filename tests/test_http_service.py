import httpx
import pytest

from booking_sync.core.exceptions import (
    ExternalPermanent,
    ExternalRateLimited,
    ExternalTransient,
)
from booking_sync.services.http_service import (
    RetryPolicy,
    call_with_retries,
    parse_retry_after,
    raise_for_status,
)


class ScriptedCall:
    """Raises the scripted errors in order, then returns 'ok'."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


@pytest.mark.asyncio
async def test_success_first_try(policy, sleeper):
    result, attempts = await call_with_retries(ScriptedCall(), policy=policy, sleep=sleeper)
    assert (result, attempts) == ("ok", 1)
    assert sleeper.delays == []


@pytest.mark.asyncio
async def test_transient_retried_with_increasing_backoff(policy, sleeper):
    call = ScriptedCall(ExternalTransient("a", status_code=500), ExternalTransient("b", status_code=502))

    result, attempts = await call_with_retries(call, policy=policy, sleep=sleeper)

    assert (result, attempts) == ("ok", 3)
    first, second = sleeper.delays
    assert 0.5 <= first <= 0.75
    assert 1.0 <= second <= 1.5


@pytest.mark.asyncio
async def test_transient_bounded_by_max_attempts(policy, sleeper):
    call = ScriptedCall(*[ExternalTransient("down", status_code=503) for _ in range(5)])

    with pytest.raises(ExternalTransient) as excinfo:
        await call_with_retries(call, policy=policy, sleep=sleeper)

    assert call.calls == 3
    assert excinfo.value.attempts == 3
    assert len(sleeper.delays) == 2


@pytest.mark.asyncio
async def test_rate_limit_waits_once_and_retries_once(policy, sleeper):
    call = ScriptedCall(ExternalRateLimited(retry_after=None), ExternalRateLimited(retry_after=None))

    with pytest.raises(ExternalRateLimited) as excinfo:
        await call_with_retries(call, policy=policy, sleep=sleeper)

    assert call.calls == 2
    assert excinfo.value.attempts == 2
    assert sleeper.delays == [10.0]


@pytest.mark.asyncio
async def test_rate_limit_then_success(policy, sleeper):
    call = ScriptedCall(ExternalRateLimited(retry_after=3))
    result, attempts = await call_with_retries(call, policy=policy, sleep=sleeper)
    assert (result, attempts) == ("ok", 2)
    assert sleeper.delays == [3]


@pytest.mark.asyncio
async def test_retry_after_is_capped(policy, sleeper):
    call = ScriptedCall(ExternalRateLimited(retry_after=3600))
    await call_with_retries(call, policy=policy, sleep=sleeper)
    assert sleeper.delays == [60.0]


@pytest.mark.asyncio
async def test_permanent_not_retried(policy, sleeper):
    call = ScriptedCall(ExternalPermanent("bad request", status_code=400))
    with pytest.raises(ExternalPermanent):
        await call_with_retries(call, policy=policy, sleep=sleeper)
    assert call.calls == 1
    assert sleeper.delays == []


def test_backoff_is_capped():
    policy = RetryPolicy(base_delay=1.0, max_delay=4.0)
    assert 4.0 <= policy.backoff(10) <= 6.0


def test_parse_retry_after():
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after(None) is None
    assert parse_retry_after("soon") is None
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0


@pytest.mark.parametrize(
    "status,error",
    [(429, ExternalRateLimited), (500, ExternalTransient), (503, ExternalTransient), (400, ExternalPermanent), (404, ExternalPermanent)],
)
def test_raise_for_status_classification(status, error):
    response = httpx.Response(status, headers={"Retry-After": "7"}, text="nope")
    with pytest.raises(error) as excinfo:
        raise_for_status(response, operation="op")
    assert excinfo.value.status_code == status
    if status == 429:
        assert excinfo.value.retry_after == 7.0


def test_raise_for_status_ok():
    raise_for_status(httpx.Response(201), operation="op")
