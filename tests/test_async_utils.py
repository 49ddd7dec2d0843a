import anyio
import pytest

from booking_sync.core.async_utils import run_async


async def _answer(delay: float = 0) -> int:
    await anyio.sleep(delay)
    return 42


def test_run_async_without_a_loop():
    assert run_async(_answer()) == 42


def test_run_async_timeout_cancels():
    with pytest.raises(TimeoutError):
        run_async(_answer(5), timeout=0.01)


@pytest.mark.asyncio
async def test_run_async_refuses_running_loop():
    coro = _answer()
    with pytest.raises(RuntimeError):
        run_async(coro)
    coro.close()
