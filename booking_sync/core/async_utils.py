"""Bridge from sync code (endpoints, CLI, worker helpers) to the async EHR client.

External sync is async (httpx), while bookings run in FastAPI's threadpool
with a sync SQLAlchemy session. The coroutine runs on the app's event loop,
so the session's blocking commits inside it stall that loop for their
duration; sync steps keep their DB work to short single-row writes.
"""

from __future__ import annotations

import asyncio
from typing import Coroutine, TypeVar

import anyio

T = TypeVar("T")


def run_async(coro: Coroutine[object, object, T], *, timeout: float | None = None) -> T:
    """
    Run an async coroutine from sync code and return its result.

    - From a FastAPI sync endpoint: anyio.from_thread.run on the app's loop.
    - With no loop at all (CLI, plain tests): anyio.run.
    - From inside a running loop on this thread: RuntimeError, use await.

    `timeout` bounds the whole coroutine (EHR_SYNC_TIMEOUT_SECONDS for the
    inline booking sync). On expiry the coroutine is cancelled and
    TimeoutError is raised; writes it already committed stay committed.
    """

    async def _runner() -> T:
        if timeout is None:
            return await coro
        with anyio.fail_after(timeout):
            return await coro

    try:
        return anyio.from_thread.run(_runner)
    except RuntimeError:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return anyio.run(_runner)
        raise RuntimeError("run_async called from async context; use await instead")
