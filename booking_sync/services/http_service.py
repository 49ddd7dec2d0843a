"""HTTP helpers with retry/backoff for the EHR integration."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, Callable, TypeVar

import httpx

from booking_sync.core.config import settings
from booking_sync.core.exceptions import (
    ExternalError,
    ExternalPermanent,
    ExternalRateLimited,
    ExternalTransient,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_STATUSES = {500, 502, 503, 504}

SleepFn = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry bounds for one logical external call.

    - transient failures (timeout, connection error, 5xx): up to max_attempts
      total attempts, exponential backoff with jitter
    - 429: one cooldown (Retry-After, capped) and exactly one retry
    - other 4xx: no retry
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    rate_limit_cooldown: float = 10.0
    max_rate_limit_cooldown: float = 60.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.EHR_MAX_ATTEMPTS,
            base_delay=settings.EHR_BACKOFF_BASE_SECONDS,
            max_delay=settings.EHR_BACKOFF_MAX_SECONDS,
            rate_limit_cooldown=settings.EHR_RATE_LIMIT_COOLDOWN_SECONDS,
            max_rate_limit_cooldown=settings.EHR_RATE_LIMIT_MAX_COOLDOWN_SECONDS,
        )

    def backoff(self, retry_number: int) -> float:
        """Delay before retry N (0-based)."""
        delay = min(self.max_delay, self.base_delay * (2**retry_number))
        if delay:
            delay = delay + random.uniform(0, delay / 2)
        return delay

    def cooldown(self, retry_after: float | None) -> float:
        if retry_after is None:
            return self.rate_limit_cooldown
        return max(0.0, min(retry_after, self.max_rate_limit_cooldown))


def parse_retry_after(value: str | None) -> float | None:
    """Retry-After as seconds; accepts delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def raise_for_status(response: httpx.Response, *, operation: str) -> None:
    """Translate an error response into the external error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    message = f"{operation} returned HTTP {status}"
    if status == 429:
        raise ExternalRateLimited(
            message, retry_after=parse_retry_after(response.headers.get("Retry-After"))
        )
    if status in TRANSIENT_STATUSES or status >= 500:
        raise ExternalTransient(message, status_code=status)
    raise ExternalPermanent(
        message, status_code=status, response_text=response.text[:500].lower()
    )


async def call_with_retries(
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
    operation: str = "external call",
) -> tuple[T, int]:
    """
    Execute an external call under the retry policy.

    Returns (result, attempts). On failure re-raises the last ExternalError
    with its `attempts` attribute set.
    """
    policy = policy or RetryPolicy.from_settings()
    sleep = sleep or asyncio.sleep
    attempts = 0
    cooled_down = False

    while True:
        attempts += 1
        try:
            return await call(), attempts
        except ExternalRateLimited as exc:
            exc.attempts = attempts
            if cooled_down:
                raise
            cooled_down = True
            delay = policy.cooldown(exc.retry_after)
            logger.warning("%s rate limited, retrying once after %.1fs", operation, delay)
            await sleep(delay)
        except ExternalTransient as exc:
            exc.attempts = attempts
            if attempts >= policy.max_attempts:
                raise
            delay = policy.backoff(attempts - 1)
            logger.warning(
                "%s failed (%s), retrying in %.2fs", operation, exc.status_code or "network", delay
            )
            await sleep(delay)
        except ExternalError as exc:
            exc.attempts = attempts
            raise
