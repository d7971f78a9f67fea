"""Bounded exponential backoff for transient failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from pyfleet.config import RetryPolicy
from pyfleet.exceptions import FleetTransportError

_logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_transient(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    what: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *fn*, retrying :class:`FleetTransportError` per *policy*.

    Any other exception propagates immediately. When the policy is
    exhausted the last transport error is re-raised.

    Parameters
    ----------
    fn
        Zero-argument coroutine factory; called once per attempt.
    policy
        Attempt budget and delay schedule.
    what
        Short description used in log messages.
    sleep
        Injected for tests.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except FleetTransportError as exc:
            if attempt >= policy.max_attempts:
                _logger.warning("%s failed after %d attempt(s): %s", what, attempt, exc)
                raise
            delay = policy.delay_for(attempt)
            _logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                what,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            if delay > 0:
                await sleep(delay)
            attempt += 1
