# Copyright (c) Syntropy Systems
"""Bounded retries driven by per-operation attempt counters."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, TypeVar

from knobs.errors import AttemptsExhaustedError, PermanentError, RetryableError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HasAttempts(Protocol):
    attempts_remaining: int


@dataclass(frozen=True)
class RetryPolicy:
    """Delay schedule between failed attempts.

    The number of attempts is not part of the policy; it lives on the
    operation itself as ``attempts_remaining``.
    """

    interval: float = 1.0
    backoff: float = 2.0
    max_interval: float = 30.0

    def delay(self, failures: int) -> float:
        """Return the delay to wait after the given number of failures."""
        if failures < 1:
            return 0.0
        return min(self.interval * self.backoff ** (failures - 1), self.max_interval)


async def run_with_attempts(
    operation: HasAttempts,
    attempt: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    description: str,
    on_change: Callable[[], None] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``attempt`` until it succeeds or the operation runs out of attempts.

    The counter on ``operation`` only ever goes down: by one for every
    ``RetryableError``, straight to zero on success or on a ``PermanentError``.
    Cancellation propagates without touching the counter.

    Raises:
        PermanentError: The attempt failed in a way retrying cannot fix.
        AttemptsExhaustedError: The last remaining attempt failed.

    """
    failures = 0
    last_error: RetryableError | None = None

    while operation.attempts_remaining > 0:
        try:
            result = await attempt()
        except PermanentError:
            operation.attempts_remaining = 0
            if on_change is not None:
                on_change()
            raise
        except RetryableError as e:
            operation.attempts_remaining -= 1
            failures += 1
            last_error = e
            if on_change is not None:
                on_change()
            if operation.attempts_remaining == 0:
                break
            delay = policy.delay(failures)
            logger.warning(
                "%s failed (%s); %d attempt(s) left, retrying in %.1fs",
                description,
                e,
                operation.attempts_remaining,
                delay,
            )
            await sleep(delay)
            continue

        operation.attempts_remaining = 0
        if on_change is not None:
            on_change()
        return result

    if last_error is None:
        msg = f"{description}: no attempts remaining"
    else:
        msg = f"{description}: attempts exhausted, last error: {last_error}"
    raise AttemptsExhaustedError(msg, last_error)
