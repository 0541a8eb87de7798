from __future__ import annotations

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")

Sleeper = Callable[[float], Awaitable[Any]]


async def guarded_call(
    action: Callable[[], Awaitable[T] | T],
    *,
    logger: logging.Logger,
    event: str,
    message: str,
    level: str = "warning",
    default: T | None = None,
    reraise: bool = False,
    **fields: Any,
) -> T | None:
    try:
        result = action()
        if inspect.isawaitable(result):
            return await result
        return result
    except asyncio.CancelledError:
        raise
    except Exception as error:
        log_event(
            logger,
            level=level,
            event=event,
            message=message,
            error=str(error),
            **fields,
        )
        if reraise:
            raise
        return default


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.8
    max_backoff_seconds: float = 15.0
    jitter_ratio: float = 0.25

    def delay_for(self, attempt: int, *, retry_after_seconds: float | None = None) -> float:
        exponential = self.backoff_seconds * float(2 ** max(0, attempt - 1))
        jitter = random.uniform(0.0, exponential * self.jitter_ratio) if self.jitter_ratio > 0 else 0.0
        delay = min(self.max_backoff_seconds, exponential + jitter)
        if retry_after_seconds is None:
            return delay
        return min(self.max_backoff_seconds, max(delay, retry_after_seconds))


class RetryExhaustedError(RuntimeError):
    def __init__(self, message: str, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


async def retry_async(
    action: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    logger: logging.Logger,
    event: str,
    retry_on: tuple[type[BaseException], ...],
    before_retry: Callable[[int], Awaitable[T | None]] | None = None,
    sleep: Sleeper = asyncio.sleep,
    **fields: Any,
) -> T:
    """Run ``action`` until it succeeds or ``policy.max_attempts`` is used up.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. ``before_retry`` runs ahead of every repeat
    attempt and short-circuits the loop when it returns a value, which lets
    callers detect that a previous attempt already took effect.
    """
    max_attempts = max(1, policy.max_attempts)
    last_error: BaseException | None = None

    for attempt in range(1, max_attempts + 1):
        if attempt > 1 and before_retry is not None:
            recovered = await before_retry(attempt)
            if recovered is not None:
                log_event(
                    logger,
                    level="info",
                    event=f"{event}_recovered",
                    message="Previous attempt turned out to have succeeded; skipping retry",
                    attempt=attempt,
                    **fields,
                )
                return recovered
        try:
            return await action()
        except asyncio.CancelledError:
            raise
        except retry_on as error:
            last_error = error
            if attempt >= max_attempts:
                break
            retry_after = getattr(error, "retry_after_seconds", None)
            backoff = policy.delay_for(attempt, retry_after_seconds=retry_after)
            log_event(
                logger,
                level="warning",
                event=f"{event}_retry",
                message="Retryable failure; backing off before the next attempt",
                attempt=attempt,
                max_attempts=max_attempts,
                backoff_seconds=round(backoff, 3),
                error=str(error),
                **fields,
            )
            await sleep(backoff)

    assert last_error is not None
    raise RetryExhaustedError(
        f"{event} exhausted {max_attempts} attempts: {last_error}",
        attempts=max_attempts,
        last_error=last_error,
    ) from last_error
