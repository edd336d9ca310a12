from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    # max_attempts counts retries after the initial try.
    max_attempts: int
    base_delay_ms: int
    backoff_factor: int = 2

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError(f"max_attempts must be >= 0, got {self.max_attempts}")
        if self.base_delay_ms <= 0:
            raise ValueError(f"base_delay_ms must be > 0, got {self.base_delay_ms}")
        if self.backoff_factor < 1:
            raise ValueError(f"backoff_factor must be >= 1, got {self.backoff_factor}")

    @classmethod
    def for_total_tries(cls, total_tries: int, *, base_delay_ms: int, backoff_factor: int = 2) -> "RetryPolicy":
        return cls(
            max_attempts=max(0, int(total_tries) - 1),
            base_delay_ms=base_delay_ms,
            backoff_factor=backoff_factor,
        )

    @property
    def total_tries(self) -> int:
        return self.max_attempts + 1

    def delay_ms(self, attempt: int) -> int:
        return self.base_delay_ms * self.backoff_factor ** (max(1, attempt) - 1)

    def with_max_attempts(self, max_attempts: int) -> "RetryPolicy":
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay_ms=self.base_delay_ms,
            backoff_factor=self.backoff_factor,
        )


def is_retryable_error(error: BaseException) -> bool:
    return bool(getattr(error, "retryable", False))


async def retry_with_backoff(
    action: Callable[[int], Awaitable[T]],
    *,
    policy: RetryPolicy,
    logger: logging.Logger,
    event: str,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    sleep: SleepFunc = asyncio.sleep,
    **fields: Any,
) -> T:
    total_tries = policy.total_tries
    for attempt in range(1, total_tries + 1):
        try:
            return await action(attempt)
        except asyncio.CancelledError:
            raise
        except Exception as error:
            retryable = is_retryable(error)
            if not retryable or attempt >= total_tries:
                log_event(
                    logger,
                    level="warning",
                    event=f"{event}_gave_up",
                    message="Giving up after a non-retryable error or exhausted attempts",
                    attempt=attempt,
                    total_tries=total_tries,
                    retryable=retryable,
                    error=str(error),
                    **fields,
                )
                raise

            delay_ms = policy.delay_ms(attempt)
            log_event(
                logger,
                level="info",
                event=f"{event}_retry",
                message="Attempt failed with a retryable error; backing off",
                attempt=attempt,
                next_attempt=attempt + 1,
                total_tries=total_tries,
                delay_ms=delay_ms,
                error=str(error),
                **fields,
            )
            await sleep(delay_ms / 1000)

    raise RuntimeError("retry_with_backoff exited without a result")
