from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

import httpx

from digestcron.core.config import get_settings
from digestcron.core.errors import ChannelError
from digestcron.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_ATTEMPTS_CEILING = 5


@dataclass(frozen=True)
class RetryableError:
    # Normalized failure shape shared by every channel.
    kind: str
    message: str
    status: int | None = None
    code: str | None = None


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    ok: bool
    attempts: int
    value: T | None = None
    error: RetryableError | None = None


def map_error(exc: BaseException) -> RetryableError:
    # Classify raised exceptions into http/timeout/network kinds.
    if isinstance(exc, ChannelError):
        return RetryableError(kind=exc.kind, message=exc.message, status=exc.status, code=exc.code)
    if isinstance(exc, httpx.HTTPStatusError):
        status = int(exc.response.status_code)
        return RetryableError(kind="http", message=f"HTTP {status}", status=status)
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return RetryableError(kind="timeout", message=str(exc) or "Request timed out")
    return RetryableError(kind="network", message=str(exc) or exc.__class__.__name__)


def default_is_retryable(error: RetryableError) -> bool:
    # Timeouts and network errors always retry; HTTP only for 429 and 5xx.
    if error.kind in {"timeout", "network"}:
        return True
    if error.kind == "http" and error.status is not None:
        return error.status == 429 or error.status >= 500
    return False


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize send retry behavior so budgets stay tunable from settings.
    max_attempts: int = 3
    base_delay_ms: int = 200
    max_delay_ms: int = 1500
    max_total_ms: int = 3500
    jitter: bool = True
    is_retryable: Callable[[RetryableError], bool] = default_is_retryable
    map_error: Callable[[BaseException], RetryableError] = map_error

    def attempt_ceiling(self) -> int:
        return max(1, min(int(self.max_attempts), MAX_ATTEMPTS_CEILING))

    def delay_ms(self, retry_index: int) -> int:
        # Delay before retry i is min(max, base * 2^(i-1)), scaled by [0.5, 1.5) jitter.
        raw = min(self.max_delay_ms, self.base_delay_ms * (2 ** (retry_index - 1)))
        if self.jitter:
            raw = raw * random.uniform(0.5, 1.5)
        return int(raw)


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.notify_retry_max_attempts,
        base_delay_ms=settings.notify_retry_base_delay_ms,
        max_delay_ms=settings.notify_retry_max_delay_ms,
        max_total_ms=settings.notify_retry_max_total_ms,
    )


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    clock: Callable[[], float] | None = None,
) -> RetryResult[T]:
    # Retry transient failures under both attempt and wall-clock budgets; never raises.
    policy = policy or default_retry_policy()
    sleep = sleep or asyncio.sleep
    clock = clock or time.monotonic
    ceiling = policy.attempt_ceiling()
    started = clock()
    attempt = 0
    while True:
        attempt += 1
        try:
            value = await func()
            return RetryResult(ok=True, attempts=attempt, value=value)
        except Exception as exc:  # noqa: BLE001 - failures are returned as data
            error = policy.map_error(exc)
            if attempt >= ceiling or not policy.is_retryable(error):
                return RetryResult(ok=False, attempts=attempt, error=error)
            delay_ms = policy.delay_ms(attempt)
            elapsed_ms = (clock() - started) * 1000.0
            if elapsed_ms + delay_ms > policy.max_total_ms:
                logger.info(
                    "retry_budget_exhausted attempts=%s elapsed_ms=%.0f next_delay_ms=%s",
                    attempt,
                    elapsed_ms,
                    delay_ms,
                )
                return RetryResult(ok=False, attempts=attempt, error=error)
            # Track retry volume so operators can detect retry storms.
            increment_counter("send_retries_total")
            await sleep(delay_ms / 1000.0)
