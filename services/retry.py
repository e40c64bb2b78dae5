"""Retry and timeout wrappers for calls to external services.

Usage:
    result = await with_timeout(
        with_retry("analyzeTranscript", lambda: call_llm(prompt), ANALYZER_POLICY),
        ms=180_000,
        label="Background analysis",
    )

with_retry classifies each failure as retryable (throttling / overload /
5xx statuses, connection resets, timeouts) or fatal, backs off exponentially
between attempts, and on give-up raises a single EXTERNAL_SERVICE AppError.
with_timeout stops waiting after `ms`; the remote side may still finish the
work it was given.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx
import openai
from loguru import logger

from services.errors import AppError, TIMEOUT_CODE, external_service_error, timeout_error

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]

_RETRYABLE_ERROR_CODES = {"ECONNRESET", "ETIMEDOUT"}


@dataclass(frozen=True)
class RetryPolicy:
    service: str
    max_attempts: int = 3
    retryable_statuses: frozenset = frozenset({429, 500, 502, 503})
    base_delay_ms: int = 1000
    backoff_cap_ms: int = 16_000
    retry_after_cap_ms: int = 30_000


# 529 = upstream "overloaded"
ANALYZER_POLICY = RetryPolicy(
    service="llm",
    retryable_statuses=frozenset({429, 500, 502, 503, 529}),
    backoff_cap_ms=16_000,
)

STORAGE_POLICY = RetryPolicy(
    service="content-store",
    retryable_statuses=frozenset({429, 500, 502, 503, 504}),
    backoff_cap_ms=8_000,
)


# ── Classification ──

def error_status(err: BaseException) -> int | None:
    """HTTP status carried by an upstream error, if any."""
    if isinstance(err, AppError):
        return None
    status = getattr(err, "status_code", None)
    if status is None:
        status = getattr(err, "status", None)
    if status is None:
        response = getattr(err, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_connection_error(err: BaseException) -> bool:
    if isinstance(err, (ConnectionResetError, TimeoutError, asyncio.TimeoutError)):
        return True
    if isinstance(err, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(err, openai.APIConnectionError):  # includes APITimeoutError
        return True
    return getattr(err, "code", None) in _RETRYABLE_ERROR_CODES


def is_retryable(err: BaseException, policy: RetryPolicy) -> bool:
    if isinstance(err, AppError):
        # Our own timeout wrapper around a single attempt is transient; anything
        # else already wrapped is a decided failure.
        return err.code == TIMEOUT_CODE
    status = error_status(err)
    if status is not None and status in policy.retryable_statuses:
        return True
    return is_connection_error(err)


def retry_after_seconds(err: BaseException) -> float | None:
    """Server-supplied retry hint from a Retry-After header, in seconds."""
    headers = getattr(getattr(err, "response", None), "headers", None) or getattr(err, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        # HTTP-date form is not honored; fall back to exponential backoff
        return None
    return seconds if seconds >= 0 else None


def backoff_delay_ms(policy: RetryPolicy, attempt: int, err: BaseException | None = None) -> int:
    """Delay before attempt `attempt + 1`."""
    hint = retry_after_seconds(err) if err is not None else None
    if hint is not None:
        return int(min(hint * 1000, policy.retry_after_cap_ms))
    return int(min(policy.base_delay_ms * 2 ** (attempt - 1), policy.backoff_cap_ms))


# ── Executors ──

async def with_retry(
    operation: str,
    action: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    max_attempts: int | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run `action` up to max_attempts times, sleeping between retryable failures.

    Raises:
        AppError (EXTERNAL_SERVICE): on a fatal error or after the last attempt,
            carrying service, operation, attempt count and the last error.
        AppError: any non-timeout AppError from `action` is re-raised as-is.
    """
    attempts_allowed = max_attempts or policy.max_attempts
    last_error: BaseException | None = None
    attempt = 0

    for attempt in range(1, attempts_allowed + 1):
        try:
            return await action()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            last_error = e
            if isinstance(e, AppError) and e.code != TIMEOUT_CODE:
                raise

            if not is_retryable(e, policy) or attempt == attempts_allowed:
                break

            delay_ms = backoff_delay_ms(policy, attempt, e)
            logger.warning(
                f"Retrying {policy.service}.{operation} (attempt {attempt + 1}/{attempts_allowed}) "
                f"in {delay_ms}ms: status={error_status(e)} error={e}"
            )
            await sleep(delay_ms / 1000)

    raise external_service_error(
        policy.service,
        f"{operation} failed after {attempt} attempt{'s' if attempt != 1 else ''}: {last_error}",
        cause=last_error,
        operation=operation,
        attempts=attempt,
    )


def _drain(task: asyncio.Task) -> None:
    # Retrieve the orphan's outcome so asyncio doesn't warn about it
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Abandoned task finished with error: {task.exception()}")


async def with_timeout(
    awaitable: Awaitable[T],
    ms: int,
    label: str,
    service: str = "analysis",
) -> T:
    """Race `awaitable` against a timer of `ms` milliseconds.

    Whichever finishes first wins. On timeout the local task is cancelled to
    release its connection; a request the remote side already received is
    not recalled.

    Raises:
        AppError (EXTERNAL_SERVICE, code EXTERNAL_SERVICE_TIMEOUT): "<label> timed out after <ms>ms"
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=ms / 1000)
    except asyncio.CancelledError:
        task.cancel()
        raise

    if task in done:
        return task.result()

    task.cancel()
    task.add_done_callback(_drain)
    raise timeout_error(service, label, ms)
