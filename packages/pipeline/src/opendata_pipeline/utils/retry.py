"""
utils/retry.py — Retry policy for idempotent WFS discovery requests.

GetCapabilities and hits-only counts are safe to repeat, so they go through
with_retry(). Feature pages never do: a failed page discards the download
and the caller repeats the whole operation.

A failure is transient when the connection itself broke (httpx.TransportError)
or the server answered 429 / 502 / 503 / 504. Anything else, including a
404 for a mistyped layer, surfaces on the first attempt.

Usage:
    from opendata_pipeline.utils.retry import with_retry

    @with_retry(max_attempts=2, base_delay=0.5)
    async def _get_idempotent(self, base_url, params) -> httpx.Response:
        ...
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])

TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({429, 502, 503, 504})


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in TRANSIENT_STATUS_CODES
    return False


def _request_url(exc: BaseException | None) -> str | None:
    try:
        return str(exc.request.url)  # type: ignore[union-attr]
    except (AttributeError, RuntimeError):
        return None


def _log_before_sleep(function: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        log.warning(
            "http_retry_scheduled",
            function=function,
            attempt=state.attempt_number,
            url=_request_url(exc),
            error=type(exc).__name__ if exc else None,
            sleep_s=round(state.next_action.sleep, 2) if state.next_action else None,
        )

    return before_sleep


def with_retry(
    max_attempts: int = 2,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
) -> Callable[[F], F]:
    """
    Retry an async request function on transient HTTP failures.

    Delays grow as base_delay * 2^(attempt-1), capped at max_delay. The last
    error is re-raised unchanged so callers map it like any other failure.
    """

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=base_delay, max=max_delay),
                retry=retry_if_exception(is_transient),
                before_sleep=_log_before_sleep(getattr(fn, "__qualname__", repr(fn))),
                reraise=True,
            ):
                with attempt:
                    return await fn(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator
