"""Tests for the transient-failure retry policy and the resource log context."""

from __future__ import annotations

import httpx
import pytest
import structlog
from structlog.testing import capture_logs

from opendata_pipeline.utils.logging import resource_context
from opendata_pipeline.utils.retry import is_transient, with_retry

URL = "https://gdi.berlin.de/services/wfs/kita"


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", URL)
    return httpx.HTTPStatusError(
        "boom", request=request, response=httpx.Response(code, request=request)
    )


@pytest.mark.parametrize(
    "exc, expected",
    [
        (httpx.ConnectError("refused"), True),
        (httpx.ReadTimeout("slow"), True),
        (_status_error(503), True),
        (_status_error(429), True),
        (_status_error(404), False),
        (_status_error(500), False),
        (ValueError("not http"), False),
    ],
)
def test_is_transient(exc, expected):
    assert is_transient(exc) is expected


class Flaky:
    def __init__(self, *failures: BaseException) -> None:
        self.failures = list(failures)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return "ok"


@pytest.mark.asyncio
async def test_retries_transient_failure_then_succeeds():
    flaky = Flaky(_status_error(503))
    wrapped = with_retry(max_attempts=2, base_delay=0)(flaky)
    with capture_logs() as logs:
        assert await wrapped() == "ok"
    assert flaky.calls == 2
    scheduled = [entry for entry in logs if entry["event"] == "http_retry_scheduled"]
    assert scheduled[0]["url"] == URL
    assert scheduled[0]["attempt"] == 1


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried():
    flaky = Flaky(_status_error(404))
    wrapped = with_retry(max_attempts=3, base_delay=0)(flaky)
    with pytest.raises(httpx.HTTPStatusError):
        await wrapped()
    assert flaky.calls == 1


@pytest.mark.asyncio
async def test_last_error_reraised_after_exhaustion():
    flaky = Flaky(httpx.ConnectError("refused"), httpx.ConnectError("still refused"))
    wrapped = with_retry(max_attempts=2, base_delay=0)(flaky)
    with pytest.raises(httpx.ConnectError, match="still refused"):
        await wrapped()
    assert flaky.calls == 2


def test_resource_context_binds_and_clears():
    with resource_context(URL, "WFS"):
        bound = structlog.contextvars.get_contextvars()
    assert bound == {"resource_url": URL, "declared_format": "WFS"}
    assert "resource_url" not in structlog.contextvars.get_contextvars()
