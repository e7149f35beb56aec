"""
sources/http.py — Bounded HTTP downloads shared by all file-like sources.

HttpDownloader streams a response body and refuses to hold more than the
resource's size ceiling in memory:

  1. a declared Content-Length above the ceiling aborts before any body
     bytes are read;
  2. otherwise the body is measured while streaming and the download is
     aborted as soon as the running total crosses the ceiling.

httpx exceptions never leave this module untranslated; translate_http_errors()
maps them onto the typed error taxonomy (RequestTimeout, NetworkError).

Usage:
    downloader = HttpDownloader()
    payload = await downloader.download(url, size_ceiling=50_000_000, timeout_s=30)
    payload.content_type   # "text/csv; charset=utf-8"
    payload.text           # decoded body
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from dataclasses import dataclass

import httpx
import structlog

from opendata_shared.config import settings
from opendata_shared.errors import NetworkError, RequestTimeout, SizeExceeded

log = structlog.get_logger(__name__)

# Tried in order when the server does not declare a charset we can trust
_FALLBACK_ENCODINGS: tuple[str, ...] = ("utf-8-sig", "cp1252", "latin-1")


@contextmanager
def translate_http_errors(url: str) -> Iterator[None]:
    """Re-raise httpx failures as RequestTimeout / NetworkError carrying the URL."""
    try:
        yield
    except httpx.TimeoutException as exc:
        raise RequestTimeout(f"Request timed out: {url}", url=url) from exc
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        raise NetworkError(
            f"HTTP {status} {exc.response.reason_phrase} for {url}",
            url=url,
            status_code=status,
        ) from exc
    except httpx.HTTPError as exc:
        raise NetworkError(f"Network error for {url}: {exc}", url=url) from exc


@dataclass
class DownloadedPayload:
    url: str
    content: bytes
    content_type: str = ""
    status_code: int = 200

    @property
    def text(self) -> str:
        for encoding in _FALLBACK_ENCODINGS:
            try:
                return self.content.decode(encoding)
            except UnicodeDecodeError:
                continue
        return self.content.decode("utf-8", errors="replace")

    def __len__(self) -> int:
        return len(self.content)


class HttpDownloader:
    """Streams one URL into memory under a byte ceiling."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        user_agent: str | None = None,
    ) -> None:
        self._client = client
        self._headers = {"User-Agent": user_agent or settings.user_agent}

    @asynccontextmanager
    async def _session(self, timeout_s: float) -> AsyncIterator[httpx.AsyncClient]:
        # An injected client is owned by the caller and stays open
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers=self._headers,
        ) as client:
            yield client

    async def download(
        self,
        url: str,
        *,
        size_ceiling: int | None = None,
        timeout_s: float | None = None,
    ) -> DownloadedPayload:
        """
        Download url completely, enforcing the size ceiling.

        Raises:
            SizeExceeded: declared or measured body larger than size_ceiling.
            RequestTimeout: the server did not answer within timeout_s.
            NetworkError: DNS/connection failures and non-2xx responses.
        """
        ceiling = size_ceiling or settings.max_download_bytes
        timeout = timeout_s or settings.request_timeout_s
        dl_log = log.bind(url=url, size_ceiling=ceiling)

        with translate_http_errors(url):
            async with self._session(timeout) as client:
                async with client.stream(
                    "GET",
                    url,
                    headers=self._headers,
                    timeout=timeout,
                    follow_redirects=True,
                ) as response:
                    response.raise_for_status()

                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > ceiling:
                        raise SizeExceeded(
                            f"Resource declares {int(declared)} bytes, above the "
                            f"{ceiling} byte limit",
                            url=url,
                            limit=ceiling,
                        )

                    chunks: list[bytes] = []
                    received = 0
                    async for chunk in response.aiter_bytes():
                        received += len(chunk)
                        if received > ceiling:
                            raise SizeExceeded(
                                f"Resource exceeded the {ceiling} byte limit while downloading",
                                url=url,
                                limit=ceiling,
                            )
                        chunks.append(chunk)

                    dl_log.debug("download_complete", bytes=received, status=response.status_code)
                    return DownloadedPayload(
                        url=str(response.url),
                        content=b"".join(chunks),
                        content_type=response.headers.get("content-type", ""),
                        status_code=response.status_code,
                    )
