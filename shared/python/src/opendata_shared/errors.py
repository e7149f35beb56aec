"""
errors.py — Typed error taxonomy for ingestion and aggregation.

Fetch-side errors (network, size, format, protocol, archive) are caught at
the ResourceFetcher boundary and converted into a `ResourceError` stored on
the returned table. `InputError` is raised synchronously to the caller before
any network activity. Partial degradation (e.g. an unknown feature count) is
never raised; it is recorded as a warning on the table instead.

Usage:
    from opendata_shared.errors import FormatError

    raise FormatError(
        "Server returned HTML instead of CSV",
        url=url,
        declared_format="CSV",
        observed_format="HTML",
    )
"""

from __future__ import annotations

from typing import Any

from opendata_shared.models.tables import ErrorKind, ResourceError


class OpenDataError(Exception):
    """Base class for every error raised by the ingestion core."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        declared_format: str | None = None,
        observed_format: str | None = None,
        limit: int | float | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.url = url
        self.declared_format = declared_format
        self.observed_format = observed_format
        self.limit = limit

    def context(self) -> dict[str, Any]:
        ctx = {
            "url": self.url,
            "declared_format": self.declared_format,
            "observed_format": self.observed_format,
            "limit": self.limit,
        }
        return {k: v for k, v in ctx.items() if v is not None}

    def to_resource_error(self) -> ResourceError:
        return ResourceError(kind=self.kind, message=self.message, **self.context())


class NetworkError(OpenDataError):
    """Timeout, DNS failure, refused connection or non-2xx status."""

    kind = ErrorKind.NETWORK

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code


class RequestTimeout(NetworkError):
    """A network operation exceeded its deadline and was cancelled."""

    kind = ErrorKind.TIMEOUT


class SizeExceeded(OpenDataError):
    """Declared or measured payload is larger than the configured ceiling."""

    kind = ErrorKind.SIZE_EXCEEDED


class FormatError(OpenDataError):
    """Payload does not match the declared or expected shape."""

    kind = ErrorKind.FORMAT


class ProtocolError(OpenDataError):
    """Malformed or incomplete feature-service response."""

    kind = ErrorKind.PROTOCOL


class ArchiveNotSupported(OpenDataError):
    """Archives are never unpacked; the original URL is handed back instead."""

    kind = ErrorKind.ARCHIVE


class InputError(OpenDataError):
    """Invalid caller input, e.g. an aggregation request without metrics."""

    kind = ErrorKind.INPUT
