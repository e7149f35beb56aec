"""
models/tables.py — Pydantic models for fetched resources and materialized tables.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field, model_validator

from opendata_shared.config import settings

Scalar = Union[str, int, float, bool, None]
RowRecord = dict[str, Any]


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    SIZE_EXCEEDED = "size_exceeded"
    FORMAT = "format"
    PROTOCOL = "protocol"
    ARCHIVE = "archive"
    INPUT = "input"
    INTERNAL = "internal"


class ResourceError(BaseModel):
    """Typed error carried on a MaterializedTable instead of being raised."""

    kind: ErrorKind
    message: str
    url: str | None = None
    declared_format: str | None = None
    observed_format: str | None = None
    limit: int | float | None = None


class RemoteResource(BaseModel):
    """Caller-supplied description of what to fetch."""

    url: str
    declared_format: str = ""
    size_ceiling: int = Field(default_factory=lambda: settings.max_download_bytes, gt=0)
    timeout_s: float = Field(default_factory=lambda: settings.request_timeout_s, gt=0)

    @property
    def cache_key(self) -> str:
        return f"{self.declared_format.upper()}|{self.url}"


class FeatureTypeDescriptor(BaseModel):
    """A named layer advertised by a WFS GetCapabilities document."""

    name: str
    title: str
    abstract: str | None = None


class ServiceCapabilities(BaseModel):
    feature_types: list[FeatureTypeDescriptor] = Field(default_factory=list)
    output_formats: list[str] = Field(default_factory=list)


class MaterializedTable(BaseModel):
    """
    Uniform tabular result of fetching one resource.

    `rows` may be a bounded subset of the resource; `total_row_count` is the
    authoritative size (remote-reported when known, else len(rows)). Callers
    must check `error` before trusting `rows`.
    """

    format: str
    rows: list[RowRecord] = Field(default_factory=list)
    total_row_count: int = 0
    columns: list[str] = Field(default_factory=list)
    error: ResourceError | None = None
    raw_geometry_payload: dict[str, Any] | None = None
    # Set when the remote size is unknown and the rows may not be complete
    truncated: bool = False
    warnings: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_row_count(self) -> "MaterializedTable":
        if len(self.rows) > self.total_row_count:
            raise ValueError(
                f"rows ({len(self.rows)}) exceeds total_row_count ({self.total_row_count})"
            )
        return self

    @classmethod
    def from_rows(
        cls,
        format: str,
        rows: list[RowRecord],
        *,
        columns: list[str] | None = None,
        total_row_count: int | None = None,
        **kwargs: Any,
    ) -> "MaterializedTable":
        """Build a table, deriving columns from the union of row keys if absent."""
        total = len(rows) if total_row_count is None else max(total_row_count, len(rows))
        return cls(
            format=format,
            rows=rows,
            columns=columns if columns is not None else collect_columns(rows),
            total_row_count=total,
            **kwargs,
        )

    @classmethod
    def failed(cls, format: str, error: ResourceError) -> "MaterializedTable":
        return cls(format=format, error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def is_preview(self) -> bool:
        return self.truncated or len(self.rows) < self.total_row_count


def collect_columns(rows: list[RowRecord]) -> list[str]:
    """Union of row keys in first-seen order."""
    seen: dict[str, None] = {}
    for row in rows:
        for key in row:
            seen.setdefault(key, None)
    return list(seen)
