"""
sources/base.py — Abstract base class for all resource adapters.

Each concrete source must implement:
  extract()    — perform the network I/O, return the raw payload
  transform()  — turn the raw payload into a MaterializedTable

The run() method orchestrates extract → transform and handles timing and
logging. The ResourceFetcher calls run() rather than the individual methods;
typed errors raised here are converted into `table.error` by the fetcher.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Generic, TypeVar

import structlog

from opendata_shared.models import MaterializedTable, RemoteResource

log = structlog.get_logger(__name__)

RawT = TypeVar("RawT")


class BaseSource(ABC, Generic[RawT]):
    """Abstract base for the WFS and file-download adapters."""

    # Override in subclass; used as the source_name log field
    name: str = "unknown"

    def __init__(self) -> None:
        self._log = log.bind(source_name=self.name)

    @abstractmethod
    async def extract(self, resource: RemoteResource, *, full_data: bool = False) -> RawT:
        """
        Fetch the raw payload for a resource.

        Args:
            resource:  What to fetch, with its size and time ceilings.
            full_data: False for a bounded preview, True for the capped full download.
        """
        ...

    @abstractmethod
    def transform(self, raw: RawT, resource: RemoteResource) -> MaterializedTable:
        """Normalize a raw payload into a MaterializedTable."""
        ...

    async def run(self, resource: RemoteResource, *, full_data: bool = False) -> MaterializedTable:
        """
        Extract + transform in sequence with timing and structured logging.

        Raises:
            Any exception from extract() or transform() after logging it.
        """
        run_log = self._log.bind(url=resource.url, full_data=full_data)
        run_log.info("source_run_start", declared_format=resource.declared_format)

        t0 = time.monotonic()
        try:
            raw = await self.extract(resource, full_data=full_data)
            run_log.info("extract_complete", duration_ms=int((time.monotonic() - t0) * 1000))

            t1 = time.monotonic()
            table = self.transform(raw, resource)
            run_log.info(
                "source_run_complete",
                format=table.format,
                rows=len(table.rows),
                total_rows=table.total_row_count,
                transform_ms=int((time.monotonic() - t1) * 1000),
                total_duration_ms=int((time.monotonic() - t0) * 1000),
            )
            return table

        except Exception as exc:
            run_log.error(
                "source_run_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                duration_ms=int((time.monotonic() - t0) * 1000),
            )
            raise
