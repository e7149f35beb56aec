"""
sources/fetcher.py — Resource fetcher / format router.

ResourceFetcher.fetch() is the single entry point for turning a URL plus a
declared format into a MaterializedTable. It never raises: every failure is
returned as a typed `table.error` that carries the offending URL and the
declared / observed formats.

Routing, first match wins:
  1. archive (declared ZIP/RAR/7Z/TAR/GZ or archive URL extension)
       → ArchiveNotSupported, nothing is downloaded
  2. WFS endpoint (declared WFS or WFS-shaped URL) → WFSSource
  3. everything else → FileSource
       (script-gated hosts try the BrowserFetcher first, then a direct download)

Usage:
    fetcher = ResourceFetcher()
    table = await fetcher.fetch(RemoteResource(url=url, declared_format="CSV"))
    if table.error:
        print(table.error.kind, table.error.message)
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx
import structlog

from opendata_shared.config import settings
from opendata_shared.errors import ArchiveNotSupported, OpenDataError, RequestTimeout
from opendata_shared.models import ErrorKind, MaterializedTable, RemoteResource, ResourceError
from opendata_pipeline.sources.base import BaseSource
from opendata_pipeline.sources.http import DownloadedPayload, HttpDownloader
from opendata_pipeline.sources.sniff import PayloadKind, SniffResult, sniff
from opendata_pipeline.sources.wfs import WFSSource, is_wfs_url
from opendata_pipeline.transforms.normalize import (
    csv_to_table,
    excel_to_table,
    geojson_to_table,
    json_to_table,
    kml_to_geojson,
)
from opendata_pipeline.transforms.reproject import GeoJSONReprojector

log = structlog.get_logger(__name__)

ARCHIVE_FORMATS: frozenset[str] = frozenset({"ZIP", "RAR", "7Z", "TAR", "GZ"})
ARCHIVE_EXTENSIONS: tuple[str, ...] = (".zip", ".rar", ".7z", ".tar", ".gz", ".tgz")


@runtime_checkable
class BrowserFetcher(Protocol):
    """
    Headless-browser collaborator for portals that only reveal the real
    download link after running page scripts.
    """

    async def is_available(self) -> bool: ...

    async def fetch(self, url: str, *, timeout_s: float) -> DownloadedPayload | None: ...


def is_archive_resource(resource: RemoteResource) -> bool:
    if resource.declared_format.strip().upper() in ARCHIVE_FORMATS:
        return True
    path = httpx.URL(resource.url).path.lower()
    return path.endswith(ARCHIVE_EXTENSIONS)


def is_wfs_resource(resource: RemoteResource) -> bool:
    return resource.declared_format.strip().upper() == "WFS" or is_wfs_url(resource.url)


def is_browser_host(url: str, hosts: list[str] | None = None) -> bool:
    host = httpx.URL(url).host.lower()
    candidates = settings.browser_fetch_hosts_list if hosts is None else hosts
    return any(host == h or host.endswith("." + h) for h in candidates)


@dataclass
class SniffedPayload:
    payload: DownloadedPayload
    sniffed: SniffResult


class FileSource(BaseSource[SniffedPayload]):
    """Single-file downloads (CSV, JSON, GeoJSON, KML, XLS, XLSX)."""

    name = "file"

    def __init__(
        self,
        downloader: HttpDownloader | None = None,
        reprojector: GeoJSONReprojector | None = None,
        browser_fetcher: BrowserFetcher | None = None,
    ) -> None:
        super().__init__()
        self.downloader = downloader or HttpDownloader()
        self.reprojector = reprojector or GeoJSONReprojector()
        self.browser_fetcher = browser_fetcher

    async def _browser_download(self, resource: RemoteResource) -> DownloadedPayload | None:
        """Try the browser collaborator; None means "fall back to a direct fetch"."""
        if self.browser_fetcher is None or not is_browser_host(resource.url):
            return None
        try:
            if not await self.browser_fetcher.is_available():
                self._log.info("browser_fetch_unavailable", url=resource.url)
                return None
            payload = await self.browser_fetcher.fetch(resource.url, timeout_s=resource.timeout_s)
        except Exception as exc:
            self._log.warning("browser_fetch_failed", url=resource.url, error=str(exc))
            return None
        if payload is None or not payload.content:
            self._log.warning("browser_fetch_empty", url=resource.url)
            return None
        if len(payload) > resource.size_ceiling:
            self._log.warning("browser_fetch_oversized", url=resource.url, bytes=len(payload))
            return None
        return payload

    async def extract(self, resource: RemoteResource, *, full_data: bool = False) -> SniffedPayload:
        payload = await self._browser_download(resource)
        if payload is None:
            payload = await self.downloader.download(
                resource.url,
                size_ceiling=resource.size_ceiling,
                timeout_s=resource.timeout_s,
            )
        return SniffedPayload(payload=payload, sniffed=sniff(payload, resource.declared_format))

    def transform(self, raw: SniffedPayload, resource: RemoteResource) -> MaterializedTable:
        kind = raw.sniffed.kind
        declared = resource.declared_format.strip().upper()
        if declared and declared != kind.value.upper():
            self._log.info("declared_format_overridden", declared=declared, observed=kind.value)

        if kind in (PayloadKind.XLS, PayloadKind.XLSX):
            return excel_to_table(raw.payload.content, format=kind.value)
        if kind is PayloadKind.KML:
            # KML coordinates are WGS84 by definition
            collection = self.reprojector.to_target(kml_to_geojson(raw.sniffed.text or ""), source_crs="EPSG:4326")
            return geojson_to_table(collection, format="KML")
        if kind is PayloadKind.GEOJSON:
            collection = self.reprojector.to_target(raw.sniffed.document)
            return geojson_to_table(collection, format="GeoJSON")
        if kind is PayloadKind.JSON:
            return json_to_table(raw.sniffed.document)
        return csv_to_table(raw.sniffed.text or "", format=declared or "CSV")


class ResourceFetcher:
    """Routes a RemoteResource to the right source and never raises."""

    def __init__(
        self,
        wfs_source: WFSSource | None = None,
        file_source: FileSource | None = None,
        browser_fetcher: BrowserFetcher | None = None,
    ) -> None:
        self.wfs_source = wfs_source or WFSSource()
        self.file_source = file_source or FileSource(browser_fetcher=browser_fetcher)

    def route(self, resource: RemoteResource) -> BaseSource:
        """
        Pick the adapter for a resource.

        Raises:
            ArchiveNotSupported: archive formats are refused before any download.
        """
        if is_archive_resource(resource):
            raise ArchiveNotSupported(
                "Archive files (ZIP, RAR, 7Z, TAR, GZ) are not unpacked. "
                f"Download it directly: {resource.url}",
                url=resource.url,
                declared_format=resource.declared_format or None,
            )
        if is_wfs_resource(resource):
            return self.wfs_source
        return self.file_source

    def deadline_s(self, resource: RemoteResource, source: BaseSource, full_data: bool) -> float:
        """Overall wall-clock budget; paged downloads get one timeout per request."""
        if source is self.wfs_source and full_data:
            pages = math.ceil(self.wfs_source.max_features / self.wfs_source.page_size)
            return resource.timeout_s * (pages + 2)
        if source is self.wfs_source:
            return resource.timeout_s * 3
        return resource.timeout_s

    async def fetch(self, resource: RemoteResource, full_data: bool = False) -> MaterializedTable:
        declared = resource.declared_format.strip().upper()
        fetch_log = log.bind(url=resource.url, declared_format=declared, full_data=full_data)
        try:
            source = self.route(resource)
            deadline = self.deadline_s(resource, source, full_data)
            try:
                return await asyncio.wait_for(source.run(resource, full_data=full_data), timeout=deadline)
            except asyncio.TimeoutError as exc:
                raise RequestTimeout(
                    f"Fetching {resource.url} did not finish within {deadline:g}s",
                    url=resource.url,
                    limit=deadline,
                ) from exc

        except OpenDataError as exc:
            if exc.url is None:
                exc.url = resource.url
            if exc.declared_format is None and declared:
                exc.declared_format = declared
            fetch_log.warning("fetch_failed", kind=exc.kind.value, error=exc.message)
            return MaterializedTable.failed(declared or "UNKNOWN", exc.to_resource_error())

        except Exception as exc:
            fetch_log.error("fetch_internal_error", error=str(exc), exc_info=True)
            return MaterializedTable.failed(
                declared or "UNKNOWN",
                ResourceError(
                    kind=ErrorKind.INTERNAL,
                    message=f"Unexpected error while fetching {resource.url}: {exc}",
                    url=resource.url,
                    declared_format=declared or None,
                ),
            )
