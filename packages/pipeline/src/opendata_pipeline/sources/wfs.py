"""
sources/wfs.py — OGC Web Feature Service (WFS 2.0) client and pagination policy.

Wire contract (HTTP GET, key-value-pair encoding):

  GetCapabilities   SERVICE=WFS&REQUEST=GetCapabilities
  hits-only count   SERVICE=WFS&REQUEST=GetFeature&VERSION=2.0.0&TYPENAMES=<t>
                    &RESULTTYPE=hits
  feature page      SERVICE=WFS&REQUEST=GetFeature&VERSION=2.0.0&TYPENAMES=<t>
                    &OUTPUTFORMAT=application/json&COUNT=<n>&STARTINDEX=<i>
                    [&srsName=EPSG:4326 on hosts known to honour it]

Caller URLs frequently already carry WFS parameters (copied from a portal)
plus service-specific passthrough identifiers (e.g. `nodeId`).
parse_service_url() strips the reserved WFS parameters and keeps everything
else, which is forwarded on every request.

WFSClient performs single requests; WFSSource layers the pagination policy:

  full download  pages of wfs_page_size until a short page or the
                 wfs_max_download_features cap
  preview        count <= threshold → whole collection
                 count >  threshold → wfs_sample_size features
                 count unknown      → one threshold-sized page, marked truncated

Usage:
    source = WFSSource()
    table = await source.run(RemoteResource(url=url, declared_format="WFS"))
    table.total_row_count   # remote numberMatched
    len(table.rows)         # 10 when the layer is large
"""

from __future__ import annotations

import asyncio
import json
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from opendata_shared.config import settings
from opendata_shared.errors import ProtocolError
from opendata_shared.models import (
    FeatureTypeDescriptor,
    MaterializedTable,
    RemoteResource,
    ServiceCapabilities,
)
from opendata_pipeline.sources.base import BaseSource
from opendata_pipeline.sources.http import translate_http_errors
from opendata_pipeline.transforms.normalize import geojson_to_table
from opendata_pipeline.transforms.reproject import GeoJSONReprojector
from opendata_pipeline.utils.retry import with_retry

log = structlog.get_logger(__name__)

RESERVED_PARAMS: frozenset[str] = frozenset(
    {
        "service",
        "request",
        "version",
        "typenames",
        "typename",
        "outputformat",
        "count",
        "maxfeatures",
        "startindex",
        "resulttype",
    }
)

_NUMBER_MATCHED_RE = re.compile(r'numberMatched="(\d+)"')
_NUMBER_OF_FEATURES_RE = re.compile(r'numberOfFeatures="(\d+)"')


def parse_service_url(url: str) -> tuple[str, list[tuple[str, str]]]:
    """
    Split a WFS URL into its base URL and the non-reserved query parameters.

    >>> parse_service_url("https://x/wfs?service=WFS&nodeId=42&REQUEST=GetCapabilities")
    ('https://x/wfs', [('nodeId', '42')])
    """
    parsed = httpx.URL(url)
    preserved = [
        (key, value)
        for key, value in parsed.params.multi_items()
        if key.lower() not in RESERVED_PARAMS
    ]
    return str(parsed.copy_with(query=None, fragment=None)), preserved


def requested_type_name(url: str) -> str | None:
    """TYPENAMES / TYPENAME already present in a caller URL, if any."""
    for key, value in httpx.URL(url).params.multi_items():
        if key.lower() in ("typenames", "typename") and value:
            return value
    return None


def is_wfs_url(url: str) -> bool:
    lower = url.lower()
    return (
        "service=wfs" in lower
        or "request=getcapabilities" in lower
        or "/services/wfs" in lower
    )


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _child_text(element: ET.Element, name: str) -> str | None:
    for child in element:
        if _local(child.tag) == name and child.text and child.text.strip():
            return child.text.strip()
    return None


def parse_capabilities(xml_text: str | bytes) -> ServiceCapabilities:
    """
    Parse a GetCapabilities document without caring about namespace prefixes.

    Raises:
        ProtocolError: invalid XML or no FeatureType with a Name.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as exc:
        raise ProtocolError(f"Invalid XML in GetCapabilities response: {exc}") from exc

    feature_types: list[FeatureTypeDescriptor] = []
    output_formats: list[str] = []
    for element in root.iter():
        tag = _local(element.tag)
        if tag == "FeatureType":
            name = _child_text(element, "Name")
            if name:
                feature_types.append(
                    FeatureTypeDescriptor(
                        name=name,
                        title=_child_text(element, "Title") or name,
                        abstract=_child_text(element, "Abstract"),
                    )
                )
        elif tag == "Parameter" and (element.get("name") or "").lower() == "outputformat":
            for value in element.iter():
                if _local(value.tag) == "Value" and value.text and value.text.strip():
                    output_formats.append(value.text.strip())
        elif tag == "outputFormat" and element.text and element.text.strip():
            output_formats.append(element.text.strip())

    if not feature_types:
        raise ProtocolError("No feature types found in GetCapabilities response")
    return ServiceCapabilities(
        feature_types=feature_types,
        output_formats=list(dict.fromkeys(output_formats)),
    )


def parse_hits(body: str) -> int:
    """Read numberMatched (WFS 2.0) / numberOfFeatures (1.1) / JSON fields; 0 = unknown."""
    for pattern in (_NUMBER_MATCHED_RE, _NUMBER_OF_FEATURES_RE):
        match = pattern.search(body)
        if match:
            return int(match.group(1))
    try:
        document = json.loads(body)
    except ValueError:
        return 0
    if isinstance(document, dict):
        for key in ("numberMatched", "totalFeatures"):
            value = document.get(key)
            if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                return value
    return 0


class WFSClient:
    """Single WFS requests; no paging decisions are made here."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout_s: float | None = None,
        target_crs: str | None = None,
        srs_override_hosts: list[str] | None = None,
    ) -> None:
        self._client = client
        self._timeout = timeout_s or settings.request_timeout_s
        self._target_crs = target_crs or settings.target_crs
        self._srs_override_hosts = (
            srs_override_hosts if srs_override_hosts is not None else settings.srs_override_hosts_list
        )
        self._headers = {"User-Agent": settings.user_agent}

    def honours_srs_override(self, base_url: str) -> bool:
        host = httpx.URL(base_url).host.lower()
        return any(host == h or host.endswith("." + h) for h in self._srs_override_hosts)

    async def _get(self, base_url: str, params: list[tuple[str, str]]) -> httpx.Response:
        log.debug("wfs_request", url=base_url, params=dict(params))
        if self._client is not None:
            response = await self._client.get(
                base_url, params=params, headers=self._headers, timeout=self._timeout
            )
        else:
            async with httpx.AsyncClient(
                timeout=self._timeout, follow_redirects=True, headers=self._headers
            ) as client:
                response = await client.get(base_url, params=params)
        response.raise_for_status()
        return response

    @with_retry(
        max_attempts=settings.http_retry_attempts,
        base_delay=settings.http_retry_base_delay_s,
    )
    async def _get_idempotent(self, base_url: str, params: list[tuple[str, str]]) -> httpx.Response:
        return await self._get(base_url, params)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def get_capabilities(self, url: str) -> ServiceCapabilities:
        base_url, preserved = parse_service_url(url)
        params = [*preserved, ("SERVICE", "WFS"), ("REQUEST", "GetCapabilities")]
        with translate_http_errors(base_url):
            response = await self._get_idempotent(base_url, params)
        try:
            capabilities = parse_capabilities(response.content)
        except ProtocolError as exc:
            exc.url = base_url
            raise
        log.info(
            "wfs_capabilities",
            url=base_url,
            feature_types=len(capabilities.feature_types),
        )
        return capabilities

    async def discover_feature_types(self, url: str) -> list[FeatureTypeDescriptor]:
        return (await self.get_capabilities(url)).feature_types

    async def get_approximate_count(self, url: str, type_name: str) -> int:
        """
        Hits-only count of a feature type.

        Returns 0 ("unknown") on any failure; a missing count never aborts
        a fetch.
        """
        base_url, preserved = parse_service_url(url)
        params = [
            *preserved,
            ("SERVICE", "WFS"),
            ("REQUEST", "GetFeature"),
            ("VERSION", "2.0.0"),
            ("TYPENAMES", type_name),
            ("RESULTTYPE", "hits"),
        ]
        try:
            with translate_http_errors(base_url):
                response = await self._get_idempotent(base_url, params)
        except Exception as exc:
            log.warning("wfs_count_unavailable", url=base_url, type_name=type_name, error=str(exc))
            return 0
        count = parse_hits(response.text)
        if count == 0:
            log.warning("wfs_count_unknown", url=base_url, type_name=type_name)
        return count

    async def get_feature_page(
        self,
        url: str,
        type_name: str,
        count: int,
        start_index: int = 0,
    ) -> dict[str, Any]:
        """
        One GetFeature page as a GeoJSON FeatureCollection.

        Raises:
            NetworkError / RequestTimeout: transport failure or non-2xx status.
            ProtocolError: non-JSON response or not a FeatureCollection.
        """
        base_url, preserved = parse_service_url(url)
        override_srs = self.honours_srs_override(base_url)
        if override_srs:
            # The override replaces a caller srsName instead of adding a second one
            preserved = [(k, v) for k, v in preserved if k.lower() != "srsname"]
        params = [
            *preserved,
            ("SERVICE", "WFS"),
            ("REQUEST", "GetFeature"),
            ("VERSION", "2.0.0"),
            ("TYPENAMES", type_name),
            ("OUTPUTFORMAT", "application/json"),
            ("COUNT", str(count)),
            ("STARTINDEX", str(start_index)),
        ]
        if override_srs:
            params.append(("srsName", self._target_crs))

        with translate_http_errors(base_url):
            response = await self._get(base_url, params)

        content_type = response.headers.get("content-type", "")
        if "json" not in content_type.lower():
            raise ProtocolError(
                f"Expected a JSON response from GetFeature, got: {content_type or 'no content type'}",
                url=base_url,
                observed_format=content_type or None,
            )
        try:
            collection = response.json()
        except ValueError as exc:
            raise ProtocolError(f"GetFeature returned invalid JSON: {exc}", url=base_url) from exc
        if not isinstance(collection, dict) or collection.get("type") != "FeatureCollection":
            raise ProtocolError("Invalid GeoJSON: expected a FeatureCollection", url=base_url)
        if not isinstance(collection.get("features"), list):
            collection["features"] = []

        log.debug(
            "wfs_page_fetched",
            type_name=type_name,
            start_index=start_index,
            requested=count,
            received=len(collection["features"]),
        )
        return collection


@dataclass
class WFSDownload:
    """Raw result of the pagination policy, before reprojection."""

    type_name: str
    features: list[dict[str, Any]]
    remote_count: int
    crs: dict[str, Any] | None = None
    truncated: bool = False
    warnings: list[str] = field(default_factory=list)

    def collection(self) -> dict[str, Any]:
        collection: dict[str, Any] = {"type": "FeatureCollection", "features": self.features}
        if self.crs is not None:
            collection["crs"] = self.crs
        return collection


class WFSSource(BaseSource[WFSDownload]):
    """Pagination policy over WFSClient, producing a MaterializedTable."""

    name = "WFS"

    def __init__(
        self,
        client: WFSClient | None = None,
        reprojector: GeoJSONReprojector | None = None,
        page_size: int | None = None,
        max_features: int | None = None,
        small_dataset_threshold: int | None = None,
        sample_size: int | None = None,
    ) -> None:
        super().__init__()
        self.client = client or WFSClient()
        self.reprojector = reprojector or GeoJSONReprojector()
        self.page_size = page_size or settings.wfs_page_size
        self.max_features = max_features or settings.wfs_max_download_features
        self.small_dataset_threshold = small_dataset_threshold or settings.wfs_small_dataset_threshold
        self.sample_size = sample_size or settings.wfs_sample_size

    async def resolve_type_name(self, url: str) -> str:
        """Caller-selected TYPENAMES wins; otherwise the first advertised type."""
        requested = requested_type_name(url)
        if requested:
            return requested
        feature_types = await self.client.discover_feature_types(url)
        return feature_types[0].name

    async def extract(self, resource: RemoteResource, *, full_data: bool = False) -> WFSDownload:
        url = resource.url
        type_name = await self.resolve_type_name(url)
        self._log.info("wfs_feature_type", type_name=type_name, full_data=full_data)
        if full_data:
            return await self._download_all(url, type_name)
        return await self._download_preview(url, type_name)

    async def _download_all(self, url: str, type_name: str) -> WFSDownload:
        first_batch = min(self.page_size, self.max_features)
        # Both tasks always run to completion; a failed first page is raised afterwards
        count_result, page_result = await asyncio.gather(
            self.client.get_approximate_count(url, type_name),
            self.client.get_feature_page(url, type_name, first_batch, 0),
            return_exceptions=True,
        )
        if isinstance(page_result, BaseException):
            raise page_result
        if isinstance(count_result, BaseException):
            self._log.warning("wfs_count_failed", error=str(count_result))
            count_result = 0
        remote_count, first_page = count_result, page_result
        goal = min(remote_count, self.max_features) if remote_count > 0 else self.max_features

        features: list[dict[str, Any]] = list(first_page["features"])
        last_batch, requested = len(first_page["features"]), first_batch
        batches = 1
        # A short page is the end-of-collection signal, so pages stay sequential
        while last_batch >= requested and len(features) < goal:
            requested = min(self.page_size, self.max_features - len(features))
            page = await self.client.get_feature_page(url, type_name, requested, len(features))
            last_batch = len(page["features"])
            features.extend(page["features"])
            batches += 1

        features = features[: self.max_features]
        warnings: list[str] = []
        if remote_count == 0:
            warnings.append("Feature count unavailable; downloaded until the service ran out of features.")
        if remote_count > self.max_features or (remote_count == 0 and len(features) >= self.max_features):
            warnings.append(
                f"Download capped at {self.max_features} features"
                + (f" of {remote_count}." if remote_count else ".")
            )
        self._log.info(
            "wfs_download_complete",
            type_name=type_name,
            features=len(features),
            remote_count=remote_count,
            batches=batches,
        )
        return WFSDownload(
            type_name=type_name,
            features=features,
            remote_count=remote_count,
            crs=first_page.get("crs"),
            warnings=warnings,
        )

    async def _download_preview(self, url: str, type_name: str) -> WFSDownload:
        remote_count = await self.client.get_approximate_count(url, type_name)
        warnings: list[str] = []
        truncated = False

        if remote_count == 0:
            page = await self.client.get_feature_page(url, type_name, self.small_dataset_threshold, 0)
            truncated = len(page["features"]) >= self.small_dataset_threshold
            warnings.append(
                "Feature count unavailable"
                + (f"; showing the first {self.small_dataset_threshold} features." if truncated else ".")
            )
        elif remote_count <= self.small_dataset_threshold:
            page = await self.client.get_feature_page(url, type_name, remote_count, 0)
        else:
            self._log.info("wfs_large_dataset_sampled", remote_count=remote_count, sample_size=self.sample_size)
            page = await self.client.get_feature_page(url, type_name, self.sample_size, 0)

        return WFSDownload(
            type_name=type_name,
            features=list(page["features"]),
            remote_count=remote_count,
            crs=page.get("crs"),
            truncated=truncated,
            warnings=warnings,
        )

    def transform(self, raw: WFSDownload, resource: RemoteResource) -> MaterializedTable:
        collection = self.reprojector.to_target(raw.collection())
        total = raw.remote_count if raw.remote_count >= len(raw.features) else len(raw.features)
        if not raw.features:
            return MaterializedTable(
                format="WFS",
                total_row_count=0,
                raw_geometry_payload=collection,
                warnings=[*raw.warnings, f"Feature type {raw.type_name} returned no features."],
            )
        table = geojson_to_table(collection, format="WFS", total_row_count=total)
        return table.model_copy(update={"truncated": raw.truncated, "warnings": raw.warnings})
