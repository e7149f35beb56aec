"""
transforms/reproject.py — GeoJSON reprojection to the target CRS (WGS84).

Many municipal WFS services and GeoJSON downloads publish coordinates in a
projected CRS (e.g. EPSG:25833, ETRS89 / UTM 33N). Web maps and downstream
consumers expect EPSG:4326, so every geometry collection passes through
GeoJSONReprojector before it is tabulated.

CRS detection reads the legacy `crs` member:
  {"type": "name", "properties": {"name": "urn:ogc:def:crs:EPSG::25833"}}
  {"type": "name", "properties": {"name": "EPSG:25833"}}
  {"type": "name", "properties": {"name": "http://www.opengis.net/def/crs/EPSG/0/25833"}}
  {"type": "name", "properties": {"name": "urn:ogc:def:crs:OGC:1.3:CRS84"}}

A missing declaration is treated as already-WGS84 (with a warning). The
`crs` member is always dropped from the output.

Usage:
    from opendata_pipeline.transforms.reproject import GeoJSONReprojector

    reprojector = GeoJSONReprojector()
    wgs84 = reprojector.to_target(collection)
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable
from functools import lru_cache
from typing import Any

import structlog
from pyproj import Transformer

from opendata_shared.config import settings

log = structlog.get_logger(__name__)

CRS84 = "OGC:CRS84"

_URN_EPSG_RE = re.compile(r"urn:ogc:def:crs:EPSG:[\d.]*:(\d+)", re.IGNORECASE)
_HTTP_EPSG_RE = re.compile(r"/def/crs/EPSG/[\d.]+/(\d+)", re.IGNORECASE)
_EPSG_RE = re.compile(r"EPSG:+(\d+)", re.IGNORECASE)

Position = list[float]
PositionTransform = Callable[[Position], Position]


def detect_crs(collection: dict[str, Any]) -> str | None:
    """Return the declared CRS as "EPSG:<code>" / CRS84, or None if undeclared."""
    crs = collection.get("crs")
    if not isinstance(crs, dict):
        return None
    props = crs.get("properties") or {}
    name = props.get("name") if isinstance(props, dict) else None
    if not isinstance(name, str):
        return None

    if "CRS84" in name.upper():
        return CRS84
    urn = _URN_EPSG_RE.search(name)
    if urn:
        return f"EPSG:{urn.group(1)}"
    uri = _HTTP_EPSG_RE.search(name)
    if uri:
        return f"EPSG:{uri.group(1)}"
    direct = _EPSG_RE.search(name)
    if direct:
        return f"EPSG:{direct.group(1)}"
    return None


@lru_cache(maxsize=32)
def _transformer(source_crs: str, target_crs: str) -> Transformer:
    return Transformer.from_crs(source_crs, target_crs, always_xy=True)


class GeoJSONReprojector:
    """Transforms geometry coordinates and bbox members into the target CRS."""

    def __init__(
        self,
        target_crs: str | None = None,
        precision: int | None = None,
    ) -> None:
        self.target_crs = (target_crs or settings.target_crs).upper()
        self.precision = settings.coordinate_precision if precision is None else precision

    def is_target(self, crs: str) -> bool:
        if crs == CRS84:
            return self.target_crs == "EPSG:4326"
        return crs.upper() == self.target_crs

    def to_target(
        self,
        collection: dict[str, Any],
        source_crs: str | None = None,
    ) -> dict[str, Any]:
        """
        Return a reprojected deep copy of a FeatureCollection or Feature.

        Args:
            collection: GeoJSON FeatureCollection (or single Feature).
            source_crs: Explicit source CRS; overrides the embedded declaration.

        Returns:
            New GeoJSON dict in the target CRS without a `crs` member.
        """
        from_crs = source_crs or detect_crs(collection)
        result = copy.deepcopy(collection)
        result.pop("crs", None)

        if from_crs is None:
            log.warning("crs_undeclared_assuming_target", target_crs=self.target_crs)
            return result
        if self.is_target(from_crs):
            log.debug("reprojection_skipped", source_crs=from_crs)
            return result

        log.info("reprojecting", source_crs=from_crs, target_crs=self.target_crs)
        transform = self._position_transform(from_crs)

        if result.get("type") == "FeatureCollection":
            for feature in result.get("features") or []:
                if isinstance(feature, dict):
                    feature["geometry"] = self.transform_geometry(feature.get("geometry"), transform)
        elif result.get("type") == "Feature":
            result["geometry"] = self.transform_geometry(result.get("geometry"), transform)
        else:
            result = self.transform_geometry(result, transform) or result

        transform_bboxes(result, transform)
        return result

    def _position_transform(self, source_crs: str) -> PositionTransform:
        transformer = _transformer(source_crs, self.target_crs)
        precision = self.precision

        def transform(position: Position) -> Position:
            if not isinstance(position, list) or len(position) < 2:
                return position
            x, y = transformer.transform(position[0], position[1])
            # Extra ordinates (altitude, measure) are kept as-is
            return [round(x, precision), round(y, precision), *position[2:]]

        return transform

    def transform_geometry(
        self,
        geometry: dict[str, Any] | None,
        transform: PositionTransform,
    ) -> dict[str, Any] | None:
        """Recursively transform all coordinates of one geometry."""
        if not geometry:
            return geometry

        gtype = geometry.get("type")
        coords = geometry.get("coordinates")
        # RFC 7946 allows empty coordinates; nothing to project
        if gtype != "GeometryCollection" and not coords:
            return geometry
        out = dict(geometry)

        if gtype == "Point":
            out["coordinates"] = transform(coords)
        elif gtype in ("LineString", "MultiPoint"):
            out["coordinates"] = [transform(p) for p in coords]
        elif gtype in ("Polygon", "MultiLineString"):
            out["coordinates"] = [[transform(p) for p in ring] for ring in coords]
        elif gtype == "MultiPolygon":
            out["coordinates"] = [
                [[transform(p) for p in ring] for ring in polygon] for polygon in coords
            ]
        elif gtype == "GeometryCollection":
            out["geometries"] = [
                g
                for g in (self.transform_geometry(g, transform) for g in geometry.get("geometries") or [])
                if g is not None
            ]
        else:
            log.warning("unknown_geometry_type", geometry_type=gtype)
            return geometry
        return out


def transform_bbox(bbox: list[Any], transform: PositionTransform) -> list[Any]:
    """Transform a 2D [minX, minY, maxX, maxY] or 3D 6-tuple bbox; Z stays put."""
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in bbox):
        return bbox
    if len(bbox) == 4:
        min_x, min_y = transform([bbox[0], bbox[1]])[:2]
        max_x, max_y = transform([bbox[2], bbox[3]])[:2]
        return [min_x, min_y, max_x, max_y]
    if len(bbox) == 6:
        min_x, min_y = transform([bbox[0], bbox[1]])[:2]
        max_x, max_y = transform([bbox[3], bbox[4]])[:2]
        return [min_x, min_y, bbox[2], max_x, max_y, bbox[5]]
    return bbox


def transform_bboxes(node: Any, transform: PositionTransform) -> None:
    """Find every `bbox` list anywhere in a GeoJSON tree and transform it in place."""
    if isinstance(node, dict):
        bbox = node.get("bbox")
        if isinstance(bbox, list):
            node["bbox"] = transform_bbox(bbox, transform)
        for key, value in node.items():
            if key not in ("bbox", "coordinates"):
                transform_bboxes(value, transform)
    elif isinstance(node, list):
        for item in node:
            if isinstance(item, (dict, list)):
                transform_bboxes(item, transform)
