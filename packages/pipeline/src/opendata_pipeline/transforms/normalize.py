"""
transforms/normalize.py — Convert raw payloads into RowRecord tables.

Every parser returns a MaterializedTable (or raises FormatError) so the
ResourceFetcher can treat all file-like sources uniformly:

  csv_to_table()      — header-driven delimited text, every value kept as str
  json_to_table()     — largest array-of-objects anywhere in the document
  geojson_to_table()  — one row per Feature (properties + geometry columns)
  excel_to_table()    — first sheet of an XLS/XLSX workbook, header row = columns
  kml_to_geojson()    — KML Placemarks → GeoJSON FeatureCollection

Type inference happens later in transforms/sample.py; identifiers like
postcodes or district keys ("01", "0815") come out of ingestion unchanged.

Usage:
    from opendata_pipeline.transforms.normalize import csv_to_table

    table = csv_to_table(text)
    table.columns        # ["Bezirk", "Einwohner"]
    table.rows[0]        # {"Bezirk": "Mitte", "Einwohner": "102000"}
"""

from __future__ import annotations

import io
import json
import xml.etree.ElementTree as ET
from datetime import date, datetime, time
from typing import Any

import polars as pl
import structlog

from opendata_shared.errors import FormatError
from opendata_shared.models import MaterializedTable, RowRecord, collect_columns

log = structlog.get_logger(__name__)

GEOMETRY_TYPE_COLUMN = "geometry_type"
GEOMETRY_COORDINATES_COLUMN = "geometry_coordinates"
FEATURE_ID_COLUMN = "feature_id"

_DELIMITER_CANDIDATES: tuple[str, ...] = (",", ";", "\t", "|")

# Fewer rows than this with no detected columns is treated as a failed parse
_MIN_ROWS_WITHOUT_COLUMNS = 5


# ---------------------------------------------------------------------------
# Sanity checks
# ---------------------------------------------------------------------------


def looks_like_html(text: str) -> bool:
    """True when a payload is an HTML page (typical for error pages served with 200)."""
    head = text.lstrip()[:256].lower()
    return head.startswith("<!doctype html") or head.startswith("<html")


def check_parsed(
    rows: list[RowRecord],
    columns: list[str],
    *,
    format: str,
) -> None:
    """Reject parses that produced nothing usable."""
    if not rows or (not columns and len(rows) < _MIN_ROWS_WITHOUT_COLUMNS):
        raise FormatError(
            f"{format} parsing produced no valid data. The file may be malformed "
            "or in an unexpected format.",
            observed_format=format,
        )


# ---------------------------------------------------------------------------
# Delimited text
# ---------------------------------------------------------------------------


def sniff_delimiter(text: str) -> str:
    """Pick the most frequent candidate delimiter on the header line."""
    header = next((line for line in text.splitlines() if line.strip()), "")
    counts = {d: header.count(d) for d in _DELIMITER_CANDIDATES}
    best = max(counts, key=lambda d: counts[d])
    return best if counts[best] > 0 else ","


def csv_to_table(text: str, *, format: str = "CSV") -> MaterializedTable:
    """
    Parse delimited text with a header row; all values stay strings.

    Raises:
        FormatError: HTML payloads and parses without usable rows/columns.
    """
    if looks_like_html(text):
        raise FormatError(
            f"Server returned HTML instead of {format}. The resource may require "
            "a browser download or the URL points to a landing page.",
            declared_format=format,
            observed_format="HTML",
        )

    separator = sniff_delimiter(text)
    try:
        df = pl.read_csv(
            io.StringIO(text),
            separator=separator,
            infer_schema_length=0,
            truncate_ragged_lines=True,
            missing_utf8_is_empty_string=True,
        )
    except (pl.exceptions.PolarsError, ValueError) as exc:
        raise FormatError(f"CSV parse error: {exc}", declared_format=format) from exc

    columns = [c for c in df.columns if c.strip()]
    rows = [
        row
        for row in df.select(columns).to_dicts()
        if any(v not in (None, "") for v in row.values())
    ]
    check_parsed(rows, columns, format=format)
    log.debug("csv_parsed", rows=len(rows), columns=len(columns), separator=separator)
    return MaterializedTable.from_rows("CSV", rows, columns=columns)


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------


def _is_record_array(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0 and isinstance(value[0], dict)


def find_largest_record_array(node: Any) -> list[dict[str, Any]] | None:
    """
    Recursively find the largest array of objects anywhere in a JSON document.

    Record arrays are candidates and are not searched further; objects and
    non-record arrays are descended into. Ties keep the first array
    encountered in document order.
    """
    if _is_record_array(node):
        return node

    children: list[Any]
    if isinstance(node, dict):
        children = list(node.values())
    elif isinstance(node, list):
        children = node
    else:
        return None

    best: list[dict[str, Any]] | None = None
    for child in children:
        found = find_largest_record_array(child)
        if found is not None and (best is None or len(found) > len(best)):
            best = found
    return best


def _flatten_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value


def json_to_table(document: Any, *, format: str = "JSON") -> MaterializedTable:
    """Tabulate a parsed JSON document; GeoJSON is routed to geojson_to_table()."""
    if is_geojson(document):
        return geojson_to_table(document)

    records = find_largest_record_array(document)
    if not records:
        raise FormatError(
            "No data arrays found in JSON structure",
            declared_format=format,
            observed_format="JSON",
        )

    rows = [
        {key: _flatten_value(value) for key, value in record.items()}
        for record in records
        if isinstance(record, dict)
    ]
    columns = collect_columns(rows)
    check_parsed(rows, columns, format="JSON")
    return MaterializedTable.from_rows("JSON", rows, columns=columns)


# ---------------------------------------------------------------------------
# GeoJSON
# ---------------------------------------------------------------------------


def is_geojson(document: Any) -> bool:
    if not isinstance(document, dict):
        return False
    if document.get("type") == "FeatureCollection":
        return isinstance(document.get("features"), list)
    return (
        document.get("type") == "Feature"
        and "geometry" in document
        and "properties" in document
    )


def feature_to_row(feature: dict[str, Any]) -> RowRecord:
    row: RowRecord = {}
    properties = feature.get("properties")
    if isinstance(properties, dict):
        row.update({key: _flatten_value(value) for key, value in properties.items()})

    geometry = feature.get("geometry")
    if isinstance(geometry, dict) and geometry:
        row[GEOMETRY_TYPE_COLUMN] = geometry.get("type")
        # GeometryCollection has no coordinates member of its own
        if geometry.get("coordinates") is not None:
            row[GEOMETRY_COORDINATES_COLUMN] = json.dumps(geometry["coordinates"])

    if feature.get("id") is not None:
        row[FEATURE_ID_COLUMN] = feature["id"]
    return row


def geojson_to_rows(document: dict[str, Any]) -> list[RowRecord]:
    features = document.get("features") if document.get("type") == "FeatureCollection" else [document]
    return [
        feature_to_row(feature)
        for feature in features or []
        if isinstance(feature, dict) and feature.get("type") == "Feature"
    ]


def geojson_to_table(
    document: dict[str, Any],
    *,
    format: str = "GeoJSON",
    total_row_count: int | None = None,
) -> MaterializedTable:
    """
    One row per Feature; the (already reprojected) document is kept as payload.

    Raises:
        FormatError: the collection contains no features.
    """
    rows = geojson_to_rows(document)
    if not rows:
        raise FormatError("No features found in GeoJSON", observed_format=format)
    return MaterializedTable.from_rows(
        format,
        rows,
        total_row_count=total_row_count,
        raw_geometry_payload=document,
    )


# ---------------------------------------------------------------------------
# Spreadsheets
# ---------------------------------------------------------------------------


def _cell(value: Any) -> Any:
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return value


def excel_to_table(content: bytes, *, format: str = "XLSX") -> MaterializedTable:
    """
    Read the first sheet of a workbook; the header row defines the columns.

    Raises:
        FormatError: unreadable workbook, no sheets, or an empty first sheet.
    """
    try:
        df = pl.read_excel(io.BytesIO(content), sheet_id=1)
    except pl.exceptions.NoDataError:
        df = pl.DataFrame()
    except Exception as exc:
        # fastexcel raises its own exception hierarchy for corrupt workbooks
        raise FormatError(f"Excel parse error: {exc}", declared_format=format) from exc

    columns = [c for c in df.columns if c.strip()]
    rows = [
        {key: _cell(value) for key, value in row.items()}
        for row in df.select(columns).to_dicts()
        if any(v is not None for v in row.values())
    ] if columns else []

    if not rows or not columns:
        raise FormatError(
            "Excel file appears to be empty or has no headers",
            declared_format=format,
            observed_format=format,
        )
    return MaterializedTable.from_rows(format.upper(), rows, columns=columns)


# ---------------------------------------------------------------------------
# KML
# ---------------------------------------------------------------------------


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1] if "}" in tag else tag


def _child(element: ET.Element, name: str) -> ET.Element | None:
    return next((c for c in element if _local(c.tag) == name), None)


def _descendants(element: ET.Element, name: str) -> list[ET.Element]:
    return [e for e in element.iter() if _local(e.tag) == name]


def _parse_coordinates(text: str | None) -> list[list[float]]:
    positions: list[list[float]] = []
    for token in (text or "").split():
        parts = token.split(",")
        if len(parts) < 2:
            continue
        try:
            positions.append([float(p) for p in parts if p != ""])
        except ValueError:
            continue
    return positions


def _kml_geometry(element: ET.Element) -> dict[str, Any] | None:
    kind = _local(element.tag)
    coords_el = _child(element, "coordinates")

    if kind == "Point":
        positions = _parse_coordinates(coords_el.text if coords_el is not None else None)
        return {"type": "Point", "coordinates": positions[0]} if positions else None
    if kind in ("LineString", "LinearRing"):
        positions = _parse_coordinates(coords_el.text if coords_el is not None else None)
        return {"type": "LineString", "coordinates": positions} if positions else None
    if kind == "Polygon":
        rings: list[list[list[float]]] = []
        for boundary in ("outerBoundaryIs", "innerBoundaryIs"):
            for b in (c for c in element if _local(c.tag) == boundary):
                for coords in _descendants(b, "coordinates"):
                    ring = _parse_coordinates(coords.text)
                    if ring:
                        rings.append(ring)
        return {"type": "Polygon", "coordinates": rings} if rings else None
    if kind == "MultiGeometry":
        geometries = [g for g in (_kml_geometry(c) for c in element) if g is not None]
        return {"type": "GeometryCollection", "geometries": geometries} if geometries else None
    return None


def _placemark_properties(placemark: ET.Element) -> dict[str, Any]:
    props: dict[str, Any] = {}
    for field in ("name", "description"):
        el = _child(placemark, field)
        if el is not None and el.text is not None:
            props[field] = el.text.strip()

    extended = _child(placemark, "ExtendedData")
    if extended is not None:
        for data in _descendants(extended, "Data"):
            value = _child(data, "value")
            if data.get("name"):
                props[data.get("name")] = value.text if value is not None else None
        for simple in _descendants(extended, "SimpleData"):
            if simple.get("name"):
                props[simple.get("name")] = simple.text
    return props


def kml_to_geojson(text: str) -> dict[str, Any]:
    """
    Convert KML Placemarks into a GeoJSON FeatureCollection (WGS84 by definition).

    Raises:
        FormatError: the payload is not well-formed XML.
    """
    try:
        root = ET.fromstring(text.strip().encode("utf-8"))
    except ET.ParseError as exc:
        raise FormatError(
            f"Invalid KML/XML structure: {exc}",
            declared_format="KML",
            observed_format="XML",
        ) from exc

    features: list[dict[str, Any]] = []
    for placemark in _descendants(root, "Placemark"):
        geometry = next(
            (g for g in (_kml_geometry(c) for c in placemark) if g is not None),
            None,
        )
        feature: dict[str, Any] = {
            "type": "Feature",
            "geometry": geometry,
            "properties": _placemark_properties(placemark),
        }
        if placemark.get("id"):
            feature["id"] = placemark.get("id")
        features.append(feature)

    log.debug("kml_converted", features=len(features))
    return {"type": "FeatureCollection", "features": features}
