"""
loaders/export.py — Re-serialize a MaterializedTable for download.

Three output formats:
  csv      header + rows, CRLF line endings; values containing a comma,
           quote, CR or LF are quoted with inner quotes doubled
  json     JSON array of row objects
  geojson  the already-reprojected raw_geometry_payload (or features rebuilt
           from geometry_type / geometry_coordinates rows), with every
           feature bbox and the collection bbox recomputed

The default format follows the source: CSV stays CSV, geodata (WFS, GeoJSON,
KML) becomes GeoJSON, everything else JSON.

Usage:
    from opendata_pipeline.loaders.export import export_table

    exported = export_table(table, title="Einwohner nach Bezirk")
    Path(exported.filename).write_text(exported.content, encoding="utf-8")
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass
from typing import Any, Literal

import polars as pl
import structlog

from opendata_shared.errors import InputError
from opendata_shared.models import MaterializedTable, RowRecord, collect_columns
from opendata_shared.values import stringify
from opendata_pipeline.transforms.normalize import (
    FEATURE_ID_COLUMN,
    GEOMETRY_COORDINATES_COLUMN,
    GEOMETRY_TYPE_COLUMN,
)

log = structlog.get_logger(__name__)

OutputFormat = Literal["csv", "json", "geojson"]

GEO_FORMATS: frozenset[str] = frozenset({"WFS", "GEOJSON", "KML"})

_MIME_TYPES: dict[str, str] = {
    "csv": "text/csv",
    "json": "application/json",
    "geojson": "application/geo+json",
}

_TRANSLITERATION = str.maketrans({"ä": "ae", "ö": "oe", "ü": "ue", "ß": "ss"})


@dataclass
class ExportedFile:
    content: str
    output_format: str
    mime_type: str
    filename: str
    row_count: int


# ---------------------------------------------------------------------------
# CSV / JSON
# ---------------------------------------------------------------------------


def to_csv(rows: list[RowRecord], columns: list[str] | None = None) -> str:
    columns = columns if columns is not None else collect_columns(rows)
    # Empty cells go in as nulls so they serialize bare rather than as ""
    frame = pl.DataFrame(
        {c: [stringify(row.get(c)) or None for row in rows] for c in columns},
        schema={c: pl.String for c in columns},
    )
    return frame.write_csv(line_terminator="\r\n", quote_style="necessary")


def to_json(rows: list[RowRecord]) -> str:
    return json.dumps(rows, ensure_ascii=False, indent=2, default=str)


# ---------------------------------------------------------------------------
# GeoJSON
# ---------------------------------------------------------------------------


def _positions(geometry: dict[str, Any] | None) -> list[list[float]]:
    """Flatten every position of a geometry (including nested collections)."""
    if not isinstance(geometry, dict):
        return []
    if geometry.get("type") == "GeometryCollection":
        return [p for g in geometry.get("geometries") or [] for p in _positions(g)]

    found: list[list[float]] = []

    def walk(node: Any) -> None:
        if isinstance(node, list) and node and all(isinstance(v, (int, float)) for v in node):
            found.append(node)
        elif isinstance(node, list):
            for child in node:
                walk(child)

    walk(geometry.get("coordinates"))
    return [p for p in found if len(p) >= 2]


def compute_bbox(positions: list[list[float]]) -> list[float] | None:
    if not positions:
        return None
    xs = [p[0] for p in positions]
    ys = [p[1] for p in positions]
    return [min(xs), min(ys), max(xs), max(ys)]


def recompute_bboxes(collection: dict[str, Any]) -> dict[str, Any]:
    """Return a copy whose feature and collection bboxes match the coordinates."""
    result = copy.deepcopy(collection)
    all_positions: list[list[float]] = []
    for feature in result.get("features") or []:
        if not isinstance(feature, dict):
            continue
        positions = _positions(feature.get("geometry"))
        geometry = feature.get("geometry")
        if isinstance(geometry, dict):
            geometry.pop("bbox", None)
        bbox = compute_bbox(positions)
        if bbox is None:
            feature.pop("bbox", None)
        else:
            feature["bbox"] = bbox
            all_positions.extend(positions)

    collection_bbox = compute_bbox(all_positions)
    if collection_bbox is None:
        result.pop("bbox", None)
    else:
        result["bbox"] = collection_bbox
    return result


def row_to_feature(row: RowRecord) -> dict[str, Any]:
    geometry: dict[str, Any] | None = None
    raw_coordinates = row.get(GEOMETRY_COORDINATES_COLUMN)
    if row.get(GEOMETRY_TYPE_COLUMN) and raw_coordinates is not None:
        coordinates = json.loads(raw_coordinates) if isinstance(raw_coordinates, str) else raw_coordinates
        geometry = {"type": row[GEOMETRY_TYPE_COLUMN], "coordinates": coordinates}

    reserved = (GEOMETRY_TYPE_COLUMN, GEOMETRY_COORDINATES_COLUMN, FEATURE_ID_COLUMN)
    feature: dict[str, Any] = {
        "type": "Feature",
        "geometry": geometry,
        "properties": {k: v for k, v in row.items() if k not in reserved},
    }
    if row.get(FEATURE_ID_COLUMN) is not None:
        feature["id"] = row[FEATURE_ID_COLUMN]
    return feature


def rows_to_feature_collection(rows: list[RowRecord]) -> dict[str, Any]:
    return {"type": "FeatureCollection", "features": [row_to_feature(row) for row in rows]}


def to_geojson(table: MaterializedTable) -> str:
    """
    Serialize a table as a FeatureCollection.

    Raises:
        InputError: the table carries no geometry at all.
    """
    if table.raw_geometry_payload is not None:
        collection = table.raw_geometry_payload
    elif GEOMETRY_TYPE_COLUMN in table.columns:
        collection = rows_to_feature_collection(table.rows)
    else:
        raise InputError(
            f"{table.format} data has no geometry and cannot be exported as GeoJSON",
            declared_format=table.format,
        )
    return json.dumps(recompute_bboxes(collection), ensure_ascii=False, indent=2)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def default_output_format(table: MaterializedTable) -> OutputFormat:
    source_format = table.format.upper()
    if source_format == "CSV":
        return "csv"
    if source_format in GEO_FORMATS:
        return "geojson"
    return "json"


def suggest_filename(title: str, output_format: str) -> str:
    """ASCII file name from a dataset title ("Bäder in Köln" → baeder-in-koeln.csv)."""
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower().translate(_TRANSLITERATION)).strip("-")
    return f"{slug or 'dataset'}.{output_format}"


def export_table(
    table: MaterializedTable,
    output_format: OutputFormat | None = None,
    *,
    title: str = "dataset",
) -> ExportedFile:
    """
    Serialize a successfully fetched table.

    Raises:
        InputError: the table carries an error, or an unknown output format.
    """
    if table.error is not None:
        raise InputError(f"Cannot export a table that failed to load: {table.error.message}")
    fmt = (output_format or default_output_format(table)).lower()

    if fmt == "csv":
        content = to_csv(table.rows, table.columns)
    elif fmt == "json":
        content = to_json(table.rows)
    elif fmt == "geojson":
        content = to_geojson(table)
    else:
        raise InputError(f"Unknown output format '{fmt}'. Use csv, json or geojson.")

    log.info("table_exported", output_format=fmt, rows=len(table.rows), bytes=len(content))
    return ExportedFile(
        content=content,
        output_format=fmt,
        mime_type=_MIME_TYPES[fmt],
        filename=suggest_filename(title, fmt),
        row_count=len(table.rows),
    )
