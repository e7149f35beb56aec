"""
tests/test_transforms/test_normalize.py — Payload → RowRecord normalizers.
"""

from __future__ import annotations

import json

import pytest

from opendata_shared.errors import FormatError
from opendata_pipeline.transforms.normalize import (
    csv_to_table,
    excel_to_table,
    find_largest_record_array,
    geojson_to_table,
    is_geojson,
    json_to_table,
    kml_to_geojson,
    sniff_delimiter,
)


# ---------------------------------------------------------------------------
# Delimited text
# ---------------------------------------------------------------------------

class TestCsv:
    def test_values_stay_strings(self):
        table = csv_to_table("plz,einwohner,anteil\n01067,1200,0.5\n")
        assert table.rows == [{"plz": "01067", "einwohner": "1200", "anteil": "0.5"}]

    def test_semicolon_and_quotes(self, fixture_path):
        table = csv_to_table((fixture_path / "einwohner.csv").read_text(encoding="utf-8"))
        assert table.columns == ["Bezirk", "PLZ", "Einwohner", "Stichtag"]
        assert table.rows[2]["Bezirk"] == "Friedrichshain; Kreuzberg"
        assert table.rows[3]["Einwohner"] == ""

    @pytest.mark.parametrize(
        "header,expected",
        [
            ("a,b,c", ","),
            ("a;b;c", ";"),
            ("a\tb\tc", "\t"),
            ("a|b|c", "|"),
            ("single", ","),
            ("a;b,c;d", ";"),
        ],
    )
    def test_sniff_delimiter(self, header, expected):
        assert sniff_delimiter(f"\n{header}\n1\n") == expected

    def test_blank_lines_dropped(self):
        table = csv_to_table("a,b\n1,2\n,\n3,4\n")
        assert [r["a"] for r in table.rows] == ["1", "3"]

    def test_html_doctype_rejected(self):
        with pytest.raises(FormatError, match="HTML") as exc_info:
            csv_to_table("<!DOCTYPE html>\n<html><body>Wartungsarbeiten</body></html>")
        assert exc_info.value.observed_format == "HTML"

    def test_header_only_is_rejected(self):
        with pytest.raises(FormatError, match="no valid data"):
            csv_to_table("a,b,c\n")


# ---------------------------------------------------------------------------
# JSON
# ---------------------------------------------------------------------------

class TestLargestRecordArray:
    def test_top_level_array(self):
        assert find_largest_record_array([{"a": 1}]) == [{"a": 1}]

    def test_nested_envelope(self):
        doc = {"data": {"page": 1, "items": [{"a": 1}, {"a": 2}]}, "errors": [{"msg": "x"}]}
        assert find_largest_record_array(doc) == [{"a": 1}, {"a": 2}]

    def test_first_array_wins_ties(self):
        doc = {"first": [{"a": 1}, {"a": 2}], "second": [{"b": 1}, {"b": 2}]}
        assert find_largest_record_array(doc) == [{"a": 1}, {"a": 2}]

    def test_arrays_inside_plain_arrays(self):
        doc = [[{"a": 1}], [{"b": 1}, {"b": 2}]]
        assert find_largest_record_array(doc) == [{"b": 1}, {"b": 2}]

    def test_primitive_arrays_ignored(self):
        assert find_largest_record_array({"values": [1, 2, 3], "tags": []}) is None


class TestJson:
    def test_nested_values_serialized(self):
        table = json_to_table({"results": [{"id": 1, "tags": ["a", "b"], "meta": {"x": 1}}]})
        assert table.rows[0]["tags"] == '["a", "b"]'
        assert table.rows[0]["meta"] == '{"x": 1}'

    def test_columns_are_union_of_keys(self):
        table = json_to_table([{"a": 1}, {"b": 2}, {"a": 3, "c": 4}])
        assert table.columns == ["a", "b", "c"]
        assert table.total_row_count == 3

    def test_no_array_found(self):
        with pytest.raises(FormatError, match="No data arrays"):
            json_to_table({"status": "ok", "count": 0})

    def test_geojson_routed(self):
        doc = {"type": "FeatureCollection", "features": [{"type": "Feature", "geometry": None, "properties": {"a": 1}}]}
        assert json_to_table(doc).format == "GeoJSON"


# ---------------------------------------------------------------------------
# GeoJSON
# ---------------------------------------------------------------------------

class TestGeoJson:
    def test_is_geojson(self):
        assert is_geojson({"type": "FeatureCollection", "features": []})
        assert is_geojson({"type": "Feature", "geometry": None, "properties": {}})
        assert not is_geojson({"type": "FeatureCollection"})
        assert not is_geojson([{"type": "Feature"}])

    def test_feature_rows(self):
        doc = {
            "type": "FeatureCollection",
            "features": [
                {
                    "type": "Feature",
                    "id": 7,
                    "geometry": {"type": "Point", "coordinates": [13.4, 52.5]},
                    "properties": {"name": "Alex"},
                },
                {"type": "Feature", "geometry": None, "properties": {"name": "Nowhere"}},
                {
                    "type": "Feature",
                    "geometry": {"type": "GeometryCollection", "geometries": []},
                    "properties": None,
                },
            ],
        }
        table = geojson_to_table(doc)

        assert table.rows[0] == {
            "name": "Alex",
            "geometry_type": "Point",
            "geometry_coordinates": json.dumps([13.4, 52.5]),
            "feature_id": 7,
        }
        assert table.rows[1] == {"name": "Nowhere"}
        assert table.rows[2] == {"geometry_type": "GeometryCollection"}
        assert table.raw_geometry_payload is doc

    def test_single_feature(self):
        table = geojson_to_table({"type": "Feature", "geometry": None, "properties": {"a": 1}})
        assert table.rows == [{"a": 1}]

    def test_empty_collection(self):
        with pytest.raises(FormatError, match="No features"):
            geojson_to_table({"type": "FeatureCollection", "features": []})

    def test_remote_total_kept(self):
        doc = {"type": "FeatureCollection", "features": [{"type": "Feature", "geometry": None, "properties": {}}]}
        table = geojson_to_table(doc, format="WFS", total_row_count=900)
        assert table.total_row_count == 900
        assert table.is_preview


# ---------------------------------------------------------------------------
# KML
# ---------------------------------------------------------------------------

class TestKml:
    def test_placemarks(self, fixture_path):
        collection = kml_to_geojson((fixture_path / "spielplaetze.kml").read_text(encoding="utf-8"))
        point, polygon, multi = collection["features"]

        assert point["id"] == "sp-1"
        assert point["geometry"] == {"type": "Point", "coordinates": [13.3985, 52.5236, 0.0]}
        assert point["properties"] == {
            "name": "Monbijoupark",
            "description": "Wasserspielplatz",
            "bezirk": "Mitte",
            "flaeche_m2": "1200",
        }

        assert polygon["geometry"]["type"] == "Polygon"
        outer, hole = polygon["geometry"]["coordinates"]
        assert len(outer) == 5
        assert len(hole) == 4

        assert multi["geometry"]["type"] == "GeometryCollection"
        assert [g["type"] for g in multi["geometry"]["geometries"]] == ["Point", "LineString"]

    def test_invalid_xml(self):
        with pytest.raises(FormatError, match="Invalid KML"):
            kml_to_geojson("<kml><Placemark>")

    def test_placemark_without_geometry(self):
        collection = kml_to_geojson("<kml><Placemark><name>x</name></Placemark></kml>")
        assert collection["features"][0]["geometry"] is None


# ---------------------------------------------------------------------------
# Spreadsheets
# ---------------------------------------------------------------------------

class TestExcel:
    def test_garbage_workbook(self):
        with pytest.raises(FormatError):
            excel_to_table(b"definitely not a workbook", format="XLSX")

    def test_first_sheet_only_header_defines_columns(self, xlsx_two_sheets):
        table = excel_to_table(xlsx_two_sheets, format="XLSX")

        assert table.format == "XLSX"
        assert table.columns == ["PLZ", "Bezirk", "Anzahl"]
        assert [r["Bezirk"] for r in table.rows] == ["Dresden-Altstadt", "Mitte", "Neukölln"]
        assert all("Quelle" not in r for r in table.rows)
        # identifiers stay strings
        assert table.rows[0]["PLZ"] == "01067"
        assert table.rows[1]["Anzahl"] == 7
