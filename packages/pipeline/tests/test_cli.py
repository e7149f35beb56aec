"""
tests/test_cli.py — Click commands driven end to end against mocked HTTP.
"""

from __future__ import annotations

import json

import httpx
import pytest
from click.testing import CliRunner

from opendata_pipeline.cli import main

CSV_URL = "https://daten.berlin.de/einwohner.csv"


@pytest.fixture
def csv_resource(mock_http, fixture_path):
    mock_http.get(CSV_URL).mock(
        return_value=httpx.Response(
            200,
            content=(fixture_path / "einwohner.csv").read_bytes(),
            headers={"content-type": "text/csv"},
        )
    )


def _invoke(*args: str, **kwargs):
    return CliRunner().invoke(main, ["--log-level", "ERROR", *args], **kwargs)


def test_preview_prints_summary(csv_resource):
    result = _invoke("preview", CSV_URL)

    assert result.exit_code == 0, result.output
    assert "CSV dataset with 4 rows and 4 columns." in result.output
    assert "Einwohner (number)" in result.output


def test_aggregate_from_argument(csv_resource):
    request = {
        "group_by": ["Bezirk"],
        "metrics": [{"op": "sum", "column": "Einwohner"}],
        "sort": [{"column": "sum_Einwohner", "direction": "desc"}],
        "limit": 2,
    }
    result = _invoke("aggregate", CSV_URL, json.dumps(request))

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["rows"] == [
        {"Bezirk": "Pankow", "sum_Einwohner": 410000},
        {"Bezirk": "Friedrichshain; Kreuzberg", "sum_Einwohner": 293000},
    ]
    assert payload["truncated"] is True


def test_aggregate_from_stdin(csv_resource):
    result = _invoke("aggregate", CSV_URL, "-", input='{"metrics": [{"op": "count"}]}')

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["rows"] == [{"count_rows": 4}]


def test_aggregate_rejects_bad_json():
    result = _invoke("aggregate", CSV_URL, "{not json")

    assert result.exit_code == 1
    assert "not valid JSON" in result.output


def test_aggregate_reports_invalid_request(csv_resource):
    result = _invoke("aggregate", CSV_URL, '{"metrics": []}')

    assert result.exit_code == 1
    assert "at least one metric" in result.output


def test_download_writes_file(csv_resource, tmp_path):
    target = tmp_path / "einwohner.json"
    result = _invoke("download", CSV_URL, "--output-format", "json", "-o", str(target))

    assert result.exit_code == 0, result.output
    rows = json.loads(target.read_text(encoding="utf-8"))
    assert [r["Bezirk"] for r in rows] == [
        "Mitte",
        "Pankow",
        "Friedrichshain; Kreuzberg",
        "Neukölln",
    ]


def test_download_fetch_error(mock_http):
    mock_http.get(CSV_URL).mock(return_value=httpx.Response(404))
    result = _invoke("download", CSV_URL)

    assert result.exit_code == 1
    assert "404" in result.output
