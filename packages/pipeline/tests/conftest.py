"""
tests/conftest.py — Shared pytest fixtures for the pipeline test suite.

Provides:
  fixture_path()     — resolves paths to tests/fixtures/
  mock_http()        — configured respx router for faking HTTP responses
  FakeWFS            — callable respx side effect emulating a WFS 2.0 server
  einwohner_rows     — small district table used by the query tests
  geojson_25833      — FeatureCollection declared in ETRS89 / UTM 33N
  xlsx_two_sheets    — XLSX workbook; sheet 1 holds the data, sheet 2 notes
"""

from __future__ import annotations

import io
import json
import zipfile
from pathlib import Path
from typing import Any
from xml.sax.saxutils import escape

import httpx
import pytest
import respx
import structlog

from opendata_shared.models import MaterializedTable

FIXTURES_DIR = Path(__file__).parent / "fixtures"

WFS_URL = "https://gdi.berlin.de/services/wfs/kita"


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def fixture_path() -> Path:
    return FIXTURES_DIR


# ---------------------------------------------------------------------------
# respx HTTP mock router
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_http():
    """
    Activate the respx mock router for all httpx requests.

    Usage in tests:
        def test_something(mock_http):
            mock_http.get("https://...").mock(return_value=httpx.Response(200, json={...}))
    """
    with respx.mock(assert_all_called=False) as router:
        yield router


# ---------------------------------------------------------------------------
# Fake WFS server
# ---------------------------------------------------------------------------

def point_feature(index: int) -> dict[str, Any]:
    return {
        "type": "Feature",
        "id": f"kitas.{index}",
        "geometry": {"type": "Point", "coordinates": [13.4 + index / 100000, 52.5]},
        "properties": {"name": f"Kita {index}", "plaetze": 20 + index % 50},
    }


class FakeWFS:
    """
    respx side effect answering GetCapabilities, hits and paged GetFeature.

    Every request's query parameters are recorded (upper-cased keys) in
    `calls`; `raw_calls` keeps the untouched httpx.URL objects.
    """

    def __init__(
        self,
        total: int,
        *,
        hits_body: str | None = None,
        page_content_type: str = "application/json",
    ) -> None:
        self.total = total
        self.hits_body = hits_body
        self.page_content_type = page_content_type
        self.calls: list[dict[str, str]] = []
        self.raw_calls: list[httpx.URL] = []
        self.route: respx.Route | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        params = {k.upper(): v for k, v in request.url.params.multi_items()}
        self.calls.append(params)
        self.raw_calls.append(request.url)

        if params.get("REQUEST") == "GetCapabilities":
            return httpx.Response(
                200,
                content=(FIXTURES_DIR / "wfs_capabilities.xml").read_bytes(),
                headers={"content-type": "application/xml"},
            )
        if params.get("RESULTTYPE") == "hits":
            body = self.hits_body
            if body is None:
                body = (
                    '<wfs:FeatureCollection xmlns:wfs="http://www.opengis.net/wfs/2.0" '
                    f'numberMatched="{self.total}" numberReturned="0"/>'
                )
            return httpx.Response(200, text=body, headers={"content-type": "application/xml"})

        count = int(params["COUNT"])
        start = int(params.get("STARTINDEX", "0"))
        features = [point_feature(i) for i in range(start, min(start + count, self.total))]
        if "json" not in self.page_content_type:
            return httpx.Response(
                200,
                text="<ows:ExceptionReport/>",
                headers={"content-type": self.page_content_type},
            )
        return httpx.Response(
            200,
            content=json.dumps({"type": "FeatureCollection", "features": features}).encode(),
            headers={"content-type": self.page_content_type},
        )

    @property
    def page_calls(self) -> list[dict[str, str]]:
        return [
            c for c in self.calls
            if c.get("REQUEST") == "GetFeature" and "RESULTTYPE" not in c
        ]


@pytest.fixture
def fake_wfs_factory(mock_http):
    """Route every request to WFS_URL through a FakeWFS with the given total."""

    def factory(total: int, **kwargs: Any) -> FakeWFS:
        server = FakeWFS(total, **kwargs)
        server.route = mock_http.get(url__startswith=WFS_URL).mock(side_effect=server)
        return server

    return factory


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

@pytest.fixture
def einwohner_rows() -> list[dict[str, Any]]:
    return [
        {"Bezirk": "Mitte", "Jahr": "2022", "Einwohner": "100"},
        {"Bezirk": "Pankow", "Jahr": "2022", "Einwohner": "50"},
        {"Bezirk": "Pankow", "Jahr": "2023", "Einwohner": "30"},
        {"Bezirk": "Neukölln", "Jahr": "2023", "Einwohner": "20"},
        {"Bezirk": "Spandau", "Jahr": "2023", "Einwohner": "k.A."},
        {"Bezirk": None, "Jahr": "2023", "Einwohner": "5"},
    ]


@pytest.fixture
def einwohner_table(einwohner_rows) -> MaterializedTable:
    return MaterializedTable.from_rows("CSV", einwohner_rows)


@pytest.fixture
def geojson_25833(fixture_path: Path) -> dict[str, Any]:
    return json.loads((fixture_path / "bezirke_25833.geojson").read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Spreadsheets
# ---------------------------------------------------------------------------

_SHEET_NS = "http://schemas.openxmlformats.org/spreadsheetml/2006/main"
_REL_NS = "http://schemas.openxmlformats.org/officeDocument/2006/relationships"
_PKG_REL_NS = "http://schemas.openxmlformats.org/package/2006/relationships"


def _column_letter(index: int) -> str:
    return chr(ord("A") + index)


def _sheet_xml(rows: list[list[Any]]) -> str:
    cells_by_row = []
    for r, row in enumerate(rows, start=1):
        cells = []
        for c, value in enumerate(row):
            ref = f"{_column_letter(c)}{r}"
            if isinstance(value, (int, float)):
                cells.append(f'<c r="{ref}"><v>{value}</v></c>')
            else:
                cells.append(f'<c r="{ref}" t="inlineStr"><is><t>{escape(value)}</t></is></c>')
        cells_by_row.append(f'<row r="{r}">{"".join(cells)}</row>')
    return f'<worksheet xmlns="{_SHEET_NS}"><sheetData>{"".join(cells_by_row)}</sheetData></worksheet>'


def build_xlsx(sheets: dict[str, list[list[Any]]]) -> bytes:
    """Minimal OOXML workbook with inline-string cells, one part per sheet."""
    names = list(sheets)
    sheet_entries = "".join(
        f'<sheet name="{escape(name)}" sheetId="{i}" r:id="rId{i}"/>' for i, name in enumerate(names, start=1)
    )
    sheet_rels = "".join(
        f'<Relationship Id="rId{i}" Type="{_REL_NS}/worksheet" Target="worksheets/sheet{i}.xml"/>'
        for i in range(1, len(names) + 1)
    )
    sheet_overrides = "".join(
        f'<Override PartName="/xl/worksheets/sheet{i}.xml" '
        'ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.worksheet+xml"/>'
        for i in range(1, len(names) + 1)
    )
    parts = {
        "[Content_Types].xml": (
            '<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
            '<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml"/>'
            '<Default Extension="xml" ContentType="application/xml"/>'
            '<Override PartName="/xl/workbook.xml" '
            'ContentType="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet.main+xml"/>'
            f"{sheet_overrides}</Types>"
        ),
        "_rels/.rels": (
            f'<Relationships xmlns="{_PKG_REL_NS}">'
            f'<Relationship Id="rId1" Type="{_REL_NS}/officeDocument" Target="xl/workbook.xml"/>'
            "</Relationships>"
        ),
        "xl/workbook.xml": (
            f'<workbook xmlns="{_SHEET_NS}" xmlns:r="{_REL_NS}"><sheets>{sheet_entries}</sheets></workbook>'
        ),
        "xl/_rels/workbook.xml.rels": f'<Relationships xmlns="{_PKG_REL_NS}">{sheet_rels}</Relationships>',
    }
    for i, name in enumerate(names, start=1):
        parts[f"xl/worksheets/sheet{i}.xml"] = _sheet_xml(sheets[name])

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
        for part, xml in parts.items():
            archive.writestr(part, '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>' + xml)
    return buffer.getvalue()


@pytest.fixture
def xlsx_two_sheets() -> bytes:
    return build_xlsx(
        {
            "Einrichtungen": [
                ["PLZ", "Bezirk", "Anzahl"],
                ["01067", "Dresden-Altstadt", 12],
                ["10115", "Mitte", 7],
                ["12043", "Neukölln", 3],
            ],
            "Hinweise": [
                ["Quelle", "Stand"],
                ["Statistisches Landesamt", "2024-01-01"],
            ],
        }
    )


# ---------------------------------------------------------------------------
# Global logging state isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_structlog():
    """CLI tests call configure_logging(); don't leak its level filter into later tests."""
    yield
    structlog.reset_defaults()
