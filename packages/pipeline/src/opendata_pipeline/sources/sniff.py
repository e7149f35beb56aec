"""
sources/sniff.py — Decide what a downloaded payload really is.

Portal metadata is frequently wrong ("CSV" that is an XLSX workbook, "JSON"
that is GeoJSON, "CSV" that is the portal's HTML error page), so the bytes
always win over the declared format. Predicates run in a fixed order and the
first match decides:

  1. OLE2 compound document magic            → XLS
  2. ZIP magic with xl/workbook.xml inside   → XLSX
  3. any other ZIP                           → ArchiveNotSupported
  4. <!doctype html / <html                  → FormatError naming HTML
  5. <kml in the document head, or XML
     labelled KML (declared or content type) → KML
  6. any other XML document                  → FormatError naming XML
  7. starts with { or [                      → JSON / GeoJSON
  8. everything else                         → delimited text (fallback)

The declared format is only consulted for archives (before any download, see
fetcher.is_archive_resource), for protocol endpoints and to label XML as KML.
"""

from __future__ import annotations

import io
import json
import zipfile
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from opendata_shared.errors import ArchiveNotSupported, FormatError
from opendata_pipeline.sources.http import DownloadedPayload
from opendata_pipeline.transforms.normalize import is_geojson, looks_like_html

OLE2_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"
ZIP_MAGICS: tuple[bytes, ...] = (b"PK\x03\x04", b"PK\x05\x06")

_HEAD_CHARS = 2048


class PayloadKind(str, Enum):
    XLS = "XLS"
    XLSX = "XLSX"
    KML = "KML"
    JSON = "JSON"
    GEOJSON = "GeoJSON"
    DELIMITED = "CSV"


@dataclass
class SniffResult:
    kind: PayloadKind
    text: str | None = None
    # Parsed JSON document for JSON / GeoJSON payloads
    document: Any = field(default=None, repr=False)


@dataclass
class _Candidate:
    payload: DownloadedPayload
    declared_format: str
    _text: str | None = None

    @property
    def text(self) -> str:
        if self._text is None:
            self._text = self.payload.text
        return self._text

    @property
    def head(self) -> str:
        return self.text.lstrip("\ufeff \t\r\n")[:_HEAD_CHARS].lower()


Predicate = Callable[[_Candidate], SniffResult | None]


def _ole2(candidate: _Candidate) -> SniffResult | None:
    if candidate.payload.content.startswith(OLE2_MAGIC):
        return SniffResult(PayloadKind.XLS)
    return None


def _zip_names(content: bytes) -> list[str] | None:
    if not content.startswith(ZIP_MAGICS):
        return None
    try:
        with zipfile.ZipFile(io.BytesIO(content)) as archive:
            return archive.namelist()
    except zipfile.BadZipFile:
        return []


def _xlsx(candidate: _Candidate) -> SniffResult | None:
    names = _zip_names(candidate.payload.content)
    if names and "xl/workbook.xml" in names:
        return SniffResult(PayloadKind.XLSX)
    return None


def _archive(candidate: _Candidate) -> SniffResult | None:
    if _zip_names(candidate.payload.content) is not None:
        raise ArchiveNotSupported(
            "Downloaded file is a ZIP archive. Archives are not unpacked; "
            f"download it directly: {candidate.payload.url}",
            url=candidate.payload.url,
            declared_format=candidate.declared_format or None,
            observed_format="ZIP",
        )
    return None


def _html(candidate: _Candidate) -> SniffResult | None:
    if looks_like_html(candidate.head):
        declared = candidate.declared_format or "data"
        raise FormatError(
            f"Server returned an HTML page instead of {declared}. The download "
            "link may point to a landing page or require a browser.",
            url=candidate.payload.url,
            declared_format=candidate.declared_format or None,
            observed_format="HTML",
        )
    return None


def _kml(candidate: _Candidate) -> SniffResult | None:
    if "<kml" in candidate.head:
        return SniffResult(PayloadKind.KML, text=candidate.text)
    # XML whose <kml> root sits behind a long prolog
    labelled = candidate.declared_format == "KML" or "kml" in candidate.payload.content_type.lower()
    if labelled and candidate.head.startswith("<"):
        return SniffResult(PayloadKind.KML, text=candidate.text)
    return None


def _other_xml(candidate: _Candidate) -> SniffResult | None:
    if candidate.head.startswith("<"):
        raise FormatError(
            "Server returned an XML document that is neither KML nor a feature service response",
            url=candidate.payload.url,
            declared_format=candidate.declared_format or None,
            observed_format="XML",
        )
    return None


def _json(candidate: _Candidate) -> SniffResult | None:
    if not candidate.head.startswith(("{", "[")):
        return None
    try:
        document = json.loads(candidate.text.lstrip("\ufeff"))
    except json.JSONDecodeError as exc:
        raise FormatError(
            f"Invalid JSON: {exc}",
            url=candidate.payload.url,
            declared_format=candidate.declared_format or None,
            observed_format="JSON",
        ) from exc
    kind = PayloadKind.GEOJSON if is_geojson(document) else PayloadKind.JSON
    return SniffResult(kind, text=candidate.text, document=document)


SNIFF_CHAIN: tuple[Predicate, ...] = (
    _ole2,
    _xlsx,
    _archive,
    _html,
    _kml,
    _other_xml,
    _json,
)


def sniff(payload: DownloadedPayload, declared_format: str = "") -> SniffResult:
    """
    Run SNIFF_CHAIN over a payload; delimited text when nothing matches.

    Raises:
        ArchiveNotSupported: ZIP content that is not a workbook.
        FormatError: HTML / foreign XML pages and malformed JSON.
    """
    candidate = _Candidate(payload=payload, declared_format=declared_format.strip().upper())
    if not payload.content.strip():
        raise FormatError(
            "Server returned an empty response",
            url=payload.url,
            declared_format=candidate.declared_format or None,
        )
    for predicate in SNIFF_CHAIN:
        result = predicate(candidate)
        if result is not None:
            return result
    return SniffResult(PayloadKind.DELIMITED, text=candidate.text)
