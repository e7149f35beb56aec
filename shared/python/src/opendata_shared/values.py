"""
values.py — Scalar parsing helpers shared by the sampler and the query engine.

Open-data tables keep every delimited-text value as a string, so numeric,
boolean and date checks have to work on raw strings as well as on JSON
scalars.

Usage:
    from opendata_shared.values import parse_number, stringify

    parse_number("1200")       # 1200
    parse_number(" 3.5 ")      # 3.5
    parse_number("n/a")        # None
    parse_number(True)         # None, booleans are not numbers
    stringify(None)            # ""
    stringify(False)           # "false"
"""

from __future__ import annotations

import math
import re
from typing import Any

_INT_RE = re.compile(r"^[+-]?\d+$")
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_DMY_DATE_RE = re.compile(r"^\d{2}[/.]\d{2}[/.]\d{4}")

BOOLEAN_LITERALS: frozenset[str] = frozenset({"true", "false", "0", "1"})


def parse_number(value: Any) -> int | float | None:
    """Return value as a finite int/float, or None when it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    if _INT_RE.match(text):
        return int(text)
    try:
        number = float(text)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def stringify(value: Any) -> str:
    """String form used for equality, distinct counting and text ordering."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def is_boolean_like(value: Any) -> bool:
    if isinstance(value, bool):
        return True
    return stringify(value).strip().lower() in BOOLEAN_LITERALS


def is_date_like(value: Any) -> bool:
    text = stringify(value).strip()
    return bool(_ISO_DATE_RE.match(text) or _DMY_DATE_RE.match(text))
