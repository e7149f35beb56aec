"""
transforms/sample.py — Preview rows and per-column type inference.

DataSampler never touches the table it is given; it reads the first
`preview_rows` rows and up to `type_inference_sample` non-empty values per
column and reports what it sees.

Inference votes in a fixed order, each needing >= 80 % of the sampled values:
    number  → parse_number() succeeds
    boolean → true / false / 0 / 1
    date    → YYYY-MM-DD..., DD/MM/YYYY or DD.MM.YYYY
    string  → anything else
A column without a single non-empty value is "unknown".
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import structlog

from opendata_shared.config import settings
from opendata_shared.models import (
    ColumnProfile,
    ColumnType,
    DataSample,
    MaterializedTable,
    RowRecord,
)
from opendata_shared.values import is_boolean_like, is_date_like, is_empty, parse_number

log = structlog.get_logger(__name__)

MAJORITY_THRESHOLD = 0.8

_VOTES: tuple[tuple[ColumnType, Callable[[Any], bool]], ...] = (
    (ColumnType.NUMBER, lambda v: parse_number(v) is not None),
    (ColumnType.BOOLEAN, is_boolean_like),
    (ColumnType.DATE, is_date_like),
)


def infer_column_type(values: list[Any]) -> ColumnType:
    """Majority-vote type of already non-empty sample values."""
    if not values:
        return ColumnType.UNKNOWN
    for column_type, predicate in _VOTES:
        hits = sum(1 for v in values if predicate(v))
        if hits / len(values) >= MAJORITY_THRESHOLD:
            return column_type
    return ColumnType.STRING


class DataSampler:
    def __init__(
        self,
        preview_rows: int | None = None,
        inference_sample: int | None = None,
    ) -> None:
        self.preview_rows = preview_rows or settings.preview_rows
        self.inference_sample = inference_sample or settings.type_inference_sample

    def profile_column(self, rows: list[RowRecord], column: str) -> ColumnProfile:
        values: list[Any] = []
        for row in rows:
            value = row.get(column)
            if is_empty(value):
                continue
            values.append(value)
            if len(values) >= self.inference_sample:
                break
        return ColumnProfile(name=column, type=infer_column_type(values), non_empty=len(values))

    def sample(self, table: MaterializedTable) -> DataSample:
        """Build the preview of a successfully materialized table."""
        sample_rows = [dict(row) for row in table.rows[: self.preview_rows]]
        profiles = [self.profile_column(table.rows, column) for column in table.columns]
        is_truncated = table.is_preview or table.total_row_count > len(sample_rows)

        log.debug(
            "table_sampled",
            format=table.format,
            total_rows=table.total_row_count,
            columns=len(profiles),
        )
        return DataSample(
            sample_rows=sample_rows,
            total_rows=table.total_row_count,
            is_truncated=is_truncated,
            columns=profiles,
            summary=self.summarize(table, sample_rows, profiles),
        )

    @staticmethod
    def summarize(
        table: MaterializedTable,
        sample_rows: list[RowRecord],
        profiles: list[ColumnProfile],
    ) -> str:
        count = f"{table.total_row_count}+" if table.truncated else str(table.total_row_count)
        lines = [
            f"{table.format} dataset with {count} rows and {len(profiles)} columns.",
        ]
        if len(sample_rows) < table.total_row_count or table.truncated:
            lines.append(f"Showing the first {len(sample_rows)} rows.")
        if profiles:
            lines.append(
                "Columns: " + ", ".join(f"{p.name} ({p.type.value})" for p in profiles)
            )
        lines.extend(table.warnings)
        return "\n".join(lines)
