"""
query/aggregate.py — In-memory filter / group / aggregate over RowRecords.

Pipeline, always in this order:

    filter  (conjunction of all predicates; a missing column excludes the row)
    group   (ordered tuple of group_by values; no group_by = one global group)
    metrics (null-tolerant: non-numeric values are skipped, never coerced)
    sort    (multi-key, nulls last in both directions)
    limit   (clamped into [1, aggregation_max_rows])

Ordering filters (gt/gte/lt/lte) decide per comparison whether to compare as
numbers or as text; see Comparison.decide().

Usage:
    engine = AggregationEngine()
    result = engine.execute(
        table,
        AggregationRequest(
            group_by=["Bezirk"],
            metrics=[Metric(op="sum", column="Einwohner")],
            filters=[Filter(column="Bezirk", op="neq", value="Mitte")],
            sort=[SortKey(column="sum_Einwohner", direction="desc")],
        ),
    )
    result.rows   # [{"Bezirk": "Pankow", "sum_Einwohner": 80}, ...]
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from functools import cmp_to_key
from typing import Any

import structlog
from pydantic import ValidationError

from opendata_shared.config import settings
from opendata_shared.errors import InputError
from opendata_shared.models import (
    AggregationRequest,
    AggregationResult,
    Filter,
    FilterOp,
    MaterializedTable,
    Metric,
    MetricOp,
    RowRecord,
    SortDirection,
    SortKey,
)
from opendata_shared.values import parse_number, stringify

log = structlog.get_logger(__name__)

_COLUMN_METRICS = frozenset(
    {MetricOp.SUM, MetricOp.AVG, MetricOp.MIN, MetricOp.MAX, MetricOp.COUNT_DISTINCT}
)


class ComparisonMode(str, Enum):
    NUMERIC = "numeric"
    TEXT = "text"


@dataclass(frozen=True)
class Comparison:
    """One ordering comparison with its mode decided up front."""

    mode: ComparisonMode
    left: Any
    right: Any

    @classmethod
    def decide(cls, value: Any, target: Any) -> "Comparison":
        """NUMERIC when both sides parse as finite numbers, TEXT otherwise."""
        left, right = parse_number(value), parse_number(target)
        if left is not None and right is not None:
            return cls(ComparisonMode.NUMERIC, left, right)
        return cls(ComparisonMode.TEXT, stringify(value), stringify(target))

    def ordering(self) -> int:
        return (self.left > self.right) - (self.left < self.right)


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def matches(row: RowRecord, flt: Filter) -> bool:
    """Evaluate one predicate; rows without the column never match."""
    if flt.column not in row:
        return False
    value = row[flt.column]
    op = flt.op

    if op is FilterOp.EQ:
        return stringify(value) == stringify(flt.value)
    if op is FilterOp.NEQ:
        return stringify(value) != stringify(flt.value)
    if op is FilterOp.CONTAINS:
        return stringify(flt.value).lower() in stringify(value).lower()
    if op is FilterOp.IN:
        return stringify(value) in {stringify(v) for v in _as_list(flt.value)}

    ordering = Comparison.decide(value, flt.value).ordering()
    if op is FilterOp.GT:
        return ordering > 0
    if op is FilterOp.GTE:
        return ordering >= 0
    if op is FilterOp.LT:
        return ordering < 0
    return ordering <= 0


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


def _numbers(rows: Iterable[RowRecord], column: str) -> list[int | float]:
    return [n for n in (parse_number(row.get(column)) for row in rows) if n is not None]


def _sum(rows: list[RowRecord], column: str) -> int | float:
    return sum(_numbers(rows, column))


def _avg(rows: list[RowRecord], column: str) -> float | None:
    numbers = _numbers(rows, column)
    return sum(numbers) / len(numbers) if numbers else None


def _min(rows: list[RowRecord], column: str) -> int | float | None:
    numbers = _numbers(rows, column)
    return min(numbers) if numbers else None


def _max(rows: list[RowRecord], column: str) -> int | float | None:
    numbers = _numbers(rows, column)
    return max(numbers) if numbers else None


def _count_distinct(rows: list[RowRecord], column: str) -> int:
    return len({stringify(row[column]) for row in rows if row.get(column) is not None})


_METRIC_FUNCS: dict[MetricOp, Callable[[list[RowRecord], str], Any]] = {
    MetricOp.SUM: _sum,
    MetricOp.AVG: _avg,
    MetricOp.MIN: _min,
    MetricOp.MAX: _max,
    MetricOp.COUNT_DISTINCT: _count_distinct,
}


def evaluate_metric(metric: Metric, rows: list[RowRecord]) -> Any:
    if metric.op is MetricOp.COUNT:
        return len(rows)
    return _METRIC_FUNCS[metric.op](rows, metric.column or "")


# ---------------------------------------------------------------------------
# Sorting
# ---------------------------------------------------------------------------


def _is_numeric_column(rows: list[RowRecord], column: str) -> bool:
    present = [row.get(column) for row in rows if row.get(column) is not None]
    return bool(present) and all(parse_number(v) is not None for v in present)


def sort_rows(rows: list[RowRecord], keys: list[SortKey]) -> list[RowRecord]:
    """Stable multi-key sort; None sorts after every value in either direction."""
    numeric = {key.column: _is_numeric_column(rows, key.column) for key in keys}

    def compare(a: RowRecord, b: RowRecord) -> int:
        for key in keys:
            left, right = a.get(key.column), b.get(key.column)
            if left is None and right is None:
                continue
            if left is None:
                return 1
            if right is None:
                return -1
            if numeric[key.column]:
                result = Comparison(ComparisonMode.NUMERIC, parse_number(left), parse_number(right)).ordering()
            else:
                result = Comparison(ComparisonMode.TEXT, stringify(left), stringify(right)).ordering()
            if result:
                return -result if key.direction is SortDirection.DESC else result
        return 0

    return sorted(rows, key=cmp_to_key(compare))


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AggregationEngine:
    def __init__(self, default_limit: int | None = None, max_limit: int | None = None) -> None:
        self.default_limit = default_limit or settings.aggregation_default_rows
        self.max_limit = max_limit or settings.aggregation_max_rows

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            limit = self.default_limit
        return max(1, min(limit, self.max_limit))

    @staticmethod
    def coerce_request(request: AggregationRequest | dict[str, Any]) -> AggregationRequest:
        if isinstance(request, AggregationRequest):
            return request
        try:
            return AggregationRequest.model_validate(request)
        except ValidationError as exc:
            raise InputError(f"Invalid aggregation request: {exc}") from exc

    @staticmethod
    def validate(request: AggregationRequest) -> None:
        """
        Reject requests that cannot be computed.

        Raises:
            InputError: no metrics, a column metric without a column, duplicate
                output names, or a sort key that is not an output column.
        """
        if not request.metrics:
            raise InputError("Aggregation request needs at least one metric")
        for metric in request.metrics:
            if metric.op in _COLUMN_METRICS and not metric.column:
                raise InputError(f"Metric '{metric.op.value}' requires a column")

        output_columns = [*request.group_by, *(m.output_name for m in request.metrics)]
        duplicates = {c for c in output_columns if output_columns.count(c) > 1}
        if duplicates:
            raise InputError(f"Duplicate output column(s): {', '.join(sorted(duplicates))}")

        for key in request.sort:
            if key.column not in output_columns:
                raise InputError(
                    f"Cannot sort by '{key.column}'. Available columns: {', '.join(output_columns)}"
                )

    def execute(
        self,
        table: MaterializedTable,
        request: AggregationRequest | dict[str, Any],
    ) -> AggregationResult:
        """
        Run filter → group → metrics → sort → limit over a materialized table.

        Raises:
            InputError: invalid request, or a table that failed to load.
        """
        request = self.coerce_request(request)
        self.validate(request)
        if table.error is not None:
            raise InputError(f"Cannot aggregate a table that failed to load: {table.error.message}")

        matched = [row for row in table.rows if all(matches(row, f) for f in request.filters)]

        groups: dict[tuple[str, ...], tuple[list[Any], list[RowRecord]]] = {}
        if not request.group_by:
            groups[()] = ([], matched)
        else:
            for row in matched:
                values = [row.get(column) for column in request.group_by]
                key = tuple(stringify(v) for v in values)
                groups.setdefault(key, (values, []))[1].append(row)

        output: list[RowRecord] = []
        for values, members in groups.values():
            out: RowRecord = dict(zip(request.group_by, values))
            for metric in request.metrics:
                out[metric.output_name] = evaluate_metric(metric, members)
            output.append(out)

        if request.sort:
            output = sort_rows(output, request.sort)

        limit = self.clamp_limit(request.limit)
        log.debug(
            "aggregation_executed",
            input_rows=len(table.rows),
            matched_rows=len(matched),
            groups=len(output),
            limit=limit,
        )
        return AggregationResult(
            rows=output[:limit],
            columns=[*request.group_by, *(m.output_name for m in request.metrics)],
            group_count=len(output),
            matched_row_count=len(matched),
            truncated=len(output) > limit,
        )
