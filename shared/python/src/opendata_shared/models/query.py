"""
models/query.py — Aggregation request/result models and sampler output.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from opendata_shared.models.tables import RowRecord


class FilterOp(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    CONTAINS = "contains"
    IN = "in"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"


class MetricOp(str, Enum):
    COUNT = "count"
    SUM = "sum"
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    COUNT_DISTINCT = "count_distinct"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


class Metric(BaseModel):
    op: MetricOp
    column: str | None = None
    alias: str | None = None

    @property
    def output_name(self) -> str:
        if self.alias:
            return self.alias
        return f"{self.op.value}_{self.column if self.column else 'rows'}"


class Filter(BaseModel):
    column: str
    op: FilterOp
    value: Any = None


class SortKey(BaseModel):
    column: str
    direction: SortDirection = SortDirection.ASC

    @field_validator("direction", mode="before")
    @classmethod
    def lower_direction(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class AggregationRequest(BaseModel):
    """
    Declarative query: filter → group → metrics → sort → limit.

    Matches the JSON shape accepted by the CLI and the query service:
        {"group_by": ["B"], "metrics": [{"op": "sum", "column": "P"}],
         "filters": [{"column": "B", "op": "neq", "value": "Mitte"}],
         "sort": [{"column": "sum_P", "direction": "desc"}], "limit": 20}
    """

    group_by: list[str] = Field(default_factory=list)
    metrics: list[Metric] = Field(default_factory=list)
    filters: list[Filter] = Field(default_factory=list)
    sort: list[SortKey] = Field(default_factory=list)
    limit: int | None = None


class AggregationResult(BaseModel):
    rows: list[RowRecord] = Field(default_factory=list)
    columns: list[str] = Field(default_factory=list)
    group_count: int = 0
    matched_row_count: int = 0
    truncated: bool = False


class ColumnType(str, Enum):
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    STRING = "string"
    UNKNOWN = "unknown"


class ColumnProfile(BaseModel):
    name: str
    type: ColumnType
    non_empty: int = 0


class DataSample(BaseModel):
    sample_rows: list[RowRecord] = Field(default_factory=list)
    total_rows: int = 0
    is_truncated: bool = False
    columns: list[ColumnProfile] = Field(default_factory=list)
    summary: str = ""
