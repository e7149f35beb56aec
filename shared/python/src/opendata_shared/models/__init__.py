"""
opendata_shared.models — Pydantic models shared by the pipeline and the CLI.

These models are used by:
- sources/: describe what to fetch and return materialized tables
- query/: validate aggregation requests and shape results
- transforms/sample.py: describe previews and inferred column types
"""

from opendata_shared.models.query import (
    AggregationRequest,
    AggregationResult,
    ColumnProfile,
    ColumnType,
    DataSample,
    Filter,
    FilterOp,
    Metric,
    MetricOp,
    SortDirection,
    SortKey,
)
from opendata_shared.models.tables import (
    ErrorKind,
    FeatureTypeDescriptor,
    MaterializedTable,
    RemoteResource,
    ResourceError,
    RowRecord,
    ServiceCapabilities,
    collect_columns,
)

__all__ = [
    "RemoteResource",
    "MaterializedTable",
    "RowRecord",
    "ResourceError",
    "ErrorKind",
    "FeatureTypeDescriptor",
    "ServiceCapabilities",
    "collect_columns",
    "AggregationRequest",
    "AggregationResult",
    "Metric",
    "MetricOp",
    "Filter",
    "FilterOp",
    "SortKey",
    "SortDirection",
    "ColumnType",
    "ColumnProfile",
    "DataSample",
]
