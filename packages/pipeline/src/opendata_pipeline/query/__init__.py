"""
opendata_pipeline.query — declarative aggregation over materialized tables.
"""

from opendata_pipeline.query.aggregate import AggregationEngine, Comparison, ComparisonMode

__all__ = ["AggregationEngine", "Comparison", "ComparisonMode"]
