"""
opendata_pipeline — ingestion and aggregation core for open-data resources.

Architecture:
  sources/     — format router, HTTP downloads, content sniffing, WFS client
  transforms/  — reprojection, tabular normalization, sampling / type inference
  query/       — filter / group / aggregate engine
  loaders/     — CSV / JSON / GeoJSON re-serialization for downloads
  pipelines/   — DatasetQueryService wiring fetcher -> cache -> engine
  utils/       — structlog configuration, retry decorator, table cache

Quick start:
    import asyncio
    from opendata_shared.models import RemoteResource
    from opendata_pipeline.sources import ResourceFetcher

    table = asyncio.run(ResourceFetcher().fetch(RemoteResource(url=url, declared_format="CSV")))

CLI:
    opendata preview URL --format WFS
    opendata aggregate URL '{"group_by": ["Bezirk"], "metrics": [{"op": "count"}]}'
    opendata download URL --output-format geojson -o out.geojson
"""

__version__ = "0.1.0"
