"""
pipelines/dataset_query.py — Preview, full load and aggregation for one dataset.

DatasetQueryService wires ResourceFetcher → TableCache → AggregationEngine and
owns the one rule that ties them together: aggregation never runs over a
bounded preview. A preview that turns out to be complete (small file, small
WFS layer) is reused as is; otherwise the resource is re-fetched with
full_data=True before the query runs.

Cache keys:
    preview:<dataset_key>   table from preview()
    full:<dataset_key>      table from load_full()

Usage:
    service = DatasetQueryService(cache=InMemoryTableCache(ttl_s=600))
    table, sample = await service.preview(resource, dataset_key="einwohner")
    result = await service.aggregate("einwohner", {"group_by": ["Bezirk"],
                                                   "metrics": [{"op": "count"}]})
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Any

import structlog

from opendata_shared.errors import InputError
from opendata_shared.models import (
    AggregationRequest,
    AggregationResult,
    DataSample,
    MaterializedTable,
    RemoteResource,
)
from opendata_pipeline.query.aggregate import AggregationEngine
from opendata_pipeline.sources.fetcher import ResourceFetcher
from opendata_pipeline.transforms.sample import DataSampler
from opendata_pipeline.utils.cache import InMemoryTableCache, TableCache

log = structlog.get_logger(__name__)

# Resources remembered for re-fetching by dataset key; oldest are forgotten first
MAX_REGISTERED_RESOURCES = 256


class DatasetQueryService:
    def __init__(
        self,
        fetcher: ResourceFetcher | None = None,
        cache: TableCache | None = None,
        engine: AggregationEngine | None = None,
        sampler: DataSampler | None = None,
    ) -> None:
        self.fetcher = fetcher or ResourceFetcher()
        self.cache = cache if cache is not None else InMemoryTableCache()
        self.engine = engine or AggregationEngine()
        self.sampler = sampler or DataSampler()
        self._resources: OrderedDict[str, RemoteResource] = OrderedDict()

    @staticmethod
    def _preview_key(dataset_key: str) -> str:
        return f"preview:{dataset_key}"

    @staticmethod
    def _full_key(dataset_key: str) -> str:
        return f"full:{dataset_key}"

    def _register(self, resource: RemoteResource, dataset_key: str | None) -> str:
        key = dataset_key or resource.cache_key
        self._resources[key] = resource
        self._resources.move_to_end(key)
        while len(self._resources) > MAX_REGISTERED_RESOURCES:
            forgotten, _ = self._resources.popitem(last=False)
            log.debug("resource_forgotten", dataset_key=forgotten)
        return key

    async def preview(
        self,
        resource: RemoteResource,
        dataset_key: str | None = None,
    ) -> tuple[MaterializedTable, DataSample | None]:
        """Bounded fetch plus sample; the sample is None when the fetch failed."""
        key = self._register(resource, dataset_key)
        table = self.cache.get(self._preview_key(key))
        if table is None:
            table = await self.fetcher.fetch(resource, full_data=False)
            if table.error is not None:
                return table, None
            self.cache.set(self._preview_key(key), table)
        return table, self.sampler.sample(table)

    async def load_full(
        self,
        resource: RemoteResource,
        dataset_key: str | None = None,
    ) -> MaterializedTable:
        """Full (capped) fetch, cached under the dataset key; failures are not cached."""
        key = self._register(resource, dataset_key)
        cached = self.cache.get(self._full_key(key))
        if cached is not None:
            return cached

        table = await self.fetcher.fetch(resource, full_data=True)
        if table.error is None:
            self.cache.set(self._full_key(key), table)
            if table.is_preview:
                log.warning(
                    "full_load_capped",
                    dataset_key=key,
                    rows=len(table.rows),
                    total_rows=table.total_row_count,
                )
        return table

    async def _complete_table(self, dataset_key: str, resource: RemoteResource | None) -> MaterializedTable:
        full = self.cache.get(self._full_key(dataset_key))
        if full is not None:
            return full

        preview = self.cache.get(self._preview_key(dataset_key))
        if preview is not None and not preview.is_preview:
            return preview

        resource = resource or self._resources.get(dataset_key)
        if resource is None:
            raise InputError(
                f"Unknown dataset '{dataset_key}'. Fetch it first or pass the resource to aggregate."
            )
        log.info("refetching_full_data", dataset_key=dataset_key, had_preview=preview is not None)
        return await self.load_full(resource, dataset_key)

    async def aggregate(
        self,
        dataset_key: str,
        request: AggregationRequest | dict[str, Any],
        resource: RemoteResource | None = None,
    ) -> AggregationResult:
        """
        Aggregate the complete table behind dataset_key.

        Raises:
            InputError: invalid request (checked before any network I/O), an
                unknown dataset, or a dataset that failed to load.
        """
        request = self.engine.coerce_request(request)
        self.engine.validate(request)
        if resource is not None:
            self._register(resource, dataset_key)

        table = await self._complete_table(dataset_key, resource)
        if table.error is not None:
            raise InputError(
                f"Dataset '{dataset_key}' could not be loaded ({table.error.kind.value}): "
                f"{table.error.message}",
                url=table.error.url,
            )
        return self.engine.execute(table, request)
