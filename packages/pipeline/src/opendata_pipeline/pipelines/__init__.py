"""
opendata_pipeline.pipelines — orchestrators over fetcher, cache and engine.

    from opendata_pipeline.pipelines.dataset_query import DatasetQueryService

    service = DatasetQueryService()
    table, sample = await service.preview(resource)
"""
