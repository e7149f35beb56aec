"""
opendata_pipeline.sources — resource adapters and the format router.

  ResourceFetcher — routes a RemoteResource and never raises
  WFSSource       — paginated OGC WFS 2.0 feature services
  FileSource      — single-file downloads, content-sniffed
  WFSClient       — individual WFS requests (capabilities, hits, pages)
"""

from opendata_pipeline.sources.fetcher import BrowserFetcher, FileSource, ResourceFetcher
from opendata_pipeline.sources.wfs import WFSClient, WFSSource

__all__ = [
    "ResourceFetcher",
    "FileSource",
    "WFSSource",
    "WFSClient",
    "BrowserFetcher",
]
