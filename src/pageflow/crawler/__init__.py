from .fetcher import CrawlProcessor, FetchResult, PageFetcher

__all__ = ["CrawlProcessor", "FetchResult", "PageFetcher"]
