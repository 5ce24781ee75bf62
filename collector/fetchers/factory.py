from collector.config import Settings
from collector.errors import ConfigInvalidError
from collector.fetchers.base import Fetcher
from collector.fetchers.hackernews import HackerNewsFetcher
from collector.fetchers.reddit import RedditFetcher
from collector.fetchers.semantic_scholar import SemanticScholarFetcher
from collector.models import Source, SourceType
from collector.ratelimit import TokenBucket


def build_fetcher(source: Source, settings: Settings, limiter: TokenBucket) -> Fetcher:
    """Pick the fetcher for `source.type`; the limiter is the type's shared bucket."""
    if source.type == SourceType.REDDIT.value:
        return RedditFetcher(source, settings, limiter, settings.max_comment_depth)
    if source.type == SourceType.HACKERNEWS.value:
        return HackerNewsFetcher(source, settings, limiter, settings.max_comment_depth)
    if source.type == SourceType.SEMANTIC_SCHOLAR.value:
        return SemanticScholarFetcher(source, settings, limiter)
    raise ConfigInvalidError(f"unsupported source type: {source.type}")
