import pytest

from collector.errors import ConfigInvalidError
from collector.fetchers.base import Fetcher
from collector.fetchers.factory import build_fetcher
from collector.fetchers.hackernews import HackerNewsFetcher
from collector.fetchers.reddit import RedditFetcher
from collector.fetchers.semantic_scholar import SemanticScholarFetcher


@pytest.mark.parametrize(
    "source_type, expected",
    [
        ("reddit", RedditFetcher),
        ("hackernews", HackerNewsFetcher),
        ("semantic_scholar", SemanticScholarFetcher),
    ],
)
def test_dispatches_on_type(make_source, test_settings, registry, source_type, expected):
    source = make_source(source_type, {})
    fetcher = build_fetcher(source, test_settings, registry.get(source_type))

    assert isinstance(fetcher, expected)
    assert isinstance(fetcher, Fetcher)
    assert fetcher.type == source_type
    assert fetcher.limiter is registry.get(source_type)


def test_comment_ceiling_comes_from_settings(make_source, test_settings, registry):
    settings = test_settings.model_copy(update={"max_comment_depth": 2})
    fetcher = build_fetcher(make_source("reddit", {}), settings, registry.get("reddit"))
    assert fetcher.max_comment_depth == 2


def test_unknown_type(make_source, test_settings, registry):
    with pytest.raises(ConfigInvalidError, match="unsupported source type"):
        build_fetcher(make_source("mastodon", {}), test_settings, registry.get("reddit"))
