from datetime import datetime, timezone

import httpx
import pytest
import respx
from pydantic import SecretStr

from collector.errors import ConfigInvalidError, TransientUpstreamError
from collector.fetchers.semantic_scholar import SemanticScholarFetcher
from collector.models import EPOCH
from collector.ratelimit import TokenBucket

SEARCH_URL = "https://api.semanticscholar.org/graph/v1/paper/search"
RECS_URL = "https://api.semanticscholar.org/recommendations/v1/papers/forpaper/p-seed"


def _paper(paper_id: str, year: int | None = 2021, citations: int = 10) -> dict:
    return {
        "paperId": paper_id,
        "title": f"Paper {paper_id}",
        "abstract": "An abstract.",
        "year": year,
        "citationCount": citations,
        "url": f"https://www.semanticscholar.org/paper/{paper_id}",
        "authors": [{"authorId": "1", "name": "Ada Lovelace"}, {"authorId": "2", "name": "Alan Turing"}],
    }


def _make_fetcher(make_source, settings, config: dict) -> SemanticScholarFetcher:
    source = make_source("semantic_scholar", config)
    return SemanticScholarFetcher(source, settings, TokenBucket.from_delay_ms(0))


@pytest.mark.parametrize(
    "config, problem",
    [
        ({"mode": "browse"}, "mode"),
        ({"mode": "search"}, "query"),
        ({"mode": "recommendations"}, "paper_id"),
        ({}, "mode"),
    ],
)
def test_validate_rejects_bad_config(make_source, test_settings, config, problem):
    fetcher = _make_fetcher(make_source, test_settings, config)
    with pytest.raises(ConfigInvalidError, match=problem):
        fetcher.validate()


@pytest.mark.asyncio
@respx.mock
async def test_search_maps_papers(make_source, test_settings):
    respx.get(SEARCH_URL).mock(
        return_value=httpx.Response(200, json={"total": 2, "offset": 0, "data": [_paper("a"), _paper("b", year=None)]})
    )

    fetcher = _make_fetcher(make_source, test_settings, {"mode": "search", "query": "transformers"})
    result = await fetcher.fetch(EPOCH)

    assert [a.external_id for a in result.articles] == ["a", "b"]
    assert result.comments == []

    first = result.articles[0]
    assert first.author == "Ada Lovelace"
    assert first.content == "An abstract."
    assert first.written_at == datetime(2021, 1, 1, tzinfo=timezone.utc)
    assert first.metadata == {"citations": 10, "year": "2021", "authors": ["Ada Lovelace", "Alan Turing"]}
    assert result.articles[1].written_at == EPOCH


@pytest.mark.asyncio
@respx.mock
async def test_search_paginates_until_next_missing(make_source, test_settings):
    route = respx.get(SEARCH_URL).mock(
        side_effect=[
            httpx.Response(200, json={"offset": 0, "next": 100, "data": [_paper(f"a{i}") for i in range(100)]}),
            httpx.Response(200, json={"offset": 100, "data": [_paper("b0"), _paper("b1")]}),
        ]
    )

    fetcher = _make_fetcher(
        make_source, test_settings, {"mode": "search", "query": "q", "max_results": 500, "year": "2020-2023"}
    )
    result = await fetcher.fetch(EPOCH)

    assert len(result.articles) == 102
    assert route.call_count == 2
    assert route.calls[1].request.url.params["offset"] == "100"
    assert route.calls[0].request.url.params["year"] == "2020-2023"


@pytest.mark.asyncio
@respx.mock
async def test_search_trims_to_max_results(make_source, test_settings):
    route = respx.get(SEARCH_URL).mock(
        return_value=httpx.Response(200, json={"next": 100, "data": [_paper(f"a{i}") for i in range(100)]})
    )

    fetcher = _make_fetcher(make_source, test_settings, {"mode": "search", "query": "q", "max_results": 5})
    result = await fetcher.fetch(EPOCH)

    assert len(result.articles) == 5
    assert route.call_count == 1


@pytest.mark.asyncio
@respx.mock
async def test_recommendations_filters_by_citations(make_source, test_settings):
    route = respx.get(RECS_URL).mock(
        return_value=httpx.Response(
            200,
            json={"recommendedPapers": [_paper("hi", citations=50), _paper("lo", citations=1), {"title": "no id"}]},
        )
    )

    fetcher = _make_fetcher(
        make_source,
        test_settings,
        {"mode": "recommendations", "paper_id": "p-seed", "max_results": 20, "min_citations": 10},
    )
    result = await fetcher.fetch(EPOCH)

    assert [a.external_id for a in result.articles] == ["hi"]
    assert route.calls.last.request.url.params["limit"] == "20"


@pytest.mark.asyncio
@respx.mock
async def test_api_key_header(make_source, test_settings):
    route = respx.get(SEARCH_URL).mock(return_value=httpx.Response(200, json={"data": []}))
    settings = test_settings.model_copy(update={"semantic_scholar_api_key": SecretStr("s2-key")})

    result = await _make_fetcher(make_source, settings, {"mode": "search", "query": "q"}).fetch(EPOCH)

    assert result.articles == []
    assert route.calls.last.request.headers["x-api-key"] == "s2-key"


@pytest.mark.asyncio
@respx.mock
async def test_rate_limit_exhaustion_surfaces_retry_after(make_source, test_settings):
    respx.get(SEARCH_URL).mock(return_value=httpx.Response(429, headers={"Retry-After": "0"}))

    fetcher = _make_fetcher(make_source, test_settings, {"mode": "search", "query": "q"})
    with pytest.raises(TransientUpstreamError) as exc_info:
        await fetcher.fetch(EPOCH)

    assert exc_info.value.retry_after == 0.0
