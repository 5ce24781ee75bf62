from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, field_validator, model_validator

from collector.config import Settings
from collector.fetchers.base import decode_config, validate_enum
from collector.fetchers.http import UpstreamClient
from collector.models import EPOCH, Article, FetchResult, Source, SourceType
from collector.ratelimit import TokenBucket
from collector.utils.logging import get_logger

logger = get_logger(__name__)

_SEARCH_URL = "https://api.semanticscholar.org/graph/v1/paper/search"
_RECOMMENDATIONS_URL = "https://api.semanticscholar.org/recommendations/v1/papers/forpaper/{paper_id}"
_FIELDS = "paperId,title,abstract,year,citationCount,url,authors"
_PAGE_SIZE = 100
_MAX_OFFSET = 10_000


class SemanticScholarConfig(BaseModel):
    model_config = {"validate_default": True}

    mode: str = ""
    query: str | None = None
    paper_id: str | None = None
    year: str | None = None
    max_results: int = 100
    min_citations: int = 0

    @field_validator("mode")
    @classmethod
    def _check_mode(cls, value: str) -> str:
        return validate_enum(value, ["search", "recommendations"], "mode")

    @field_validator("max_results")
    @classmethod
    def _default_max_results(cls, value: int) -> int:
        return value if value > 0 else 100

    @model_validator(mode="after")
    def _check_mode_inputs(self) -> "SemanticScholarConfig":
        if self.mode == "search" and not (self.query or "").strip():
            raise ValueError("query is required for search mode")
        if self.mode == "recommendations" and not (self.paper_id or "").strip():
            raise ValueError("paper_id is required for recommendations mode")
        return self


def _year_to_datetime(year: Any) -> datetime:
    """S2 only exposes a year; use January 1st of it, or the epoch when missing."""
    try:
        year = int(year)
    except (TypeError, ValueError):
        return EPOCH
    if year < 1:
        return EPOCH
    return datetime(year, 1, 1, tzinfo=timezone.utc)


class SemanticScholarFetcher:
    """Fetches papers by keyword search or per-paper recommendations."""

    def __init__(self, source: Source, settings: Settings, limiter: TokenBucket):
        self.source = source
        self.settings = settings
        self.limiter = limiter
        self.config: SemanticScholarConfig | None = None

    @property
    def type(self) -> str:
        return SourceType.SEMANTIC_SCHOLAR.value

    def validate(self) -> None:
        self.config = decode_config(self.source, SemanticScholarConfig)

    async def fetch(self, since: datetime) -> FetchResult:
        # Papers only carry a publication year, so `since` is not applied;
        # re-ingesting a paper is an idempotent UPSERT.
        self.validate()
        config = self.config

        headers = {}
        api_key = self.settings.semantic_scholar_api_key.get_secret_value()
        if api_key:
            headers["x-api-key"] = api_key

        async with UpstreamClient(
            self.limiter, self.settings, "semantic_scholar", headers=headers
        ) as client:
            if config.mode == "search":
                papers = await self._fetch_search(client)
            else:
                papers = await self._fetch_recommendations(client)

        result = FetchResult()
        for paper in papers:
            if not paper.get("paperId"):
                continue
            if (paper.get("citationCount") or 0) < config.min_citations:
                continue
            result.articles.append(self._paper_to_article(paper))

        logger.info(
            "semantic_scholar_fetched",
            source_id=self.source.id,
            mode=config.mode,
            papers=len(papers),
            articles=len(result.articles),
        )
        return result

    async def _fetch_search(self, client: UpstreamClient) -> list[dict]:
        config = self.config
        papers: list[dict] = []
        offset = 0

        while len(papers) < config.max_results and offset < _MAX_OFFSET:
            params: dict[str, Any] = {
                "query": config.query,
                "offset": offset,
                "limit": _PAGE_SIZE,
                "fields": _FIELDS,
            }
            if config.year:
                params["year"] = config.year

            data = await client.get_json(_SEARCH_URL, params=params)
            page = (data.get("data") or []) if isinstance(data, dict) else []
            if not page:
                break

            papers.extend(page)
            offset += _PAGE_SIZE

            if not data.get("next"):
                break

        return papers[: config.max_results]

    async def _fetch_recommendations(self, client: UpstreamClient) -> list[dict]:
        config = self.config
        url = _RECOMMENDATIONS_URL.format(paper_id=config.paper_id)
        data = await client.get_json(url, params={"fields": _FIELDS, "limit": config.max_results})
        if not isinstance(data, dict):
            return []
        return data.get("recommendedPapers") or []

    def _paper_to_article(self, paper: dict) -> Article:
        authors = [a.get("name", "") for a in paper.get("authors") or [] if isinstance(a, dict)]
        year = paper.get("year")
        return Article(
            source_id=self.source.id,
            external_id=paper["paperId"],
            title=paper.get("title") or "",
            author=authors[0] if authors else "",
            content=paper.get("abstract") or "",
            url=paper.get("url") or "",
            written_at=_year_to_datetime(year),
            metadata={
                "citations": paper.get("citationCount") or 0,
                "year": str(year) if year else "",
                "authors": authors,
            },
        )
