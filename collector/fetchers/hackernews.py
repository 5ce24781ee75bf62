from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, field_validator

from collector.config import Settings
from collector.errors import PermanentUpstreamError, UpstreamError
from collector.fetchers.base import decode_config, validate_enum
from collector.fetchers.hn_comments import HNCommentIngester, fetch_item
from collector.fetchers.http import UpstreamClient
from collector.models import Article, FetchResult, Source, SourceType
from collector.ratelimit import TokenBucket
from collector.utils.logging import get_logger

logger = get_logger(__name__)

_API_URL = "https://hacker-news.firebaseio.com/v0"
_ITEM_PAGE_URL = "https://news.ycombinator.com/item?id={item_id}"
_ITEM_TYPES = ["top", "new", "best", "ask", "show", "job"]
_STORY_TYPES = {"story", "job", "poll"}


class HackerNewsConfig(BaseModel):
    model_config = {"validate_default": True}

    item_type: str = ""
    limit: int = 30
    min_score: int = 0
    min_comments: int = 0
    include_comments: bool = False
    max_comment_depth: int = 3
    max_comments_per_article: int = 100
    force_api_mode: bool = False

    @field_validator("item_type")
    @classmethod
    def _check_item_type(cls, value: str) -> str:
        return validate_enum(value, _ITEM_TYPES, "item_type")

    @field_validator("limit")
    @classmethod
    def _check_limit(cls, value: int) -> int:
        if value <= 0:
            return 30
        if value > 100:
            raise ValueError("limit must be at most 100")
        return value

    @field_validator("max_comment_depth")
    @classmethod
    def _check_depth(cls, value: int) -> int:
        if value <= 0:
            return 3
        if value > 10:
            raise ValueError("max_comment_depth must be at most 10")
        return value

    @field_validator("max_comments_per_article")
    @classmethod
    def _check_max_comments(cls, value: int) -> int:
        if value <= 0:
            return 100
        if value > 500:
            raise ValueError("max_comments_per_article must be at most 500")
        return value


def _from_unix(ts: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(ts or 0), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return datetime.fromtimestamp(0, tz=timezone.utc)


class HackerNewsFetcher:
    """
    Fetches one of the Firebase story lists, then each story individually.

    With include_comments set, every stored story gets its full comment tree
    from HNCommentIngester (HTML first, API as fallback). The comment depth
    never exceeds the process-wide ceiling.
    """

    def __init__(
        self,
        source: Source,
        settings: Settings,
        limiter: TokenBucket,
        max_comment_depth: int,
    ):
        self.source = source
        self.settings = settings
        self.limiter = limiter
        self.max_comment_depth = max_comment_depth
        self.config: HackerNewsConfig | None = None

    @property
    def type(self) -> str:
        return SourceType.HACKERNEWS.value

    def validate(self) -> None:
        self.config = decode_config(self.source, HackerNewsConfig)

    @property
    def comment_depth(self) -> int:
        return min(self.config.max_comment_depth, self.max_comment_depth)

    async def fetch(self, since: datetime) -> FetchResult:
        self.validate()
        config = self.config
        result = FetchResult()

        async with UpstreamClient(self.limiter, self.settings, "hackernews") as client:
            story_ids = await self._fetch_story_ids(client)

            ingester = None
            if config.include_comments and self.comment_depth > 0:
                ingester = HNCommentIngester(
                    client,
                    max_depth=self.comment_depth,
                    max_comments=config.max_comments_per_article,
                    source_id=self.source.id,
                )

            for story_id in story_ids:
                try:
                    item = await fetch_item(client, story_id)
                except UpstreamError as exc:
                    logger.warning(
                        "hackernews_item_fetch_failed",
                        source_id=self.source.id,
                        item_id=story_id,
                        error=str(exc),
                    )
                    continue

                if not item or item.get("deleted") or item.get("dead"):
                    continue
                if item.get("type") not in _STORY_TYPES:
                    continue

                if _from_unix(item.get("time")) < since:
                    # the "new" list is newest-first, nothing after this is newer
                    if config.item_type == "new":
                        break
                    continue

                if (item.get("score") or 0) < config.min_score:
                    continue
                if (item.get("descendants") or 0) < config.min_comments:
                    continue

                article = self._item_to_article(item)
                result.articles.append(article)

                if ingester is not None and (item.get("descendants") or 0) > 0:
                    try:
                        comments = await ingester.ingest(item, article.id, config.force_api_mode)
                    except UpstreamError as exc:
                        logger.warning(
                            "hackernews_comments_fetch_failed",
                            source_id=self.source.id,
                            item_id=story_id,
                            error=str(exc),
                        )
                        continue
                    result.comments.extend(comments)

        logger.info(
            "hackernews_fetched",
            source_id=self.source.id,
            item_type=config.item_type,
            articles=len(result.articles),
            comments=len(result.comments),
        )
        return result

    async def _fetch_story_ids(self, client: UpstreamClient) -> list[int]:
        config = self.config
        data = await client.get_json(f"{_API_URL}/{config.item_type}stories.json")
        if not isinstance(data, list):
            raise PermanentUpstreamError(
                f"hackernews {config.item_type}stories returned {type(data).__name__}, expected a list"
            )
        return data[: config.limit]

    def _item_to_article(self, item: dict) -> Article:
        item_id = item["id"]
        return Article(
            source_id=self.source.id,
            external_id=str(item_id),
            title=item.get("title") or "",
            author=item.get("by") or "",
            content=item.get("text") or "",
            url=item.get("url") or _ITEM_PAGE_URL.format(item_id=item_id),
            written_at=_from_unix(item.get("time")),
            metadata={
                "hn_id": item_id,
                "hn_type": item.get("type") or "",
                "descendants": item.get("descendants") or 0,
                "score": item.get("score") or 0,
                "by": item.get("by") or "",
            },
        )
