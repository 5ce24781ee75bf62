from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, field_validator

from collector.config import Settings
from collector.errors import UpstreamError
from collector.fetchers.base import decode_config, validate_enum
from collector.fetchers.http import UpstreamClient
from collector.models import Article, Comment, FetchResult, Source, SourceType
from collector.ratelimit import TokenBucket
from collector.utils.logging import get_logger

logger = get_logger(__name__)

_BASE_URL = "https://www.reddit.com"
_PAGE_SIZE = 100
_SORTS = ["hot", "new", "top", "rising"]
_TIME_FILTERS = ["hour", "day", "week", "month", "year", "all"]


class RedditConfig(BaseModel):
    model_config = {"validate_default": True}

    subreddit: str = ""
    sort: str = "hot"
    time_filter: str = ""
    limit: int = 100
    min_score: int = 0
    min_comments: int = 0
    user_agent: str = ""

    @field_validator("subreddit")
    @classmethod
    def _required(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("subreddit is required")
        return value.strip()

    @field_validator("sort", mode="before")
    @classmethod
    def _check_sort(cls, value: Any) -> str:
        return validate_enum(value or "hot", _SORTS, "sort")

    @field_validator("limit")
    @classmethod
    def _default_limit(cls, value: int) -> int:
        return value if value > 0 else 100

    @property
    def effective_time_filter(self) -> str:
        """time_filter only applies to sort=top; anything else is ignored."""
        if self.sort == "top" and self.time_filter in _TIME_FILTERS:
            return self.time_filter
        return ""


def _from_unix(ts: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(float(ts or 0)), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return datetime.fromtimestamp(0, tz=timezone.utc)


class RedditFetcher:
    """Fetches a subreddit listing plus each post's comment tree via public JSON."""

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
        self.config: RedditConfig | None = None

    @property
    def type(self) -> str:
        return SourceType.REDDIT.value

    def validate(self) -> None:
        self.config = decode_config(self.source, RedditConfig)

    async def fetch(self, since: datetime) -> FetchResult:
        self.validate()
        config = self.config
        result = FetchResult()

        after = ""
        remaining = config.limit
        headers = {"User-Agent": config.user_agent or self.settings.http_user_agent}

        async with UpstreamClient(self.limiter, self.settings, "reddit", headers=headers) as client:
            while remaining > 0:
                posts, after = await self._fetch_posts(client, after, min(remaining, _PAGE_SIZE))
                if not posts:
                    break

                for post in posts:
                    post_id = post.get("id", "")
                    if not post_id:
                        continue
                    if _from_unix(post.get("created_utc")) < since:
                        continue
                    if (post.get("score") or 0) < config.min_score:
                        continue
                    if (post.get("num_comments") or 0) < config.min_comments:
                        continue

                    article = self._post_to_article(post)
                    result.articles.append(article)

                    if self.max_comment_depth > 0 and (post.get("num_comments") or 0) > 0:
                        try:
                            comments = await self._fetch_comments(client, post_id, article.id)
                        except UpstreamError as exc:
                            logger.warning(
                                "reddit_comments_fetch_failed",
                                source_id=self.source.id,
                                post_id=post_id,
                                error=str(exc),
                            )
                            continue
                        result.comments.extend(comments)

                remaining -= len(posts)
                if not after:
                    break

        logger.info(
            "reddit_fetched",
            source_id=self.source.id,
            subreddit=config.subreddit,
            articles=len(result.articles),
            comments=len(result.comments),
        )
        return result

    async def _fetch_posts(
        self,
        client: UpstreamClient,
        after: str,
        limit: int,
    ) -> tuple[list[dict], str]:
        config = self.config
        params: dict[str, Any] = {"limit": limit, "raw_json": 1}
        if after:
            params["after"] = after
        if config.effective_time_filter:
            params["t"] = config.effective_time_filter

        url = f"{_BASE_URL}/r/{config.subreddit}/{config.sort}.json"
        data = await client.get_json(url, params=params)
        listing = data.get("data", {}) if isinstance(data, dict) else {}
        posts = [
            child.get("data", {})
            for child in listing.get("children", [])
            if isinstance(child, dict)
        ]
        return posts, listing.get("after") or ""

    async def _fetch_comments(
        self,
        client: UpstreamClient,
        post_id: str,
        article_id: str,
    ) -> list[Comment]:
        data = await client.get_json(f"{_BASE_URL}/comments/{post_id}.json", params={"raw_json": 1})

        # [post_listing, comments_listing]
        if not isinstance(data, list) or len(data) < 2:
            return []

        comments: list[Comment] = []
        self._extract_comments(data[1], article_id, None, 0, comments)
        return comments

    def _extract_comments(
        self,
        listing: Any,
        article_id: str,
        parent_id: str | None,
        depth: int,
        out: list[Comment],
    ) -> None:
        if depth > self.max_comment_depth or not isinstance(listing, dict):
            return

        data = listing.get("data")
        if not isinstance(data, dict):
            return

        for child in data.get("children") or []:
            # t1 is a comment; "more" stubs and anything else are skipped
            if not isinstance(child, dict) or child.get("kind") != "t1":
                continue
            item = child.get("data")
            if not isinstance(item, dict):
                continue

            comment_id = item.get("id") or ""
            body = item.get("body") or ""
            if not comment_id or not body:
                continue

            comment = Comment(
                article_id=article_id,
                external_id=comment_id,
                author=item.get("author") or "",
                content=body,
                written_at=_from_unix(item.get("created_utc")),
                parent_id=parent_id,
                depth=depth,
            )
            out.append(comment)

            replies = item.get("replies")
            if isinstance(replies, dict):
                self._extract_comments(replies, article_id, comment.id, depth + 1, out)

    def _post_to_article(self, post: dict) -> Article:
        permalink = post.get("permalink", "")
        url = f"{_BASE_URL}{permalink}" if permalink else post.get("url", "")
        return Article(
            source_id=self.source.id,
            external_id=post["id"],
            title=post.get("title", ""),
            author=post.get("author") or "",
            content=post.get("selftext") or "",
            url=url,
            written_at=_from_unix(post.get("created_utc")),
            metadata={
                "score": post.get("score") or 0,
                "num_comments": post.get("num_comments") or 0,
                "subreddit": post.get("subreddit", ""),
            },
        )
