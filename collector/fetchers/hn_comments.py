"""
Hacker News comment ingestion.

Two strategies, tried in order:

1. HTML: fetch the public item page once, validate its structure, parse every
   comment row and rebuild the tree from indentation with a depth stack.
   Any doubt about completeness aborts the whole attempt (StructureDriftError);
   a partial tree is never returned.
2. API: breadth-first walk over the Firebase item endpoint, one request per
   comment. Slower, but parents are known by construction.
"""

import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from bs4 import BeautifulSoup, Tag

from collector.errors import StructureDriftError, UpstreamError
from collector.fetchers.http import UpstreamClient
from collector.models import Comment
from collector.utils.logging import get_logger

logger = get_logger(__name__)

ITEM_PAGE_URL = "https://news.ycombinator.com/item"
ITEM_API_URL = "https://hacker-news.firebaseio.com/v0/item/{item_id}.json"

_INDENT_PX = 40
_REMOVED_MARKERS = {"[dead]", "[flagged]", "[deleted]"}
_MAX_LOSS_RATIO = 0.2


@dataclass
class ParsedComment:
    """A comment row lifted out of the item page, before parents are known."""
    external_id: str
    author: str
    text_html: str
    depth: int
    written_at: datetime


async def fetch_item(client: UpstreamClient, item_id: int | str) -> dict[str, Any] | None:
    """Fetch one item from the Firebase API; None when it does not exist."""
    data = await client.get_json(ITEM_API_URL.format(item_id=item_id))
    if data is None:
        return None
    if not isinstance(data, dict):
        raise UpstreamError(f"unexpected item payload for {item_id}: {type(data).__name__}")
    return data


# --------------------------------------------------------------------------- #
# HTML parsing
# --------------------------------------------------------------------------- #


def comment_rows(soup: BeautifulSoup) -> list[Tag]:
    return soup.select("tr.athing.comtr")


def validate_item_page(soup: BeautifulSoup, story_id: int | str) -> None:
    """Raise StructureDriftError unless the page looks like a complete item page."""
    story_row = soup.find("tr", id=str(story_id), class_="athing")
    if story_row is None:
        raise StructureDriftError(f"story row {story_id} not found")

    if soup.find("form", attrs={"method": "post", "action": "comment"}) is None:
        raise StructureDriftError("comment form not found")

    # Paginated threads are incomplete on the first page.
    if soup.select_one("a.morelink") is not None:
        raise StructureDriftError("pagination detected (more link present)")

    rows = comment_rows(soup)
    if rows:
        first = rows[0]
        if first.select_one("td.ind") is None:
            raise StructureDriftError("first comment row has no indent cell")
        if first.select_one("div.commtext") is None:
            raise StructureDriftError("first comment row has no commtext element")


def parse_depth(row: Tag) -> int | None:
    """0px indent is a root comment, 40px is depth 1, 80px depth 2, and so on."""
    indent_cell = row.select_one("td.ind")
    if indent_cell is None:
        return None

    img = indent_cell.find("img")
    if img is not None and img.get("width") is not None:
        try:
            return int(img["width"]) // _INDENT_PX
        except ValueError:
            return None

    # newer markup carries the level directly
    if indent_cell.get("indent") is not None:
        try:
            return int(indent_cell["indent"])
        except ValueError:
            return None
    return None


def parse_timestamp(row: Tag) -> datetime | None:
    age = row.select_one("span.age")
    if age is None or not age.get("title"):
        return None
    # e.g. "2025-11-22T21:50:13 1763848213"
    iso = age["title"].split()[0]
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        logger.warning("hn_timestamp_unparseable", timestamp=iso)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_comment_rows(rows: list[Tag]) -> list[ParsedComment]:
    parsed: list[ParsedComment] = []

    for row in rows:
        external_id = row.get("id") or ""
        if not external_id:
            continue

        depth = parse_depth(row)
        if depth is None:
            continue

        author_link = row.select_one("a.hnuser")
        author = author_link.get_text(strip=True) if author_link else ""
        if not author:
            continue

        written_at = parse_timestamp(row)
        if written_at is None:
            continue

        body = row.select_one("div.commtext")
        if body is None:
            continue
        for reply in body.select("div.reply"):
            reply.decompose()

        text = body.get_text().strip()
        if text in _REMOVED_MARKERS:
            continue

        html = body.decode_contents().strip()
        if not html:
            continue

        parsed.append(
            ParsedComment(
                external_id=external_id,
                author=author,
                text_html=html,
                depth=depth,
                written_at=written_at,
            )
        )

    return parsed


def build_comment_tree(
    parsed: list[ParsedComment],
    article_id: str,
    max_depth: int,
    max_comments: int,
) -> list[Comment]:
    """
    Rebuild parent links from document order.

    stack[d] holds the id of the last comment seen at depth d. A comment at
    depth d hangs off stack[d - 1]; pushing it truncates everything deeper, so
    a stale branch can never adopt it. A missing parent means the page is
    inconsistent and the whole build is rejected.
    """
    comments: list[Comment] = []
    stack: list[str] = []

    for pc in parsed:
        if pc.depth > max_depth:
            continue

        parent_id = None
        if pc.depth > 0:
            if len(stack) < pc.depth:
                raise StructureDriftError(
                    f"orphaned comment at depth {pc.depth} (external_id={pc.external_id}): "
                    f"parent at depth {pc.depth - 1} not found"
                )
            parent_id = stack[pc.depth - 1]

        comment = Comment(
            article_id=article_id,
            external_id=pc.external_id,
            author=pc.author,
            content=pc.text_html,
            written_at=pc.written_at,
            parent_id=parent_id,
            depth=pc.depth,
        )
        comments.append(comment)

        del stack[pc.depth:]
        stack.append(comment.id)

        if len(comments) >= max_comments:
            break

    return comments


# --------------------------------------------------------------------------- #
# Ingester
# --------------------------------------------------------------------------- #


class HNCommentIngester:
    """Produces a complete comment tree for one story, or nothing."""

    def __init__(
        self,
        client: UpstreamClient,
        max_depth: int,
        max_comments: int,
        source_id: str = "",
    ):
        self.client = client
        self.max_depth = max_depth
        self.max_comments = max_comments
        self.source_id = source_id

    async def ingest(
        self,
        story: dict[str, Any],
        article_id: str,
        force_api: bool = False,
    ) -> list[Comment]:
        story_id = story["id"]

        if not force_api:
            start = time.monotonic()
            try:
                comments = await self.fetch_via_html(story_id, article_id)
            except (StructureDriftError, UpstreamError) as exc:
                logger.warning(
                    "hn_html_scrape_failed",
                    source_id=self.source_id,
                    story_id=story_id,
                    error=str(exc),
                    duration_ms=int((time.monotonic() - start) * 1000),
                )
            else:
                logger.debug(
                    "hn_html_scrape_succeeded",
                    story_id=story_id,
                    comment_count=len(comments),
                    duration_ms=int((time.monotonic() - start) * 1000),
                )
                return comments

        kids = story.get("kids") or []
        if not kids:
            return []

        start = time.monotonic()
        comments = await self.fetch_via_api(kids, article_id)
        logger.info(
            "hn_api_comments_fetched",
            source_id=self.source_id,
            story_id=story_id,
            comment_count=len(comments),
            duration_ms=int((time.monotonic() - start) * 1000),
            forced=force_api,
        )
        return comments

    async def fetch_via_html(self, story_id: int, article_id: str) -> list[Comment]:
        html = await self.client.get_text(ITEM_PAGE_URL, params={"id": story_id})
        soup = BeautifulSoup(html, "html.parser")

        validate_item_page(soup, story_id)

        rows = comment_rows(soup)
        parsed = parse_comment_rows(rows)

        if rows and not parsed:
            raise StructureDriftError(
                f"found {len(rows)} comment rows but parsed 0 comments "
                "(HTML structure may have changed)"
            )

        comments = build_comment_tree(parsed, article_id, self.max_depth, self.max_comments)

        if parsed and not comments:
            raise StructureDriftError(
                f"parsed {len(parsed)} HTML comments but built 0 (depth filtering issue?)"
            )

        if rows and len(parsed) < len(rows) * (1 - _MAX_LOSS_RATIO):
            logger.warning(
                "hn_comment_parse_loss",
                story_id=story_id,
                comment_rows_found=len(rows),
                comments_parsed=len(parsed),
                loss_pct=100 * (len(rows) - len(parsed)) // len(rows),
            )

        return comments

    async def fetch_via_api(self, root_kids: list[int], article_id: str) -> list[Comment]:
        comments: list[Comment] = []
        queue: deque[tuple[int, str | None, int]] = deque((kid, None, 0) for kid in root_kids)

        while queue and len(comments) < self.max_comments:
            item_id, parent_id, depth = queue.popleft()
            if depth > self.max_depth:
                continue

            try:
                item = await fetch_item(self.client, item_id)
            except UpstreamError as exc:
                logger.warning("hn_comment_fetch_failed", comment_id=item_id, error=str(exc))
                continue

            if not item or item.get("deleted") or item.get("dead") or item.get("type") != "comment":
                continue

            comment = Comment(
                article_id=article_id,
                external_id=str(item["id"]),
                author=item.get("by") or "",
                content=item.get("text") or "",
                written_at=datetime.fromtimestamp(item.get("time") or 0, tz=timezone.utc),
                parent_id=parent_id,
                depth=depth,
            )
            comments.append(comment)

            if depth < self.max_depth:
                queue.extend((kid, comment.id, depth + 1) for kid in item.get("kids") or [])

        return comments
