"""Domain records shared by the store, the fetchers and the scheduler."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class SourceType(str, Enum):
    REDDIT = "reddit"
    HACKERNEWS = "hackernews"
    SEMANTIC_SCHOLAR = "semantic_scholar"


class SourceStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class Source:
    """An ingestion target: a subreddit, an HN list, an S2 query."""
    id: str
    type: str            # one of SourceType values
    config: str          # opaque JSON, decoded by the matching fetcher
    external_id: str
    last_run_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str = ""
    status: str = SourceStatus.IDLE.value
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Article:
    """A normalised upstream item."""
    source_id: str
    external_id: str
    title: str
    author: str
    content: str
    url: str
    written_at: datetime
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Comment:
    """One node of an article's comment tree; parent_id is None iff depth == 0."""
    article_id: str
    external_id: str
    author: str
    content: str
    written_at: datetime
    parent_id: str | None = None
    depth: int = 0
    id: str = field(default_factory=new_id)


@dataclass
class FetchResult:
    articles: list[Article] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)


@dataclass
class ScheduleEntry:
    next_run: datetime
    last_run_at: datetime | None = None
    source_id: str = "global"
    source_type: str = "all"
