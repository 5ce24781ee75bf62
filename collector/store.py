"""
SQLite persistence for sources, articles and comments.

Schema (created on init):

    sources  (id PK, type, config, external_id, last_run_at, last_success_at,
              last_error, status, created_at, UNIQUE(type, external_id))
    articles (id PK, source_id -> sources ON DELETE CASCADE, external_id, ...,
              UNIQUE(source_id, external_id))
    comments (id PK, article_id -> articles ON DELETE CASCADE, external_id,
              parent_id -> comments, depth, UNIQUE(article_id, external_id))

Writes from one source fetch go through a single WriteTransaction so readers
see either the previous snapshot or the whole new batch.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy import event
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool

from collector.errors import StoreError
from collector.models import Article, Comment, Source, SourceStatus, utc_now
from collector.utils.logging import get_logger

logger = get_logger(__name__)

# At most POOL_SIZE + MAX_OVERFLOW = 10 open connections.
POOL_SIZE = 2
MAX_OVERFLOW = 8
BUSY_TIMEOUT_MS = 5000


class UTCDateTime(sa.TypeDecorator):
    """Stores naive UTC in SQLite and hands back aware UTC datetimes."""

    impl = sa.DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


metadata = sa.MetaData()

sources_table = sa.Table(
    "sources",
    metadata,
    sa.Column("id", sa.String, primary_key=True),
    sa.Column("type", sa.String, nullable=False),
    sa.Column("config", sa.Text, nullable=False),
    sa.Column("external_id", sa.String),
    sa.Column("last_run_at", UTCDateTime),
    sa.Column("last_success_at", UTCDateTime),
    sa.Column("last_error", sa.Text),
    sa.Column("status", sa.String, nullable=False, server_default=SourceStatus.IDLE.value),
    sa.Column("created_at", UTCDateTime, nullable=False),
    sa.UniqueConstraint("type", "external_id"),
    sa.Index("idx_sources_status", "status"),
    sa.Index("idx_sources_type", "type"),
)

articles_table = sa.Table(
    "articles",
    metadata,
    sa.Column("id", sa.String, primary_key=True),
    sa.Column(
        "source_id",
        sa.String,
        sa.ForeignKey("sources.id", ondelete="CASCADE"),
        nullable=False,
    ),
    sa.Column("external_id", sa.String, nullable=False),
    sa.Column("title", sa.Text),
    sa.Column("author", sa.Text),
    sa.Column("content", sa.Text),
    sa.Column("url", sa.Text),
    sa.Column("written_at", UTCDateTime),
    sa.Column("metadata", sa.JSON),
    sa.Column("created_at", UTCDateTime, nullable=False),
    sa.UniqueConstraint("source_id", "external_id"),
    sa.Index("idx_articles_source_time", "source_id", "written_at"),
    sa.Index("idx_articles_created", "created_at"),
)

comments_table = sa.Table(
    "comments",
    metadata,
    sa.Column("id", sa.String, primary_key=True),
    sa.Column(
        "article_id",
        sa.String,
        sa.ForeignKey("articles.id", ondelete="CASCADE"),
        nullable=False,
    ),
    sa.Column("external_id", sa.String, nullable=False),
    sa.Column("author", sa.Text),
    sa.Column("content", sa.Text),
    sa.Column("written_at", UTCDateTime),
    sa.Column("parent_id", sa.String, sa.ForeignKey("comments.id", ondelete="CASCADE")),
    sa.Column("depth", sa.Integer, nullable=False, server_default="0"),
    sa.UniqueConstraint("article_id", "external_id"),
    sa.Index("idx_comments_article", "article_id"),
)


def _configure_sqlite_connection(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        raise StoreError(f"{action}: {exc}") from exc


def _row_to_source(row: Any) -> Source:
    return Source(
        id=row.id,
        type=row.type,
        config=row.config,
        external_id=row.external_id or "",
        last_run_at=row.last_run_at,
        last_success_at=row.last_success_at,
        last_error=row.last_error or "",
        status=row.status or SourceStatus.IDLE.value,
        created_at=row.created_at,
    )


class WriteTransaction:
    """
    One atomic write boundary for a single source fetch.

    Fetchers mint fresh UUIDs on every run; on conflict the stored row keeps
    its id, so the transaction remaps article and parent ids to the stored
    ones before writing comments.
    """

    def __init__(self, connection: Connection):
        self._conn = connection
        self._tx = connection.begin()
        self._article_ids: dict[str, str] = {}
        self._comment_ids: dict[str, str] = {}
        self._closed = False

    def upsert_articles(self, articles: list[Article]) -> int:
        if not articles:
            return 0

        rows = [
            {
                "id": a.id,
                "source_id": a.source_id,
                "external_id": a.external_id,
                "title": a.title,
                "author": a.author,
                "content": a.content,
                "url": a.url,
                "written_at": a.written_at,
                "metadata": a.metadata,
                "created_at": a.created_at,
            }
            for a in articles
        ]
        stmt = sqlite_insert(articles_table)
        stmt = stmt.on_conflict_do_update(
            index_elements=["source_id", "external_id"],
            set_={
                "title": stmt.excluded.title,
                "author": stmt.excluded.author,
                "content": stmt.excluded.content,
                "url": stmt.excluded.url,
                "written_at": stmt.excluded.written_at,
                "metadata": stmt.excluded["metadata"],
            },
        )

        with _store_errors("upsert articles"):
            self._conn.execute(stmt, rows)
            by_source: dict[str, list[Article]] = {}
            for a in articles:
                by_source.setdefault(a.source_id, []).append(a)
            for source_id, group in by_source.items():
                stored = dict(
                    self._conn.execute(
                        sa.select(articles_table.c.external_id, articles_table.c.id).where(
                            articles_table.c.source_id == source_id,
                            articles_table.c.external_id.in_([a.external_id for a in group]),
                        )
                    ).all()
                )
                for a in group:
                    self._article_ids[a.id] = stored.get(a.external_id, a.id)

        return len(rows)

    def upsert_comments(self, comments: list[Comment]) -> int:
        if not comments:
            return 0

        with _store_errors("upsert comments"):
            existing: dict[tuple[str, str], str] = {}
            by_article: dict[str, list[str]] = {}
            for c in comments:
                article_id = self._article_ids.get(c.article_id, c.article_id)
                by_article.setdefault(article_id, []).append(c.external_id)
            for article_id, external_ids in by_article.items():
                result = self._conn.execute(
                    sa.select(comments_table.c.external_id, comments_table.c.id).where(
                        comments_table.c.article_id == article_id,
                        comments_table.c.external_id.in_(external_ids),
                    )
                )
                for external_id, stored_id in result.all():
                    existing[(article_id, external_id)] = stored_id

            rows = []
            for c in comments:
                article_id = self._article_ids.get(c.article_id, c.article_id)
                final_id = existing.get((article_id, c.external_id), c.id)
                self._comment_ids[c.id] = final_id
                parent_id = None
                if c.parent_id is not None:
                    parent_id = self._comment_ids.get(c.parent_id, c.parent_id)
                rows.append(
                    {
                        "id": final_id,
                        "article_id": article_id,
                        "external_id": c.external_id,
                        "author": c.author,
                        "content": c.content,
                        "written_at": c.written_at,
                        "parent_id": parent_id,
                        "depth": c.depth,
                    }
                )

            stmt = sqlite_insert(comments_table)
            stmt = stmt.on_conflict_do_update(
                index_elements=["article_id", "external_id"],
                set_={
                    "author": stmt.excluded.author,
                    "content": stmt.excluded.content,
                    "written_at": stmt.excluded.written_at,
                    "parent_id": stmt.excluded.parent_id,
                    "depth": stmt.excluded.depth,
                },
            )
            self._conn.execute(stmt, rows)

        return len(rows)

    def commit(self) -> None:
        try:
            with _store_errors("commit"):
                self._tx.commit()
        finally:
            self._close()

    def rollback(self) -> None:
        if self._closed:
            return
        try:
            with _store_errors("rollback"):
                self._tx.rollback()
        finally:
            self._close()

    def _close(self) -> None:
        if not self._closed:
            self._closed = True
            self._conn.close()

    def __enter__(self) -> "WriteTransaction":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            self.rollback()
        elif not self._closed:
            self.commit()


class Store:
    """SQLAlchemy-backed facade over the embedded SQLite database."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.engine: Engine = sa.create_engine(
            f"sqlite:///{db_path}",
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_MS / 1000},
        )
        event.listen(self.engine, "connect", _configure_sqlite_connection)

    def init_schema(self) -> None:
        with _store_errors("create schema"):
            metadata.create_all(self.engine)
        logger.info("store_schema_ready", db_path=self.db_path)

    def close(self) -> None:
        self.engine.dispose()

    def ping(self) -> None:
        with _store_errors("ping"), self.engine.connect() as conn:
            conn.execute(sa.text("SELECT 1"))

    # ------------------------------------------------------------------ #
    # Sources
    # ------------------------------------------------------------------ #

    def create_source(self, source: Source) -> Source:
        with _store_errors("create source"), self.engine.begin() as conn:
            conn.execute(
                sources_table.insert().values(
                    id=source.id,
                    type=source.type,
                    config=source.config,
                    external_id=source.external_id,
                    last_run_at=source.last_run_at,
                    last_success_at=source.last_success_at,
                    last_error=source.last_error or None,
                    status=source.status,
                    created_at=source.created_at,
                )
            )
        return source

    def list_all_sources(self) -> list[Source]:
        query = sa.select(sources_table).order_by(sources_table.c.created_at, sources_table.c.id)
        with _store_errors("list sources"), self.engine.connect() as conn:
            return [_row_to_source(row) for row in conn.execute(query)]

    def get_source(self, source_id: str) -> Source | None:
        query = sa.select(sources_table).where(sources_table.c.id == source_id)
        with _store_errors("get source"), self.engine.connect() as conn:
            row = conn.execute(query).first()
        return _row_to_source(row) if row is not None else None

    def update_source_status(self, source_id: str, status: SourceStatus | str) -> None:
        value = status.value if isinstance(status, SourceStatus) else status
        self._update_source(source_id, "update source status", status=value)

    def claim_source(self, source_id: str) -> bool:
        """Atomically flip a source to running unless it already is."""
        stmt = (
            sources_table.update()
            .where(
                sources_table.c.id == source_id,
                sources_table.c.status != SourceStatus.RUNNING.value,
            )
            .values(status=SourceStatus.RUNNING.value)
        )
        with _store_errors("claim source"), self.engine.begin() as conn:
            return conn.execute(stmt).rowcount == 1

    def reset_running_sources(self) -> int:
        """Put rows left in running by a previous process back to idle."""
        stmt = (
            sources_table.update()
            .where(sources_table.c.status == SourceStatus.RUNNING.value)
            .values(status=SourceStatus.IDLE.value)
        )
        with _store_errors("reset running sources"), self.engine.begin() as conn:
            return conn.execute(stmt).rowcount

    def record_success(self, source_id: str, now: datetime) -> None:
        self._update_source(
            source_id,
            "record success",
            last_run_at=now,
            last_success_at=now,
            last_error=None,
        )

    def record_error(self, source_id: str, now: datetime, message: str) -> None:
        self._update_source(source_id, "record error", last_run_at=now, last_error=message)

    def last_run_at(self) -> datetime | None:
        query = sa.select(sa.func.max(sources_table.c.last_run_at))
        with _store_errors("read last run"), self.engine.connect() as conn:
            return conn.execute(query).scalar()

    def _update_source(self, source_id: str, action: str, **values: Any) -> None:
        stmt = sources_table.update().where(sources_table.c.id == source_id).values(**values)
        with _store_errors(action), self.engine.begin() as conn:
            conn.execute(stmt)

    # ------------------------------------------------------------------ #
    # Articles / comments
    # ------------------------------------------------------------------ #

    def begin_write(self) -> WriteTransaction:
        with _store_errors("begin transaction"):
            conn = self.engine.connect()
            try:
                return WriteTransaction(conn)
            except SQLAlchemyError:
                conn.close()
                raise

    def list_articles(self, source_id: str | None = None) -> list[Article]:
        query = sa.select(articles_table).order_by(articles_table.c.created_at)
        if source_id is not None:
            query = query.where(articles_table.c.source_id == source_id)
        with _store_errors("list articles"), self.engine.connect() as conn:
            return [
                Article(
                    id=row.id,
                    source_id=row.source_id,
                    external_id=row.external_id,
                    title=row.title or "",
                    author=row.author or "",
                    content=row.content or "",
                    url=row.url or "",
                    written_at=row.written_at,
                    metadata=row._mapping["metadata"] or {},
                    created_at=row.created_at,
                )
                for row in conn.execute(query)
            ]

    def list_comments(self, article_id: str | None = None) -> list[Comment]:
        query = sa.select(comments_table).order_by(comments_table.c.depth, comments_table.c.external_id)
        if article_id is not None:
            query = query.where(comments_table.c.article_id == article_id)
        with _store_errors("list comments"), self.engine.connect() as conn:
            return [
                Comment(
                    id=row.id,
                    article_id=row.article_id,
                    external_id=row.external_id,
                    author=row.author or "",
                    content=row.content or "",
                    written_at=row.written_at,
                    parent_id=row.parent_id,
                    depth=row.depth,
                )
                for row in conn.execute(query)
            ]

    def metrics(self) -> dict[str, Any]:
        today = utc_now().replace(hour=0, minute=0, second=0, microsecond=0)
        count = sa.func.count()
        with _store_errors("read metrics"), self.engine.connect() as conn:
            return {
                "total_sources": conn.execute(sa.select(count).select_from(sources_table)).scalar_one(),
                "total_articles": conn.execute(sa.select(count).select_from(articles_table)).scalar_one(),
                "articles_today": conn.execute(
                    sa.select(count)
                    .select_from(articles_table)
                    .where(articles_table.c.created_at >= today)
                ).scalar_one(),
                "sources_with_errors": conn.execute(
                    sa.select(count)
                    .select_from(sources_table)
                    .where(sources_table.c.last_error.is_not(None), sources_table.c.last_error != "")
                ).scalar_one(),
                "last_crawl": conn.execute(sa.select(sa.func.max(sources_table.c.last_run_at))).scalar(),
                "running_sources": conn.execute(
                    sa.select(count)
                    .select_from(sources_table)
                    .where(sources_table.c.status == SourceStatus.RUNNING.value)
                ).scalar_one(),
            }
