from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from collector.errors import StoreError
from collector.models import Article, Comment, SourceStatus, utc_now


def _article(source_id: str, external_id: str, title: str = "title") -> Article:
    return Article(
        source_id=source_id,
        external_id=external_id,
        title=title,
        author="alice",
        content="body",
        url=f"https://example.com/{external_id}",
        written_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        metadata={"score": 1},
    )


def _chain(article_id: str) -> list[Comment]:
    root = Comment(article_id=article_id, external_id="c1", author="a", content="root",
                   written_at=utc_now(), depth=0)
    child = Comment(article_id=article_id, external_id="c2", author="b", content="child",
                    written_at=utc_now(), parent_id=root.id, depth=1)
    grandchild = Comment(article_id=article_id, external_id="c3", author="c", content="grandchild",
                         written_at=utc_now(), parent_id=child.id, depth=2)
    return [root, child, grandchild]


def test_create_and_get_source(store, make_source):
    source = store.create_source(make_source("reddit", {"subreddit": "python"}))

    fetched = store.get_source(source.id)
    assert fetched is not None
    assert fetched.type == "reddit"
    assert fetched.status == SourceStatus.IDLE.value
    assert fetched.last_error == ""
    assert fetched.created_at.tzinfo is not None


def test_get_source_missing_returns_none(store):
    assert store.get_source("does-not-exist") is None


def test_list_all_sources_preserves_insertion_order(store, make_source):
    base = utc_now()
    ids = []
    for i in range(3):
        src = make_source("reddit", {"subreddit": f"s{i}"}, created_at=base + timedelta(seconds=i))
        ids.append(store.create_source(src).id)

    assert [s.id for s in store.list_all_sources()] == ids


def test_duplicate_type_external_id_is_rejected(store, make_source):
    store.create_source(make_source("reddit", {}, external_id="python"))
    with pytest.raises(StoreError):
        store.create_source(make_source("reddit", {}, external_id="python"))


def test_record_success_clears_error(store, make_source):
    source = store.create_source(make_source("reddit", {}))
    now = utc_now()

    store.record_error(source.id, now, "boom")
    assert store.get_source(source.id).last_error == "boom"
    assert store.get_source(source.id).last_success_at is None

    store.record_success(source.id, now)
    fetched = store.get_source(source.id)
    assert fetched.last_error == ""
    assert fetched.last_success_at is not None
    assert fetched.last_run_at is not None


def test_claim_source_is_exclusive(store, make_source):
    source = store.create_source(make_source("hackernews", {}))

    assert store.claim_source(source.id) is True
    assert store.claim_source(source.id) is False

    store.update_source_status(source.id, SourceStatus.IDLE)
    assert store.claim_source(source.id) is True


def test_reset_running_sources(store, make_source):
    stuck = store.create_source(make_source("reddit", {}))
    idle = store.create_source(make_source("reddit", {}))
    store.claim_source(stuck.id)

    assert store.reset_running_sources() == 1
    assert store.get_source(stuck.id).status == SourceStatus.IDLE.value
    assert store.get_source(idle.id).status == SourceStatus.IDLE.value
    assert store.claim_source(stuck.id) is True


def test_last_run_at_is_max_over_sources(store, make_source):
    a = store.create_source(make_source("reddit", {}))
    b = store.create_source(make_source("reddit", {}))
    assert store.last_run_at() is None

    early = datetime(2024, 1, 1, tzinfo=timezone.utc)
    late = datetime(2024, 6, 1, tzinfo=timezone.utc)
    store.record_success(a.id, early)
    store.record_error(b.id, late, "x")

    assert store.last_run_at() == late


def test_upsert_articles_is_idempotent(store, make_source):
    source = store.create_source(make_source("reddit", {}))

    with store.begin_write() as tx:
        tx.upsert_articles([_article(source.id, "p1"), _article(source.id, "p2")])
    first = {a.external_id: a for a in store.list_articles(source.id)}

    with store.begin_write() as tx:
        tx.upsert_articles([_article(source.id, "p1", title="edited"), _article(source.id, "p2")])
    second = {a.external_id: a for a in store.list_articles(source.id)}

    assert len(second) == 2
    assert second["p1"].id == first["p1"].id
    assert second["p1"].created_at == first["p1"].created_at
    assert second["p1"].title == "edited"
    assert second["p1"].metadata == {"score": 1}


def test_upsert_comments_remaps_to_stored_ids(store, make_source):
    source = store.create_source(make_source("hackernews", {}))

    for _ in range(2):
        article = _article(source.id, "12345")
        with store.begin_write() as tx:
            tx.upsert_articles([article])
            tx.upsert_comments(_chain(article.id))

    articles = store.list_articles(source.id)
    assert len(articles) == 1
    comments = store.list_comments(articles[0].id)
    assert len(comments) == 3

    by_ext = {c.external_id: c for c in comments}
    assert by_ext["c1"].parent_id is None
    assert by_ext["c2"].parent_id == by_ext["c1"].id
    assert by_ext["c3"].parent_id == by_ext["c2"].id
    assert [c.depth for c in comments] == [0, 1, 2]


def test_transaction_rolls_back_on_error(store, make_source):
    source = store.create_source(make_source("reddit", {}))

    with pytest.raises(RuntimeError):
        with store.begin_write() as tx:
            tx.upsert_articles([_article(source.id, "p1")])
            raise RuntimeError("boom")

    assert store.list_articles(source.id) == []


def test_comment_for_unknown_article_raises_store_error(store):
    orphan = Comment(article_id="missing", external_id="c1", author="a", content="x",
                     written_at=utc_now())
    with pytest.raises(StoreError):
        with store.begin_write() as tx:
            tx.upsert_comments([orphan])


def test_connection_pragmas(store):
    with store.engine.connect() as conn:
        assert conn.exec_driver_sql("PRAGMA journal_mode").scalar() == "wal"
        assert conn.exec_driver_sql("PRAGMA foreign_keys").scalar() == 1
        assert conn.exec_driver_sql("PRAGMA busy_timeout").scalar() == 5000


def test_metrics_counts(store, make_source):
    source = store.create_source(make_source("reddit", {}))
    with store.begin_write() as tx:
        tx.upsert_articles([_article(source.id, "p1")])
    store.record_error(source.id, utc_now(), "boom")

    metrics = store.metrics()
    assert metrics["total_sources"] == 1
    assert metrics["total_articles"] == 1
    assert metrics["articles_today"] == 1
    assert metrics["sources_with_errors"] == 1


def test_sqlalchemy_errors_become_store_errors(store, monkeypatch):
    def broken_connect(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    monkeypatch.setattr(store.engine, "connect", broken_connect)
    with pytest.raises(StoreError, match="ping"):
        store.ping()
