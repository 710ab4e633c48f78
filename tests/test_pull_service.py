"""Tests for applying the remote reading list locally."""

from datetime import datetime, timedelta

import httpx
import pytest

from conftest import API_BASE, read_jsonl
from feedsync.exceptions import RemoteServiceError
from feedsync.models.article import Article
from feedsync.services.conflict_detector import JsonlConflictSink
from feedsync.services.pull_service import RemotePullService, item_to_remote_record

STREAM_PATH = "/reader/api/0/stream/contents/user/-/state/com.google/reading-list"
READ = "user/1005921515/state/com.google/read"
STARRED = "user/1005921515/state/com.google/starred"


def stream_item(item_id, categories=(), **extra) -> dict:
    item = {
        "id": item_id,
        "title": f"Title {item_id}",
        "published": 1736942400,
        "canonical": [{"href": f"https://example.com/{item_id}"}],
        "origin": {"streamId": "feed/https://example.com/rss"},
        "categories": list(categories),
    }
    item.update(extra)
    return item


def stream(*items, headers=None) -> httpx.Response:
    return httpx.Response(200, json={"items": list(items)}, headers=headers or {})


def add_article(session_factory, **fields) -> Article:
    article = Article(**fields)
    with session_factory() as db:
        db.add(article)
        db.commit()
        db.refresh(article)
    return article


@pytest.fixture
def conflict_log(tmp_path):
    return tmp_path / "logs" / "sync-conflicts.jsonl"


def make_service(token_manager, article_store, usage_tracker, state_store, clock, conflict_log, policy="remote"):
    return RemotePullService(
        token_manager=token_manager,
        articles=article_store,
        usage_tracker=usage_tracker,
        api_base=API_BASE,
        conflict_policy=policy,
        state_store=state_store,
        conflict_sink=JsonlConflictSink(conflict_log),
        clock=clock,
    )


@pytest.fixture
def service(token_manager, article_store, usage_tracker, state_store, clock, conflict_log, stored_credential):
    return make_service(token_manager, article_store, usage_tracker, state_store, clock, conflict_log)


class TestItemMapping:
    def test_flags_from_categories(self):
        record = item_to_remote_record(stream_item("a", [READ, STARRED, "user/-/label/Tech"]))
        assert record["is_read"] is True
        assert record["is_starred"] is True
        assert record["feed_id"] == "feed/https://example.com/rss"
        assert record["url"] == "https://example.com/a"
        assert record["published_at"] == datetime(2025, 1, 15, 12, 0)

    def test_alternate_link_and_no_categories(self):
        item = stream_item("b", canonical=None, alternate=[{"href": "https://alt"}])
        item.pop("categories")
        record = item_to_remote_record(item)
        assert record["url"] == "https://alt"
        assert record["is_read"] is False


class TestPull:
    async def test_inserts_new_articles(self, service, remote, article_store, state_store, clock):
        remote.on(STREAM_PATH, stream(stream_item("a", [READ]), stream_item("b")))

        result = await service.pull(50)

        assert (result.fetched, result.inserted, result.updated) == (2, 2, 0)
        a = article_store.get_by_remote_id("a")
        assert a.is_read is True
        assert a.last_sync_update == clock.now()
        assert state_store.get("last_pull_at") == clock.now().isoformat()

        request = remote.calls(STREAM_PATH)[0]
        assert request.url.params["n"] == "50"
        assert request.headers["Authorization"] == "Bearer access-1"

    async def test_repeated_item_is_stored_once(self, service, remote, article_store):
        remote.on(STREAM_PATH, stream(stream_item("a"), stream_item("b"), stream_item("a", [STARRED])))

        result = await service.pull()

        assert (result.fetched, result.inserted) == (2, 2)
        assert article_store.get_by_remote_id("a").is_starred is True

    async def test_remote_wins_by_default(
        self, service, remote, session_factory, article_store, clock, conflict_log
    ):
        add_article(
            session_factory, remote_id="a", is_read=True, is_starred=False,
            last_local_update=clock.now() - timedelta(minutes=5),
            last_sync_update=clock.now() - timedelta(hours=1),
        )
        remote.on(STREAM_PATH, stream(stream_item("a")))

        result = await service.pull()

        assert result.conflicts == 1
        assert result.conflict_summary["read_status"] == 1
        assert article_store.get_by_remote_id("a").is_read is False

        [logged] = read_jsonl(conflict_log)
        assert logged["resolution"] == "remote"
        assert logged["conflict_type"] == "read_status"
        assert "Total Conflicts: 1" in service.last_report()

    async def test_prefer_local_keeps_unsynced_changes(
        self, token_manager, article_store, usage_tracker, state_store, clock, conflict_log,
        stored_credential, remote, session_factory,
    ):
        service = make_service(
            token_manager, article_store, usage_tracker, state_store, clock, conflict_log, policy="prefer-local"
        )
        synced_at = clock.now() - timedelta(hours=1)
        add_article(
            session_factory, remote_id="a", is_read=False, is_starred=True,
            last_local_update=clock.now() - timedelta(minutes=5), last_sync_update=synced_at,
        )
        remote.on(STREAM_PATH, stream(stream_item("a", [READ])))

        result = await service.pull()

        article = article_store.get_by_remote_id("a")
        assert (article.is_read, article.is_starred) == (False, True)
        assert article.last_sync_update == synced_at
        assert result.local_kept == 1
        assert read_jsonl(conflict_log)[0]["resolution"] == "local"

    async def test_already_synced_change_takes_remote_state(
        self, token_manager, article_store, usage_tracker, state_store, clock, conflict_log,
        stored_credential, remote, session_factory,
    ):
        service = make_service(
            token_manager, article_store, usage_tracker, state_store, clock, conflict_log, policy="prefer-local"
        )
        add_article(
            session_factory, remote_id="a", is_read=False,
            last_local_update=clock.now() - timedelta(hours=2),
            last_sync_update=clock.now() - timedelta(hours=1),
        )
        remote.on(STREAM_PATH, stream(stream_item("a", [STARRED])))

        result = await service.pull()

        assert result.updated == 1
        assert result.local_kept == 0
        assert article_store.get_by_remote_id("a").is_starred is True

    async def test_agreeing_state_is_not_a_conflict(self, service, remote, session_factory, conflict_log, clock):
        add_article(
            session_factory, remote_id="a", is_read=True,
            last_local_update=clock.now(), last_sync_update=clock.now() - timedelta(hours=1),
        )
        remote.on(STREAM_PATH, stream(stream_item("a", [READ])))

        result = await service.pull()

        assert result.conflicts == 0
        assert not conflict_log.exists()

    async def test_tracks_usage_and_headers(self, service, remote, usage_store, clock):
        remote.on(STREAM_PATH, stream(headers={"X-Reader-Zone1-Usage": "12", "X-Reader-Zone1-Limit": "10000"}))

        await service.pull()

        row = usage_store.get("inoreader", clock.now().date())
        assert row.count == 1
        assert row.zone1_usage == 12

    async def test_error_response(self, service, remote, usage_store, clock):
        remote.on(STREAM_PATH, httpx.Response(503, headers={"X-Reader-Zone1-Usage": "99"}))

        with pytest.raises(RemoteServiceError):
            await service.pull()

        row = usage_store.get("inoreader", clock.now().date())
        assert row.zone1_usage == 99
        assert row.count == 0

    def test_no_report_before_first_pull(self, service):
        assert service.last_report() is None
