"""
Remote pull - applies the remote reading list to local articles.

The push side (sync_orchestrator) sends local intent out; this side brings
remote read/starred state in. Disagreements on articles with unsynced
local changes go through the ConflictDetector and land in the audit log.
"""

import logging
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from feedsync.exceptions import RemoteServiceError
from feedsync.services.clock import Clock
from feedsync.services.conflict_detector import ConflictDetector, ConflictLogSink, has_local_changes
from feedsync.services.db_service import ArticleStore, SyncStateStore
from feedsync.services.token_manager import TokenManager
from feedsync.services.usage_tracker import UsageTracker

logger = logging.getLogger(__name__)

SERVICE_NAME = "inoreader"
READING_LIST_PATH = "/stream/contents/user/-/state/com.google/reading-list"

# Stream items carry the user's numeric id ("user/1005/state/com.google/read")
READ_SUFFIX = "/state/com.google/read"
STARRED_SUFFIX = "/state/com.google/starred"

LAST_PULL_KEY = "last_pull_at"


@dataclass
class PullResult:
    session_id: str
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    conflicts: int = 0
    local_kept: int = 0
    conflict_summary: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def item_to_remote_record(item: dict) -> dict:
    """Map one stream item to the fields we keep locally."""
    categories = item.get("categories") or []
    links = item.get("canonical") or item.get("alternate") or []
    published = item.get("published")

    return {
        "remote_id": item["id"],
        "feed_id": (item.get("origin") or {}).get("streamId"),
        "title": item.get("title"),
        "url": links[0].get("href") if links else None,
        "published_at": (
            datetime.fromtimestamp(int(published), tz=timezone.utc).replace(tzinfo=None)
            if published else None
        ),
        "is_read": any(c.endswith(READ_SUFFIX) for c in categories),
        "is_starred": any(c.endswith(STARRED_SUFFIX) for c in categories),
    }


class RemotePullService:
    """Fetches the reading list and reconciles it with the local article table."""

    def __init__(
        self,
        token_manager: TokenManager,
        articles: ArticleStore,
        usage_tracker: UsageTracker,
        api_base: str,
        conflict_policy: str = "remote",
        state_store: SyncStateStore | None = None,
        conflict_sink: ConflictLogSink | None = None,
        clock: Clock | None = None,
    ):
        self.token_manager = token_manager
        self.articles = articles
        self.usage = usage_tracker
        self.api_base = api_base.rstrip("/")
        self.conflict_policy = conflict_policy
        self.state_store = state_store
        self.conflict_sink = conflict_sink
        self.clock = clock or Clock()

        self.last_detector: Optional[ConflictDetector] = None

    def last_report(self) -> Optional[str]:
        """Conflict report of the most recent pull, if any."""
        return self.last_detector.report() if self.last_detector else None

    async def fetch_items(self, max_articles: int) -> list[dict]:
        response = await self.token_manager.authenticated_request(
            "GET",
            f"{self.api_base}{READING_LIST_PATH}",
            params={"n": max_articles},
        )
        self.usage.capture_headers(SERVICE_NAME, response.headers)

        if not response.is_success:
            raise RemoteServiceError(
                f"Reading list fetch failed: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )

        self.usage.track(SERVICE_NAME, increment=1)
        return response.json().get("items") or []

    async def pull(self, max_articles: int = 100) -> PullResult:
        """
        Fetch up to max_articles items and apply them locally.

        Existing articles take the remote flags, except under the
        prefer-local policy when they carry unsynced local changes.
        """
        items = await self.fetch_items(max_articles)
        # A repeated id keeps its last occurrence
        records = list({
            record["remote_id"]: record
            for record in (item_to_remote_record(item) for item in items if item.get("id"))
        }.values())

        now = self.clock.now()
        detector = ConflictDetector(
            session_id=f"sync_{now.isoformat()}_{uuid4().hex[:8]}",
            sink=self.conflict_sink,
            clock=self.clock,
        )
        result = PullResult(session_id=detector.session_id, fetched=len(records))

        local_index = {
            remote_id: article.to_sync_dict()
            for remote_id, article in self.articles.get_by_remote_ids(
                r["remote_id"] for r in records
            ).items()
        }

        rows = []
        for record in records:
            local = local_index.get(record["remote_id"])
            row = dict(record, last_sync_update=now)

            if local is not None:
                # Kept local state stays "unsynced" until the push side sends it
                keep_local = self.conflict_policy == "prefer-local" and has_local_changes(local)
                conflict = detector.detect_conflict(
                    local, record, resolution="local" if keep_local else "remote"
                )
                if conflict:
                    result.conflicts += 1
                if keep_local:
                    row["is_read"] = local["is_read"]
                    row["is_starred"] = local["is_starred"]
                    del row["last_sync_update"]
                    result.local_kept += 1

            rows.append(row)

        result.inserted, result.updated = self.articles.save_remote_state(rows)

        detector.write_log()
        result.conflict_summary = detector.summary().to_dict()
        self.last_detector = detector

        if self.state_store is not None:
            self.state_store.set(LAST_PULL_KEY, now.isoformat())

        logger.info(
            "Pulled %d articles: %d new, %d updated, %d conflicts",
            result.fetched, result.inserted, result.updated, result.conflicts,
        )
        if result.conflicts:
            logger.info(detector.report())
        return result
