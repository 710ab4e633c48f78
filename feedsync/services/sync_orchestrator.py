"""
Sync Orchestrator - drains the local mutation queue to the remote service.

Pipeline (one cycle):
1. Read entries below the retry limit, oldest first
2. Skip the cycle unless a retry is pending, enough changes piled up,
   or the oldest change went stale (saves quota on a quiet queue)
3. Group by action type, chunk each group into batches
4. Send batches one at a time through the token manager
5. Delete acknowledged entries / bump sync_attempts on failed ones

A periodic asyncio task and the manual trigger share process_queue();
an in-flight flag makes sure only one cycle runs at a time.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from feedsync.exceptions import CredentialError, RemoteServiceError, TokenRefreshError
from feedsync.models.sync_queue import ActionType, QueueEntry
from feedsync.services.clock import Clock, to_utc_naive
from feedsync.services.db_service import QueueStore, SyncStateStore
from feedsync.services.token_manager import TokenManager
from feedsync.services.usage_tracker import UsageTracker

logger = logging.getLogger(__name__)

SERVICE_NAME = "inoreader"

READ_TAG = "user/-/state/com.google/read"
STARRED_TAG = "user/-/state/com.google/starred"

# action_type -> (form key, tag); "a" adds the tag, "r" removes it
TAG_MUTATIONS = {
    ActionType.READ.value: ("a", READ_TAG),
    ActionType.UNREAD.value: ("r", READ_TAG),
    ActionType.STAR.value: ("a", STARRED_TAG),
    ActionType.UNSTAR.value: ("r", STARRED_TAG),
}

LAST_PUSH_KEY = "last_push_at"


@dataclass
class SyncPolicy:
    """Thresholds that decide when and how much to sync."""
    interval_seconds: float = 300
    min_changes: int = 5
    staleness_seconds: float = 900
    batch_size: int = 100
    max_retries: int = 3
    backoff_base_seconds: float = 600

    @classmethod
    def from_settings(cls, settings) -> "SyncPolicy":
        return cls(
            interval_seconds=settings.sync_interval_seconds,
            min_changes=settings.sync_min_changes,
            staleness_seconds=settings.sync_staleness_seconds,
            batch_size=max(1, settings.sync_batch_size),
            max_retries=settings.sync_max_retries,
            backoff_base_seconds=settings.sync_retry_backoff_seconds,
        )


class CycleStatus(str, Enum):
    """How a cycle ended."""
    ALREADY_RUNNING = "already_running"
    EMPTY = "empty"
    SKIPPED = "skipped"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class SyncCycleResult:
    status: CycleStatus
    pending: int = 0
    batches_sent: int = 0
    batches_failed: int = 0
    items_synced: int = 0
    items_failed: int = 0
    duration_ms: int = 0
    message: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def group_by_action(entries: Iterable[QueueEntry]) -> dict[str, list[QueueEntry]]:
    """Group entries by action type, keeping created_at order inside each group."""
    groups: dict[str, list[QueueEntry]] = {}
    for entry in entries:
        groups.setdefault(entry.action_type, []).append(entry)
    return groups


def chunk(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def build_edit_tag_form(action_type: str, remote_item_ids: list[str]) -> dict:
    """Form body for the edit-tag endpoint."""
    mutation = TAG_MUTATIONS.get(action_type)
    if mutation is None:
        raise ValueError(f"Unknown action type: {action_type}")
    key, tag = mutation
    return {"i": list(remote_item_ids), key: tag}


class SyncOrchestrator:
    """Pushes queued read/starred mutations to the remote in batches."""

    def __init__(
        self,
        queue: QueueStore,
        token_manager: TokenManager,
        usage_tracker: UsageTracker,
        edit_tag_url: str,
        policy: SyncPolicy | None = None,
        state_store: SyncStateStore | None = None,
        clock: Clock | None = None,
    ):
        self.queue = queue
        self.token_manager = token_manager
        self.usage = usage_tracker
        self.edit_tag_url = edit_tag_url
        self.policy = policy or SyncPolicy()
        self.state_store = state_store
        self.clock = clock or Clock()

        self._is_processing = False
        self._timer_task: Optional[asyncio.Task] = None
        self._cycle_tasks: set[asyncio.Task] = set()
        # Non-authoritative: when each failed entry is next worth retrying.
        # sync_attempts in the queue table is the source of truth.
        self._backoff_hints: dict[int, datetime] = {}

        self.last_processed_time: Optional[datetime] = None
        self.last_error: Optional[str] = None

    # ============ STATE ============

    @property
    def is_processing(self) -> bool:
        return self._is_processing

    @property
    def is_running(self) -> bool:
        """True while the periodic timer is installed."""
        return self._timer_task is not None and not self._timer_task.done()

    def backoff_hint(self, entry_id: int) -> Optional[datetime]:
        return self._backoff_hints.get(entry_id)

    # ============ CYCLE ============

    async def process_queue(self) -> SyncCycleResult:
        """
        Run one drain cycle.

        Returns immediately with ALREADY_RUNNING when another cycle is in
        flight. Credential errors abort the cycle and propagate.
        """
        if self._is_processing:
            logger.info("Sync already in progress, skipping this cycle")
            return SyncCycleResult(CycleStatus.ALREADY_RUNNING, message="Sync already in progress")

        self._is_processing = True
        started = time.monotonic()
        try:
            result = await self._run_cycle()
        finally:
            self._is_processing = False

        result.duration_ms = int((time.monotonic() - started) * 1000)
        if result.status == CycleStatus.COMPLETED:
            logger.info(
                "Sync completed in %dms: %d synced, %d failed (%d/%d batches ok)",
                result.duration_ms, result.items_synced, result.items_failed,
                result.batches_sent, result.batches_sent + result.batches_failed,
            )
        return result

    async def trigger_manual_sync(self) -> SyncCycleResult:
        """Out-of-band cycle; reports instead of waiting when one is running."""
        logger.info("Manual sync triggered")
        return await self.process_queue()

    def should_sync(self, entries: list[QueueEntry]) -> tuple[bool, str]:
        """
        Decide whether a non-empty queue is worth a cycle.

        entries must be ordered by created_at ascending.
        """
        has_retries = any(entry.sync_attempts > 0 for entry in entries)
        oldest = to_utc_naive(entries[0].created_at)
        oldest_age = (self.clock.now() - oldest).total_seconds() if oldest else 0
        enough = len(entries) >= self.policy.min_changes
        stale = oldest_age >= self.policy.staleness_seconds

        if has_retries or enough or stale:
            return True, ""

        return False, (
            f"Only {len(entries)} changes pending, waiting for minimum of "
            f"{self.policy.min_changes}. Oldest change is {int(oldest_age // 60)} minutes old."
        )

    async def _run_cycle(self) -> SyncCycleResult:
        try:
            entries = self.queue.list_pending(self.policy.max_retries)
        except SQLAlchemyError as e:
            logger.error("Error fetching sync queue: %s", e)
            self.last_error = f"queue read failed: {e}"
            return SyncCycleResult(CycleStatus.ERROR, message="Could not read the sync queue")

        if not entries:
            logger.debug("No pending changes to sync")
            return SyncCycleResult(CycleStatus.EMPTY, message="No pending changes")

        logger.info("Found %d pending changes", len(entries))

        worth_it, reason = self.should_sync(entries)
        if not worth_it:
            logger.info(reason)
            return SyncCycleResult(CycleStatus.SKIPPED, pending=len(entries), message=reason)

        result = SyncCycleResult(CycleStatus.COMPLETED, pending=len(entries))

        # Sequential on purpose: the remote rate limit is global
        for action_type, group in group_by_action(entries).items():
            logger.info("Processing %d %s changes", len(group), action_type)
            for batch in chunk(group, self.policy.batch_size):
                if await self._sync_batch(action_type, batch):
                    result.batches_sent += 1
                    result.items_synced += len(batch)
                else:
                    result.batches_failed += 1
                    result.items_failed += len(batch)

        self.last_processed_time = self.clock.now()
        self._save_last_push()
        if result.batches_failed == 0:
            self.last_error = None
        result.message = f"Synced {result.items_synced} changes, {result.items_failed} failed"
        return result

    # ============ BATCHES ============

    async def _sync_batch(self, action_type: str, batch: list[QueueEntry]) -> bool:
        """Send one batch; True when the remote acknowledged it."""
        try:
            await self._send_batch(action_type, batch)
        except TokenRefreshError as e:
            # Grant rejected after a 401: counts against this batch only
            self._handle_failure(batch, e)
            return False
        except CredentialError:
            raise
        except (httpx.HTTPError, RemoteServiceError, ValueError) as e:
            self._handle_failure(batch, e)
            return False

        ids = [entry.id for entry in batch]
        try:
            self.queue.delete_many(ids)
        except SQLAlchemyError as e:
            # Entries stay queued and get re-sent; tag edits are idempotent
            logger.error("Error deleting %d synced items: %s", len(ids), e)
        else:
            for entry_id in ids:
                self._backoff_hints.pop(entry_id, None)
            logger.info("Successfully synced %d %s changes", len(batch), action_type)

        self.usage.track(SERVICE_NAME, increment=1)
        return True

    async def _send_batch(self, action_type: str, batch: list[QueueEntry]) -> httpx.Response:
        form = build_edit_tag_form(action_type, [entry.remote_item_id for entry in batch])

        response = await self.token_manager.authenticated_request(
            "POST",
            self.edit_tag_url,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

        # Quota headers matter most on failures (429), so capture first
        self.usage.capture_headers(SERVICE_NAME, response.headers)

        if not response.is_success:
            raise RemoteServiceError(
                f"Remote sync failed: {response.status_code} {response.reason_phrase} - {response.text[:200]}",
                status_code=response.status_code,
            )
        return response

    def _handle_failure(self, batch: list[QueueEntry], error: Exception) -> None:
        logger.error("Batch of %d failed: %s", len(batch), error)
        now = self.clock.now()

        for entry in batch:
            attempts = entry.sync_attempts + 1
            try:
                self.queue.record_attempt(entry.id, attempts, now)
            except SQLAlchemyError as e:
                logger.error("Error updating retry attempts for %s: %s", entry.id, e)
                continue

            if attempts < self.policy.max_retries:
                backoff = self.policy.backoff_base_seconds * 2 ** (attempts - 1)
                self._backoff_hints[entry.id] = now + timedelta(seconds=backoff)
                logger.info(
                    "Will retry %s in %.0f minutes (attempt %d/%d)",
                    entry.id, backoff / 60, attempts, self.policy.max_retries,
                )
            else:
                self._backoff_hints.pop(entry.id, None)
                logger.warning("Max retries reached for %s, will not retry", entry.id)

        self.last_error = str(error)

    def _save_last_push(self) -> None:
        if self.state_store is None:
            return
        try:
            self.state_store.set(LAST_PUSH_KEY, self.last_processed_time.isoformat())
        except SQLAlchemyError as e:
            logger.error("Could not store %s: %s", LAST_PUSH_KEY, e)

    # ============ MAINTENANCE & STATS ============

    def get_queue_stats(self) -> Optional[dict]:
        """Queue counts plus scheduler state; None when the queue is unreadable."""
        try:
            stats = self.queue.stats(self.policy.max_retries)
        except SQLAlchemyError as e:
            logger.error("Error getting sync stats: %s", e)
            return None

        stats.update(
            is_running=self.is_running,
            is_processing=self._is_processing,
            last_processed_time=(
                self.last_processed_time.isoformat() if self.last_processed_time else None
            ),
            last_error=self.last_error,
        )
        return stats

    def clear_failed_items(self) -> int:
        """Delete entries that used up their retries. Never run automatically."""
        try:
            removed = self.queue.delete_failed(self.policy.max_retries)
        except SQLAlchemyError as e:
            logger.error("Error clearing failed items: %s", e)
            return 0

        for entry_id in removed:
            self._backoff_hints.pop(entry_id, None)
        logger.info("Cleared %d failed items from sync queue", len(removed))
        return len(removed)

    # ============ SCHEDULING ============

    def start(self, interval_seconds: float | None = None) -> None:
        """
        Install the periodic timer (replacing any existing one).

        The first cycle starts right away. Must be called from a running
        event loop.
        """
        interval = interval_seconds or self.policy.interval_seconds
        self.stop()
        self._timer_task = asyncio.get_running_loop().create_task(self._periodic(interval))
        logger.info("Started periodic sync every %.1f minutes", interval / 60)

    def stop(self) -> None:
        """Remove the timer. A cycle already in flight runs to completion."""
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None
            logger.info("Stopped periodic sync")

    async def wait_idle(self) -> None:
        """Wait for cycles started by the timer to finish."""
        if self._cycle_tasks:
            await asyncio.gather(*self._cycle_tasks, return_exceptions=True)

    async def _periodic(self, interval: float) -> None:
        while True:
            if not self._is_processing:
                task = asyncio.create_task(self._timed_cycle())
                self._cycle_tasks.add(task)
                task.add_done_callback(self._cycle_tasks.discard)
            await asyncio.sleep(interval)

    async def _timed_cycle(self) -> None:
        try:
            await self.process_queue()
        except CredentialError as e:
            self.last_error = str(e)
            logger.critical("Sync stopped by credential error: %s", e)
        except Exception as e:
            self.last_error = str(e)
            logger.exception("Unexpected error in sync cycle")
