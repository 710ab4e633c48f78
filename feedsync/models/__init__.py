"""
SQLAlchemy models for the sync service.

This package contains:
- QueueEntry: Pending local read/starred mutations awaiting the remote
- ApiUsage: Per-service, per-day call counts and rate-limit zone usage
- Article: Local copy of remote articles with sync timestamps
- SyncState: Key-value sync metadata (last push, last pull)
"""

from feedsync.models.article import Article
from feedsync.models.api_usage import ApiUsage
from feedsync.models.sync_queue import QueueEntry, ActionType
from feedsync.models.sync_state import SyncState

__all__ = ["Article", "ApiUsage", "QueueEntry", "ActionType", "SyncState"]
