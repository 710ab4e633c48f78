"""
SyncState model for storing persistent sync metadata.

Used to store:
- last_push_at: When the queue was last drained to the remote
- last_pull_at: When the reading list was last pulled from the remote
"""

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.sql import func
from feedsync.database import Base


class SyncState(Base):
    """
    Key-value store for sync state metadata.

    Persists across server restarts, unlike in-memory variables.
    """
    __tablename__ = "sync_state"

    id = Column(Integer, primary_key=True)
    key = Column(String(50), unique=True, nullable=False, index=True)
    value = Column(String(255))
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<SyncState(key={self.key}, value={self.value})>"
