"""
QueueEntry model - pending local mutations awaiting the remote service.

Rows are written by the mutation layer when the user marks an article
read/unread/starred/unstarred, and deleted by the sync orchestrator once
the remote acknowledges the batch. Failed rows stay behind with a higher
sync_attempts until the maintenance purge removes them.
"""

import enum

from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from feedsync.database import Base


class ActionType(str, enum.Enum):
    """Local mutation that must be mirrored to the remote."""
    READ = "read"
    UNREAD = "unread"
    STAR = "star"
    UNSTAR = "unstar"


class QueueEntry(Base):
    """One pending read/starred mutation."""
    __tablename__ = "sync_queue"

    id = Column(Integer, primary_key=True)

    # Local article (optional - the remote id is what gets sent)
    article_id = Column(Integer, ForeignKey("articles.id", ondelete="SET NULL"))

    action_type = Column(String(10), nullable=False)  # read, unread, star, unstar
    remote_item_id = Column(String(255), nullable=False, index=True)

    # Retry bookkeeping (never decreases)
    sync_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    last_attempt_at = Column(DateTime)

    __table_args__ = (
        Index("ix_sync_queue_attempts_created", "sync_attempts", "created_at"),
    )

    def __repr__(self):
        return (
            f"<QueueEntry(id={self.id}, action={self.action_type}, "
            f"item={self.remote_item_id}, attempts={self.sync_attempts})>"
        )
