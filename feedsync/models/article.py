"""
Article model - local copy of an article on the remote reading list.

remote_id is the natural key shared with the remote service. The two sync
timestamps drive conflict detection:
- last_local_update: when the user last changed read/starred locally
- last_sync_update: when remote state was last applied to this row
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text
from sqlalchemy.sql import func
from feedsync.database import Base


class Article(Base):
    """Local article with read/starred state."""
    __tablename__ = "articles"

    id = Column(Integer, primary_key=True)
    remote_id = Column(String(255), unique=True, nullable=False, index=True)
    feed_id = Column(String(512), index=True)

    title = Column(Text)
    url = Column(String(2048))
    published_at = Column(DateTime)

    # ============ STATE ============
    is_read = Column(Boolean, nullable=False, default=False)
    is_starred = Column(Boolean, nullable=False, default=False)

    # ============ SYNC TRACKING ============
    last_local_update = Column(DateTime)
    last_sync_update = Column(DateTime)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Article(id={self.id}, remote_id={self.remote_id}, read={self.is_read}, starred={self.is_starred})>"

    def to_sync_dict(self) -> dict:
        """Fields the conflict detector compares."""
        return {
            "id": self.id,
            "remote_id": self.remote_id,
            "feed_id": self.feed_id,
            "is_read": self.is_read,
            "is_starred": self.is_starred,
            "last_local_update": self.last_local_update,
            "last_sync_update": self.last_sync_update,
        }
