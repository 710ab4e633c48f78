"""
ApiUsage model - one row per (service, date).

count is our own tally of outbound calls; the zone columns mirror what the
remote reports in its rate-limit headers and stay NULL until a response
actually reports them.
"""

from sqlalchemy import Column, Integer, String, Date, DateTime, UniqueConstraint
from sqlalchemy.sql import func
from feedsync.database import Base


ZONE_FIELDS = ("zone1_usage", "zone1_limit", "zone2_usage", "zone2_limit", "reset_after")


class ApiUsage(Base):
    """Daily API usage for one remote service."""
    __tablename__ = "api_usage"

    id = Column(Integer, primary_key=True)
    service = Column(String(50), nullable=False)
    date = Column(Date, nullable=False)

    # Local call counter
    count = Column(Integer, nullable=False, default=0)

    # ============ REMOTE-REPORTED QUOTA ============
    zone1_usage = Column(Integer)  # read operations
    zone1_limit = Column(Integer)
    zone2_usage = Column(Integer)  # write operations
    zone2_limit = Column(Integer)
    reset_after = Column(Integer)  # seconds until the quota window resets

    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("service", "date", name="uq_api_usage_service_date"),
    )

    def __repr__(self):
        return f"<ApiUsage(service={self.service}, date={self.date}, count={self.count})>"

    def to_dict(self) -> dict:
        return {
            "service": self.service,
            "date": self.date.isoformat() if self.date else None,
            "count": self.count,
            "zone1_usage": self.zone1_usage,
            "zone1_limit": self.zone1_limit,
            "zone2_usage": self.zone2_usage,
            "zone2_limit": self.zone2_limit,
            "reset_after": self.reset_after,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
