from sqlalchemy import Column, Integer, String, DateTime, JSON
from datetime import datetime, timezone
from thinkspace.database import Base


class UsageEvent(Base):
    """One billed AI exchange; aggregated elsewhere for quotas and reporting."""
    __tablename__ = "usage_events"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, index=True)
    event_type = Column(String(50), nullable=False, default="QUESTION")
    meta = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)
