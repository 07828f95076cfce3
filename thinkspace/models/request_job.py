"""
SQLAlchemy model for the conversation_request_jobs table: the durable,
priority-ordered queue of deferred AI requests.
"""
from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, Index, func
from thinkspace.database import Base


class ConversationRequestJob(Base):
    __tablename__ = "conversation_request_jobs"

    # Autoincrement key doubles as the FIFO tiebreaker inside a priority band
    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(255), nullable=False, index=True)

    # 10 = paid, 1 = free
    priority = Column(Integer, nullable=False, default=1)

    # Status: waiting | delayed → active → completed | failed
    state = Column(String(20), nullable=False, default="waiting", index=True)
    progress = Column(String(255), nullable=True)

    # Payload and result
    payload = Column(JSON, nullable=False)
    result_data = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)

    # Retry tracking
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    available_at = Column(DateTime(timezone=True), nullable=False)

    # Timestamps
    enqueued_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_request_jobs_claim", "state", "priority", "id"),
    )
