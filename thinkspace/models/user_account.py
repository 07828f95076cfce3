from sqlalchemy import Column, String, DateTime, Text
from datetime import datetime, timezone
from thinkspace.database import Base


class UserAccount(Base):
    """Subscription tier and optional BYOK key for a user id."""
    __tablename__ = "user_accounts"

    id = Column(String(255), primary_key=True)
    subscription_tier = Column(String(20), nullable=False, default="free")  # free | paid

    # Fernet token of the user's own OpenRouter key (BYOK)
    openrouter_key_encrypted = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
