from typing import Any, Dict

from sqlalchemy.ext.asyncio import async_sessionmaker

from thinkspace.models.usage_event import UsageEvent
from thinkspace.utils.logger import get_logger
from thinkspace.utils.metrics import inc

logger = get_logger(__name__)


class UsageRecorder:
    """UsageLog that writes one QUESTION row per completed exchange."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def record(self, user_id: str, metadata: Dict[str, Any]) -> None:
        async with self._session_factory() as db:
            db.add(UsageEvent(user_id=user_id, event_type="QUESTION", meta=dict(metadata)))
            await db.commit()
        inc("usage.recorded")
        logger.debug(
            "usage.recorded",
            extra={"user_id": user_id, "tokens": metadata.get("tokens"), "cost": metadata.get("cost")},
        )
