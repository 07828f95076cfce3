"""
SQLAlchemy persistence for conversations and their messages.

Implements the ContextStore and MessageStore sides of the pipeline: loading
the technique prompt plus unarchived history, appending an exchange with
sequence numbers, and archiving everything older than the newest
`archive_threshold` messages.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from thinkspace.models.conversation import Conversation, ConversationMessage, Technique
from thinkspace.pipeline.errors import ContextNotFoundError
from thinkspace.pipeline.interfaces import AppendResult, ChatMessage, ConversationContext
from thinkspace.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_TECHNIQUES: Dict[str, str] = {
    "elenchus": (
        "You are a Socratic questioner using the elenchus method. Probe the user's "
        "assumptions with questions that expose contradictions. Do not hand out answers; "
        "let the user find the inconsistencies in their own reasoning."
    ),
    "dialectic": (
        "Lead the user through dialectical reasoning. Put opposing viewpoints side by side "
        "and ask questions that help them synthesize a better understanding."
    ),
    "maieutics": (
        "Help the user bring out ideas they already hold. Ask gentle, encouraging questions "
        "that draw out what they know instead of telling them."
    ),
    "definitional": (
        "Focus on precise definitions. Ask questions that pin down what key terms mean "
        "and where their boundaries lie."
    ),
    "analogical": (
        "Use analogies to shed light on the topic. Ask questions that connect the idea to "
        "familiar domains and test where the comparison breaks."
    ),
    "counterfactual": (
        "Explore alternatives. Ask what would follow if key facts or assumptions were "
        "different, and use the answers to test the user's reasoning."
    ),
}


class ConversationStore:
    def __init__(self, session_factory: async_sessionmaker, archive_threshold: int = 50):
        self._session_factory = session_factory
        self.archive_threshold = archive_threshold

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def seed_techniques(self) -> int:
        """Insert the built-in techniques that are missing. Returns how many were added."""
        async with self._session_factory() as db:
            existing = set((await db.execute(select(Technique.name))).scalars().all())
            added = 0
            for name, prompt in DEFAULT_TECHNIQUES.items():
                if name not in existing:
                    db.add(Technique(name=name, system_prompt=prompt, is_active=True, status="approved"))
                    added += 1
            await db.commit()
        if added:
            logger.info("techniques.seeded", extra={"count": added})
        return added

    async def create_conversation(self, user_id: str, technique: str, title: Optional[str] = None) -> Conversation:
        async with self._session_factory() as db:
            found = await db.scalar(select(Technique.id).where(Technique.name == technique, Technique.is_active.is_(True)))
            if found is None:
                raise ValueError(f"Unknown technique: {technique}")
            conversation = Conversation(user_id=user_id, technique=technique, title=title)
            db.add(conversation)
            await db.commit()
            await db.refresh(conversation)
            logger.info("conversation.created", extra={"conversation_id": conversation.id, "user_id": user_id})
            return conversation

    async def get_conversation(self, conversation_id: str, user_id: Optional[str] = None) -> Optional[Conversation]:
        """Fetch a conversation; with user_id, only if that user owns it."""
        async with self._session_factory() as db:
            query = select(Conversation).where(Conversation.id == conversation_id)
            if user_id is not None:
                query = query.where(Conversation.user_id == user_id)
            return await db.scalar(query)

    async def delete_conversation(self, conversation_id: str, user_id: str) -> bool:
        async with self._session_factory() as db:
            owned = await db.scalar(
                select(Conversation.id).where(Conversation.id == conversation_id, Conversation.user_id == user_id)
            )
            if owned is None:
                return False
            await db.execute(delete(ConversationMessage).where(ConversationMessage.conversation_id == conversation_id))
            await db.execute(delete(Conversation).where(Conversation.id == conversation_id))
            await db.commit()
        logger.info("conversation.deleted", extra={"conversation_id": conversation_id, "user_id": user_id})
        return True

    # ------------------------------------------------------------------
    # ContextStore
    # ------------------------------------------------------------------

    async def load_context(self, conversation_id: str, technique: str) -> ConversationContext:
        async with self._session_factory() as db:
            conversation = await db.get(Conversation, conversation_id)
            if conversation is None:
                raise ContextNotFoundError(f"Conversation {conversation_id} not found")

            template = await db.scalar(
                select(Technique).where(
                    Technique.name == technique,
                    Technique.is_active.is_(True),
                    Technique.status == "approved",
                )
            )
            if template is None:
                raise ContextNotFoundError(f"Technique {technique} not found or not approved")

            rows = await db.execute(
                select(ConversationMessage)
                .where(
                    ConversationMessage.conversation_id == conversation_id,
                    ConversationMessage.archived.is_(False),
                )
                .order_by(ConversationMessage.sequence.asc())
            )
            history = [ChatMessage(role=m.role, content=m.content) for m in rows.scalars().all()]

        return ConversationContext(history=history, system_prompt=template.system_prompt)

    # ------------------------------------------------------------------
    # MessageStore
    # ------------------------------------------------------------------

    async def append_messages(
        self,
        conversation_id: str,
        user_message: str,
        assistant_message: str,
        metadata: Dict[str, Any],
    ) -> AppendResult:
        async with self._session_factory() as db:
            conversation = await db.get(Conversation, conversation_id)
            if conversation is None:
                raise ContextNotFoundError(f"Conversation {conversation_id} not found")

            last = await db.scalar(
                select(func.max(ConversationMessage.sequence)).where(
                    ConversationMessage.conversation_id == conversation_id
                )
            )
            user_sequence = (last or 0) + 1
            assistant_sequence = user_sequence + 1
            tokens = int(metadata.get("totalTokens") or 0)

            db.add(ConversationMessage(
                conversation_id=conversation_id,
                sequence=user_sequence,
                role="user",
                content=user_message,
            ))
            reply = ConversationMessage(
                conversation_id=conversation_id,
                sequence=assistant_sequence,
                role="assistant",
                content=assistant_message,
                tokens=tokens,
                meta=metadata,
            )
            db.add(reply)

            conversation.message_count = (conversation.message_count or 0) + 2
            conversation.total_tokens = (conversation.total_tokens or 0) + tokens
            conversation.total_cost = (conversation.total_cost or 0.0) + float(metadata.get("cost") or 0.0)
            conversation.updated_at = datetime.now(timezone.utc)

            await db.commit()

            unarchived = await db.scalar(
                select(func.count(ConversationMessage.id)).where(
                    ConversationMessage.conversation_id == conversation_id,
                    ConversationMessage.archived.is_(False),
                )
            )
            return AppendResult(
                message_id=str(reply.id),
                user_sequence=user_sequence,
                assistant_sequence=assistant_sequence,
                unarchived_count=int(unarchived or 0),
            )

    async def archive_if_needed(self, conversation_id: str) -> int:
        """Archive all but the newest `archive_threshold` messages. Returns how many moved."""
        async with self._session_factory() as db:
            recent = await db.execute(
                select(ConversationMessage.sequence)
                .where(
                    ConversationMessage.conversation_id == conversation_id,
                    ConversationMessage.archived.is_(False),
                )
                .order_by(ConversationMessage.sequence.desc())
                .offset(self.archive_threshold)
                .limit(1)
            )
            cutoff = recent.scalar_one_or_none()
            if cutoff is None:
                return 0

            result = await db.execute(
                update(ConversationMessage)
                .where(
                    ConversationMessage.conversation_id == conversation_id,
                    ConversationMessage.archived.is_(False),
                    ConversationMessage.sequence <= cutoff,
                )
                .values(archived=True)
            )
            await db.commit()
            archived = result.rowcount or 0

        logger.info("conversation.archived", extra={"conversation_id": conversation_id, "archived": archived})
        return archived

    async def get_archived_messages(
        self,
        conversation_id: str,
        limit: int = 50,
        before_sequence: Optional[int] = None,
    ) -> List[ConversationMessage]:
        """Archived messages, newest first, optionally before a sequence number."""
        async with self._session_factory() as db:
            query = select(ConversationMessage).where(
                ConversationMessage.conversation_id == conversation_id,
                ConversationMessage.archived.is_(True),
            )
            if before_sequence is not None:
                query = query.where(ConversationMessage.sequence < before_sequence)
            query = query.order_by(ConversationMessage.sequence.desc()).limit(max(1, min(limit, 200)))
            return list((await db.execute(query)).scalars().all())
