"""In-memory stand-ins for the pipeline's collaborators."""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from thinkspace.pipeline.errors import ContextNotFoundError, CredentialMissingError
from thinkspace.pipeline.interfaces import (
    AppendResult,
    ChatMessage,
    ClaimedJob,
    ConversationContext,
    ProviderResponse,
    RequestJobData,
)


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_job_data(
    conversation_id: str = "conv-1",
    user_id: str = "user-1",
    message: str = "What is courage?",
    model: str = "openai/gpt-5-mini",
    tier: str = "free",
    technique: str = "elenchus",
    used_byok: bool = False,
) -> RequestJobData:
    return RequestJobData(
        conversation_id=conversation_id,
        user_id=user_id,
        message=message,
        model=model,
        subscription_tier=tier,
        technique=technique,
        used_byok=used_byok,
    )


def make_claimed(data: Optional[RequestJobData] = None, job_id: str = "1", attempt: int = 1) -> ClaimedJob:
    return ClaimedJob(job_id=job_id, data=data or make_job_data(), attempt=attempt, max_attempts=3, priority=1)


class FakeConversations:
    """ContextStore + MessageStore."""

    def __init__(self, system_prompt: str = "Ask, don't tell."):
        self.system_prompt = system_prompt
        self.history: Dict[str, List[ChatMessage]] = {}
        self.appended: List[Tuple[str, str, str, Dict[str, Any]]] = []
        self.archive_calls: List[str] = []

    def add_conversation(self, conversation_id: str, history: Optional[List[ChatMessage]] = None) -> None:
        self.history[conversation_id] = list(history or [])

    async def load_context(self, conversation_id: str, technique: str) -> ConversationContext:
        if conversation_id not in self.history:
            raise ContextNotFoundError(f"Conversation {conversation_id} not found")
        return ConversationContext(history=list(self.history[conversation_id]), system_prompt=self.system_prompt)

    async def append_messages(self, conversation_id, user_message, assistant_message, metadata) -> AppendResult:
        messages = self.history.setdefault(conversation_id, [])
        messages.append(ChatMessage("user", user_message))
        messages.append(ChatMessage("assistant", assistant_message))
        self.appended.append((conversation_id, user_message, assistant_message, metadata))
        return AppendResult(
            message_id=f"msg-{len(self.appended)}",
            user_sequence=len(messages) - 1,
            assistant_sequence=len(messages),
            unarchived_count=len(messages),
        )

    async def archive_if_needed(self, conversation_id: str) -> int:
        self.archive_calls.append(conversation_id)
        return 0


class FakeProvider:
    def __init__(self, content: str = "What do you mean by courage?", error: Optional[Exception] = None):
        self.content = content
        self.error = error
        self.calls: List[Tuple[List[ChatMessage], str, str]] = []

    async def send(self, messages, model, credential) -> ProviderResponse:
        self.calls.append((list(messages), model, credential))
        if self.error is not None:
            raise self.error
        return ProviderResponse(
            content=self.content,
            prompt_tokens=120,
            completion_tokens=30,
            total_tokens=150,
            cost=0.0004,
            model=model,
        )


class FakeSecrets:
    def __init__(self, server_key: str = "server-key", user_keys: Optional[Dict[str, str]] = None):
        self.server_key = server_key
        self.user_keys = user_keys or {}

    async def resolve_credential(self, user_id: str, used_byok: bool) -> str:
        if used_byok:
            if user_id not in self.user_keys:
                raise CredentialMissingError("OPENROUTER_KEY_MISSING")
            return self.user_keys[user_id]
        if not self.server_key:
            raise CredentialMissingError("OPENROUTER_API_KEY not configured")
        return self.server_key


class FakeUsage:
    def __init__(self):
        self.records: List[Tuple[str, Dict[str, Any]]] = []

    async def record(self, user_id: str, metadata: Dict[str, Any]) -> None:
        self.records.append((user_id, metadata))


class FakeModels:
    def __init__(self, curated=("openai/gpt-5-mini",)):
        self.curated = set(curated)

    def is_allowed(self, model: str) -> bool:
        return model in self.curated


class RecordingSink:
    """EventSink that keeps (conversation_id, event) pairs."""

    def __init__(self):
        self.events: List[Tuple[str, Any]] = []

    async def emit_to_conversation(self, conversation_id, event) -> int:
        self.events.append((conversation_id, event))
        return 1

    @property
    def types(self) -> List[str]:
        return [event.type for _, event in self.events]
