"""
Collaborators the request pipeline depends on, and the values they exchange.

Concrete implementations live in thinkspace.services; tests supply fakes.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from thinkspace.pipeline.events import StreamEvent


@dataclass(frozen=True)
class ChatMessage:
    role: str  # system | user | assistant
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class ConversationContext:
    history: List[ChatMessage]
    system_prompt: str


@dataclass
class ProviderResponse:
    content: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    model: Optional[str] = None


@dataclass
class AppendResult:
    """Sequence numbers assigned to the stored exchange."""
    message_id: str
    user_sequence: int
    assistant_sequence: int
    unarchived_count: int = 0


@dataclass
class RequestJobData:
    """Queue payload. Wire keys are camelCase."""
    conversation_id: str
    user_id: str
    message: str
    model: str
    subscription_tier: str
    technique: str
    used_byok: bool = False

    def to_payload(self) -> Dict[str, Any]:
        return {
            "conversationId": self.conversation_id,
            "message": self.message,
            "model": self.model,
            "subscriptionTier": self.subscription_tier,
            "technique": self.technique,
            "usedByok": self.used_byok,
            "userId": self.user_id,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RequestJobData":
        return cls(
            conversation_id=payload["conversationId"],
            user_id=payload["userId"],
            message=payload["message"],
            model=payload["model"],
            subscription_tier=payload.get("subscriptionTier") or "free",
            technique=payload["technique"],
            used_byok=bool(payload.get("usedByok", False)),
        )


@dataclass
class JobResult:
    message_id: str
    tokens: int
    cost: float
    latency: int  # milliseconds

    def to_dict(self) -> Dict[str, Any]:
        return {"messageId": self.message_id, "tokens": self.tokens, "cost": self.cost, "latency": self.latency}


@dataclass
class ClaimedJob:
    """A job handed to a worker; attempt counts the current try."""
    job_id: str
    data: RequestJobData
    attempt: int
    max_attempts: int
    priority: int


class ContextStore(Protocol):
    async def load_context(self, conversation_id: str, technique: str) -> ConversationContext: ...


class MessageStore(Protocol):
    async def append_messages(
        self,
        conversation_id: str,
        user_message: str,
        assistant_message: str,
        metadata: Dict[str, Any],
    ) -> AppendResult: ...

    async def archive_if_needed(self, conversation_id: str) -> int: ...


class ProviderGateway(Protocol):
    async def send(self, messages: List[ChatMessage], model: str, credential: str) -> ProviderResponse: ...


class SecretsResolver(Protocol):
    async def resolve_credential(self, user_id: str, used_byok: bool) -> str: ...


class UsageLog(Protocol):
    async def record(self, user_id: str, metadata: Dict[str, Any]) -> None: ...


class ModelPolicy(Protocol):
    def is_allowed(self, model: str) -> bool: ...


class EventSink(Protocol):
    """Anything that can deliver events for a conversation (registry or relay)."""
    async def emit_to_conversation(self, conversation_id: str, event: StreamEvent) -> Any: ...
