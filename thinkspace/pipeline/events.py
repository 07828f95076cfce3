"""
Stream events describing pipeline state for one conversation.

Producers build one of the variant dataclasses; the broadcaster stamps it
with the conversation id and emission time (StampedEvent) before delivery.
Wire frames use the camelCase keys the web client reads.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Optional, Union


@dataclass(frozen=True)
class ProcessingEvent:
    job_id: str

    type: ClassVar[str] = "processing"

    def payload(self) -> Dict[str, Any]:
        return {"jobId": self.job_id, "status": "started"}


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    status: str
    position: Optional[int] = None

    type: ClassVar[str] = "progress"

    def payload(self) -> Dict[str, Any]:
        data = {"jobId": self.job_id, "status": self.status}
        if self.position is not None:
            data["position"] = self.position
        return data


@dataclass(frozen=True)
class MessageEvent:
    role: str  # user | assistant
    content: str
    sequence: int
    tokens: Optional[int] = None

    type: ClassVar[str] = "message"

    def payload(self) -> Dict[str, Any]:
        data = {"role": self.role, "content": self.content, "sequence": self.sequence}
        if self.tokens is not None:
            data["tokens"] = self.tokens
        return data


@dataclass(frozen=True)
class CompleteEvent:
    job_id: str
    tokens: int
    cost: float
    latency: int  # milliseconds

    type: ClassVar[str] = "complete"

    def payload(self) -> Dict[str, Any]:
        return {"jobId": self.job_id, "tokens": self.tokens, "cost": self.cost, "latency": self.latency}


@dataclass(frozen=True)
class ErrorEvent:
    code: str
    message: str
    retriable: bool

    type: ClassVar[str] = "error"

    def payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "retriable": self.retriable}


StreamEvent = Union[ProcessingEvent, ProgressEvent, MessageEvent, CompleteEvent, ErrorEvent]


@dataclass(frozen=True)
class StampedEvent:
    """An event as delivered: variant + conversation id + emission time."""

    conversation_id: str
    timestamp: datetime
    event: StreamEvent

    @property
    def type(self) -> str:
        return self.event.type

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": self.event.type,
            "data": self.event.payload(),
            "conversationId": self.conversation_id,
            "timestamp": self.timestamp.isoformat(),
        }


def stamp(conversation_id: str, event: StreamEvent) -> StampedEvent:
    return StampedEvent(
        conversation_id=conversation_id,
        timestamp=datetime.now(timezone.utc),
        event=event,
    )


def event_to_dict(event: StreamEvent) -> Dict[str, Any]:
    """Unstamped form used on the Redis relay."""
    return {"type": event.type, "data": event.payload()}


def event_from_dict(raw: Dict[str, Any]) -> StreamEvent:
    """Rebuild a variant from its {type, data} form; ValueError on unknown types."""
    kind = raw.get("type")
    data = raw.get("data") or {}
    if kind == "processing":
        return ProcessingEvent(job_id=data["jobId"])
    if kind == "progress":
        return ProgressEvent(job_id=data["jobId"], status=data["status"], position=data.get("position"))
    if kind == "message":
        return MessageEvent(
            role=data["role"],
            content=data["content"],
            sequence=data["sequence"],
            tokens=data.get("tokens"),
        )
    if kind == "complete":
        return CompleteEvent(
            job_id=data["jobId"],
            tokens=data["tokens"],
            cost=data["cost"],
            latency=data["latency"],
        )
    if kind == "error":
        return ErrorEvent(code=data["code"], message=data["message"], retriable=data["retriable"])
    raise ValueError(f"Unknown stream event type: {kind!r}")
