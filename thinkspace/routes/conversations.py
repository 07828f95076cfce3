"""
Conversation API Routes

Creating and deleting conversations, sending messages (queued for the
worker), the live event stream and archived history.
"""
import asyncio
import json
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address
from sse_starlette.sse import EventSourceResponse

from thinkspace.config import get_settings
from thinkspace.middleware.auth import get_stream_user_id, get_user_id
from thinkspace.pipeline.broadcaster import ConnectionRegistry
from thinkspace.pipeline.events import StampedEvent
from thinkspace.pipeline.interfaces import RequestJobData
from thinkspace.routes.deps import get_pipeline, get_registry
from thinkspace.utils.logger import get_logger
from thinkspace.worker import Pipeline

logger = get_logger(__name__)
settings = get_settings()

router = APIRouter()

limiter = Limiter(key_func=get_remote_address)


class CreateConversationRequest(BaseModel):
    technique: str = Field(..., min_length=1, max_length=100)
    title: Optional[str] = Field(None, max_length=255)


class SendMessageRequest(BaseModel):
    content: str = Field(..., min_length=1, max_length=20000)
    model: Optional[str] = Field(None, max_length=200)


def _conversation_dict(conversation) -> dict:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "technique": conversation.technique,
        "message_count": conversation.message_count,
        "total_tokens": conversation.total_tokens,
        "total_cost": conversation.total_cost,
        "created_at": conversation.created_at.isoformat() if conversation.created_at else None,
    }


@router.post("", status_code=201)
async def create_conversation(
    body: CreateConversationRequest,
    user_id: str = Depends(get_user_id),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        conversation = await pipeline.conversations.create_conversation(user_id, body.technique, body.title)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {"success": True, "data": _conversation_dict(conversation)}


@router.delete("/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(get_user_id),
    pipeline: Pipeline = Depends(get_pipeline),
    registry: ConnectionRegistry = Depends(get_registry),
):
    deleted = await pipeline.conversations.delete_conversation(conversation_id, user_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Conversation not found")
    await registry.cleanup_conversation(conversation_id)
    return Response(status_code=204)


@router.post("/{conversation_id}/messages", status_code=202)
@limiter.limit(settings.enqueue_rate_limit)
async def send_message(
    request: Request,
    conversation_id: str,
    body: SendMessageRequest,
    user_id: str = Depends(get_user_id),
    pipeline: Pipeline = Depends(get_pipeline),
):
    """
    Queue a message for AI processing.

    Returns 202 with the job id and queue position; results arrive on the
    conversation's event stream.
    """
    conversation = await pipeline.conversations.get_conversation(conversation_id, user_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    # A stored key means the request runs on the user's own OpenRouter account
    used_byok = await pipeline.secrets.has_user_key(user_id)
    data = RequestJobData(
        conversation_id=conversation_id,
        user_id=user_id,
        message=body.content,
        model=(body.model or pipeline.models.default_model).strip(),
        subscription_tier=await pipeline.secrets.get_subscription_tier(user_id),
        technique=conversation.technique,
        used_byok=used_byok,
    )
    job_id, position = await pipeline.queue.enqueue(data)
    return {"success": True, "data": {"job_id": job_id, "position": position}}


@router.get("/{conversation_id}/stream", response_model=None)
async def stream_conversation(
    request: Request,
    conversation_id: str,
    user_id: str = Depends(get_stream_user_id),
    pipeline: Pipeline = Depends(get_pipeline),
    registry: ConnectionRegistry = Depends(get_registry),
) -> EventSourceResponse:
    """Server-sent events for one conversation until the client disconnects."""
    conversation = await pipeline.conversations.get_conversation(conversation_id, user_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    connection_id = uuid.uuid4().hex
    inbox: asyncio.Queue = asyncio.Queue()

    async def gen():
        await registry.add_connection(conversation_id, user_id, connection_id, inbox.put_nowait)
        try:
            while True:
                if await request.is_disconnected():
                    return
                try:
                    stamped: StampedEvent = await asyncio.wait_for(inbox.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                yield {"event": "message", "data": json.dumps(stamped.to_wire())}
        finally:
            await registry.remove_connection(conversation_id, connection_id)

    return EventSourceResponse(
        gen(),
        ping=settings.sse_ping_seconds,
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/{conversation_id}/messages/archived")
async def get_archived_messages(
    conversation_id: str,
    limit: int = Query(50, ge=1, le=200),
    before_sequence: Optional[int] = Query(None, ge=1),
    user_id: str = Depends(get_user_id),
    pipeline: Pipeline = Depends(get_pipeline),
):
    conversation = await pipeline.conversations.get_conversation(conversation_id, user_id)
    if conversation is None:
        raise HTTPException(status_code=404, detail="Conversation not found")

    messages = await pipeline.conversations.get_archived_messages(conversation_id, limit, before_sequence)
    return {
        "success": True,
        "data": [
            {
                "sequence": m.sequence,
                "role": m.role,
                "content": m.content,
                "tokens": m.tokens,
                "created_at": m.created_at.isoformat() if m.created_at else None,
            }
            for m in messages
        ],
    }
