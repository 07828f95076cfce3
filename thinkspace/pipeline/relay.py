"""
Redis pub/sub relay for stream events.

A standalone worker process has no subscriber connections of its own, so it
publishes events to Redis; the API process subscribes and hands them to its
ConnectionRegistry, which stamps and delivers them.

Usage (worker):
    sink = RedisEventPublisher(get_redis())
Usage (API):
    task = asyncio.create_task(run_event_relay(get_redis(), registry))
"""
import asyncio
import json
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from thinkspace.pipeline.broadcaster import ConnectionRegistry
from thinkspace.pipeline.events import StreamEvent, event_from_dict, event_to_dict
from thinkspace.utils.logger import get_logger
from thinkspace.utils.metrics import inc

logger = get_logger(__name__)

EVENTS_CHANNEL = "thinkspace:conversation-events"


class RedisEventPublisher:
    """EventSink that publishes to Redis instead of delivering locally."""

    def __init__(self, redis: aioredis.Redis, channel: str = EVENTS_CHANNEL):
        self.redis = redis
        self.channel = channel

    async def emit_to_conversation(self, conversation_id: str, event: StreamEvent) -> int:
        message = json.dumps({"conversationId": conversation_id, "event": event_to_dict(event)})
        try:
            receivers = await self.redis.publish(self.channel, message)
        except (RedisError, OSError) as exc:
            # Events are best-effort; the job itself carries on
            inc("relay.publish_failed")
            logger.error(
                "relay.publish_failed",
                extra={
                    "conversation_id": conversation_id,
                    "event_type": event.type,
                    "error": str(exc)[:200],
                    "error_type": type(exc).__name__,
                },
            )
            return 0
        inc("relay.published")
        return int(receivers or 0)


async def forward_message(registry: ConnectionRegistry, raw: str) -> int:
    """Decode one relayed message and emit it locally. Returns the fan-out."""
    try:
        body = json.loads(raw)
        conversation_id = body["conversationId"]
        event = event_from_dict(body["event"])
    except (ValueError, KeyError, TypeError) as exc:
        inc("relay.malformed")
        logger.warning("relay.malformed", extra={"error": str(exc)[:200]})
        return 0
    return await registry.emit_to_conversation(conversation_id, event)


async def run_event_relay(
    redis: aioredis.Redis,
    registry: ConnectionRegistry,
    stop: Optional[asyncio.Event] = None,
    channel: str = EVENTS_CHANNEL,
) -> None:
    """Forward relayed events into the registry until cancelled or stopped."""
    stop = stop or asyncio.Event()
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel)
    logger.info("relay.subscribed", extra={"channel": channel})
    try:
        while not stop.is_set():
            try:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except (RedisError, OSError) as exc:
                logger.error("relay.receive_failed", extra={"channel": channel, "error": str(exc)[:200]})
                await asyncio.sleep(1.0)
                continue
            if message is None or message.get("type") != "message":
                continue
            await forward_message(registry, message["data"])
    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        logger.info("relay.stopped", extra={"channel": channel})
