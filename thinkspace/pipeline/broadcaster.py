"""
Live event broadcaster: registry of subscriber connections per conversation.

Every connection gets its own outbound buffer drained by its own task, so a
slow or failing sink never holds up its siblings. Structural changes to a
conversation's connection set and the enqueueing of an event onto every
connection's buffer happen under that conversation's lock, which keeps the
per-conversation order identical for all subscribers. Conversations never
contend with each other.

Usage:
    registry = ConnectionRegistry()
    await registry.add_connection(conversation_id, user_id, connection_id, sink)
    await registry.emit_to_conversation(conversation_id, ProgressEvent(job_id, "AI is thinking..."))
    await registry.remove_connection(conversation_id, connection_id)
"""
import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from thinkspace.pipeline.events import StampedEvent, StreamEvent, stamp
from thinkspace.utils.logger import get_logger
from thinkspace.utils.metrics import inc, record_fanout

logger = get_logger(__name__)

EmitFn = Callable[[StampedEvent], Union[None, Awaitable[Any]]]


class _Connection:
    """One subscriber: its sink plus the task that feeds it."""

    def __init__(self, conversation_id: str, user_id: str, connection_id: str, emit: EmitFn):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.connection_id = connection_id
        self.emit = emit
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self.task = asyncio.create_task(
            self._pump(), name=f"broadcast:{self.conversation_id}:{self.connection_id}"
        )

    def stop(self) -> None:
        """Stop calling the sink. Anything still buffered is discarded."""
        if self.task is not None and not self.task.done():
            self.task.cancel()
        # Release anyone waiting in drain()
        while True:
            try:
                self.outbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            self.outbox.task_done()

    async def _pump(self) -> None:
        while True:
            event = await self.outbox.get()
            try:
                result = self.emit(event)
                if inspect.isawaitable(result):
                    await result
                inc("broadcast.delivered")
            except asyncio.CancelledError:
                self.outbox.task_done()
                raise
            except Exception as exc:
                inc("broadcast.emit_failed")
                logger.error(
                    "broadcast.emit_failed",
                    extra={
                        "conversation_id": self.conversation_id,
                        "connection_id": self.connection_id,
                        "event_type": event.type,
                        "error": str(exc)[:500],
                        "error_type": type(exc).__name__,
                    },
                )
                self.outbox.task_done()
            else:
                self.outbox.task_done()


class _ConversationChannel:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        # Insertion-ordered; connection id -> connection
        self.connections: Dict[str, _Connection] = {}


class ConnectionRegistry:
    """Fans stream events out to every live connection of a conversation."""

    def __init__(self) -> None:
        self._channels: Dict[str, _ConversationChannel] = {}

    @asynccontextmanager
    async def _channel(self, conversation_id: str, create: bool = False):
        """Yield the conversation's channel with its lock held (None if absent)."""
        while True:
            channel = self._channels.get(conversation_id)
            if channel is None:
                if not create:
                    yield None
                    return
                channel = _ConversationChannel()
                self._channels[conversation_id] = channel
            async with channel.lock:
                # The channel may have been retired while we waited for its lock
                if self._channels.get(conversation_id) is channel:
                    yield channel
                    return

    def _retire(self, conversation_id: str, channel: _ConversationChannel) -> None:
        if self._channels.get(conversation_id) is channel:
            del self._channels[conversation_id]

    async def add_connection(
        self,
        conversation_id: str,
        user_id: str,
        connection_id: str,
        emit: EmitFn,
    ) -> None:
        async with self._channel(conversation_id, create=True) as channel:
            previous = channel.connections.pop(connection_id, None)
            if previous is not None:
                logger.warning(
                    "broadcast.connection_replaced",
                    extra={"conversation_id": conversation_id, "connection_id": connection_id},
                )
                previous.stop()
            connection = _Connection(conversation_id, user_id, connection_id, emit)
            connection.start()
            channel.connections[connection_id] = connection
            count = len(channel.connections)

        logger.info(
            "broadcast.connection_added",
            extra={
                "conversation_id": conversation_id,
                "connection_id": connection_id,
                "user_id": user_id,
                "connections": count,
            },
        )

    async def remove_connection(self, conversation_id: str, connection_id: str) -> None:
        async with self._channel(conversation_id) as channel:
            if channel is None:
                logger.debug(
                    "broadcast.remove_unknown_conversation",
                    extra={"conversation_id": conversation_id, "connection_id": connection_id},
                )
                return
            connection = channel.connections.pop(connection_id, None)
            if connection is None:
                logger.debug(
                    "broadcast.remove_unknown_connection",
                    extra={"conversation_id": conversation_id, "connection_id": connection_id},
                )
                return
            connection.stop()
            remaining = len(channel.connections)
            if remaining == 0:
                self._retire(conversation_id, channel)

        logger.info(
            "broadcast.connection_removed",
            extra={"conversation_id": conversation_id, "connection_id": connection_id, "connections": remaining},
        )

    async def cleanup_conversation(self, conversation_id: str) -> int:
        """Drop every connection of a conversation. Returns how many were removed."""
        async with self._channel(conversation_id) as channel:
            if channel is None:
                return 0
            connections = list(channel.connections.values())
            channel.connections.clear()
            for connection in connections:
                connection.stop()
            self._retire(conversation_id, channel)

        logger.info(
            "broadcast.conversation_cleaned",
            extra={"conversation_id": conversation_id, "connections": len(connections)},
        )
        return len(connections)

    async def emit_to_conversation(self, conversation_id: str, event: StreamEvent) -> int:
        """Queue the event for every connection of the conversation. Returns the fan-out."""
        return await self._emit(conversation_id, event, user_id=None)

    async def emit_to_user(self, conversation_id: str, user_id: str, event: StreamEvent) -> int:
        """Like emit_to_conversation, restricted to one user's connections."""
        return await self._emit(conversation_id, event, user_id=user_id)

    async def _emit(self, conversation_id: str, event: StreamEvent, user_id: Optional[str]) -> int:
        async with self._channel(conversation_id) as channel:
            if channel is None:
                logger.debug(
                    "broadcast.no_connections",
                    extra={"conversation_id": conversation_id, "event_type": event.type},
                )
                return 0
            targets = [
                c for c in channel.connections.values()
                if user_id is None or c.user_id == user_id
            ]
            if not targets:
                return 0
            stamped = stamp(conversation_id, event)
            for connection in targets:
                connection.outbox.put_nowait(stamped)

        inc("broadcast.events")
        record_fanout(len(targets))
        logger.debug(
            "broadcast.emit",
            extra={"conversation_id": conversation_id, "event_type": event.type, "connections": len(targets)},
        )
        return len(targets)

    async def drain(self, conversation_id: Optional[str] = None) -> None:
        """Wait until every event queued so far has been handed to its sink."""
        if conversation_id is None:
            channels = list(self._channels.values())
        else:
            channel = self._channels.get(conversation_id)
            channels = [channel] if channel is not None else []
        outboxes: List[asyncio.Queue] = [
            c.outbox for channel in channels for c in list(channel.connections.values())
        ]
        if outboxes:
            await asyncio.gather(*(outbox.join() for outbox in outboxes))

    async def close(self) -> None:
        """Stop every delivery task (shutdown)."""
        channels, self._channels = self._channels, {}
        tasks = []
        for channel in channels.values():
            for connection in channel.connections.values():
                connection.stop()
                if connection.task is not None:
                    tasks.append(connection.task)
            channel.connections.clear()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_conversation_connection_count(self, conversation_id: str) -> int:
        channel = self._channels.get(conversation_id)
        return len(channel.connections) if channel is not None else 0

    def get_connection_count(self) -> int:
        return sum(len(channel.connections) for channel in self._channels.values())
