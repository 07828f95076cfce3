"""
Executes one conversation request job end to end.

Steps: load context → build prompt → validate model → resolve credential →
call provider → persist exchange → archive → record usage. Stream events are
emitted at each milestone; any failure is classified, emitted as an `error`
event and re-raised so the queue's retry policy decides what happens next.
"""
import time
from typing import List, Optional

from thinkspace.pipeline.errors import (
    ErrorKind,
    ModelNotAllowedError,
    PipelineError,
    classify_error,
    describe_error,
)
from thinkspace.pipeline.events import (
    CompleteEvent,
    ErrorEvent,
    MessageEvent,
    ProcessingEvent,
    ProgressEvent,
    StreamEvent,
)
from thinkspace.pipeline.interfaces import (
    ChatMessage,
    ClaimedJob,
    ContextStore,
    EventSink,
    JobResult,
    MessageStore,
    ModelPolicy,
    ProviderGateway,
    SecretsResolver,
    UsageLog,
)
from thinkspace.pipeline.queue import PriorityJobQueue
from thinkspace.utils.logger import get_logger
from thinkspace.utils.metrics import inc, track_duration

logger = get_logger(__name__)

STATUS_BUILDING_PROMPT = "Building prompt..."
STATUS_THINKING = "AI is thinking..."
STATUS_SAVING = "Saving..."


def build_messages(system_prompt: str, history: List[ChatMessage], user_message: str) -> List[ChatMessage]:
    """[system] + history + [user]"""
    return [ChatMessage("system", system_prompt), *history, ChatMessage("user", user_message)]


class ConversationRequestProcessor:
    def __init__(
        self,
        *,
        contexts: ContextStore,
        messages: MessageStore,
        provider: ProviderGateway,
        secrets: SecretsResolver,
        usage: UsageLog,
        models: ModelPolicy,
        events: EventSink,
        queue: Optional[PriorityJobQueue] = None,
    ):
        self.contexts = contexts
        self.messages = messages
        self.provider = provider
        self.secrets = secrets
        self.usage = usage
        self.models = models
        self.events = events
        self.queue = queue

    async def _emit(self, conversation_id: str, event: StreamEvent) -> None:
        await self.events.emit_to_conversation(conversation_id, event)

    async def _progress(self, job: ClaimedJob, status: str, emit: bool = True) -> None:
        if self.queue is not None:
            await self.queue.update_progress(job.job_id, status)
        if emit:
            await self._emit(job.data.conversation_id, ProgressEvent(job_id=job.job_id, status=status))

    def validate_model(self, model: str, used_byok: bool) -> str:
        trimmed = (model or "").strip()
        if not trimmed:
            raise PipelineError("Model is required", kind=ErrorKind.CLIENT_ERROR)
        if not used_byok and not self.models.is_allowed(trimmed):
            raise ModelNotAllowedError(f"Model {trimmed} is not available without your own API key")
        return trimmed

    async def process(self, job: ClaimedJob) -> JobResult:
        data = job.data
        conversation_id = data.conversation_id
        start = time.monotonic()

        logger.info(
            "job.processing",
            extra={
                "job_id": job.job_id,
                "conversation_id": conversation_id,
                "user_id": data.user_id,
                "attempt": job.attempt,
            },
        )

        try:
            async with track_duration("processor", "process"):
                await self._emit(conversation_id, ProcessingEvent(job_id=job.job_id))

                context = await self.contexts.load_context(conversation_id, data.technique)

                await self._progress(job, STATUS_BUILDING_PROMPT)
                prompt = build_messages(context.system_prompt, context.history, data.message)

                model = self.validate_model(data.model, data.used_byok)
                credential = await self.secrets.resolve_credential(data.user_id, data.used_byok)

                await self._progress(job, STATUS_THINKING)
                response = await self.provider.send(prompt, model, credential)

                await self._progress(job, STATUS_SAVING, emit=False)
                metadata = {
                    "completionTokens": response.completion_tokens,
                    "cost": response.cost,
                    "latencyMs": int((time.monotonic() - start) * 1000),
                    "model": response.model or model,
                    "promptTokens": response.prompt_tokens,
                    "totalTokens": response.total_tokens,
                }
                stored = await self.messages.append_messages(
                    conversation_id, data.message, response.content, metadata
                )

                await self._emit(
                    conversation_id,
                    MessageEvent(role="user", content=data.message, sequence=stored.user_sequence),
                )
                await self._emit(
                    conversation_id,
                    MessageEvent(
                        role="assistant",
                        content=response.content,
                        sequence=stored.assistant_sequence,
                        tokens=response.total_tokens,
                    ),
                )

                await self.messages.archive_if_needed(conversation_id)

                await self.usage.record(
                    data.user_id,
                    {
                        "completionTokens": response.completion_tokens,
                        "conversationId": conversation_id,
                        "cost": response.cost,
                        "latencyMs": int((time.monotonic() - start) * 1000),
                        "model": response.model or model,
                        "promptTokens": response.prompt_tokens,
                        "technique": data.technique,
                        "tokens": response.total_tokens,
                    },
                )

                latency = int((time.monotonic() - start) * 1000)
                await self._emit(
                    conversation_id,
                    CompleteEvent(
                        job_id=job.job_id,
                        tokens=response.total_tokens,
                        cost=response.cost,
                        latency=latency,
                    ),
                )
        except Exception as exc:
            kind = classify_error(exc)
            message = describe_error(exc)
            inc(f"processor.error.{kind.value.lower()}")
            logger.error(
                "job.processing_failed",
                extra={
                    "job_id": job.job_id,
                    "conversation_id": conversation_id,
                    "attempt": job.attempt,
                    "code": kind.value,
                    "retriable": kind.retriable,
                    "error": message[:500],
                    "error_type": type(exc).__name__,
                },
            )
            await self._emit(
                conversation_id,
                ErrorEvent(code=kind.value, message=message, retriable=kind.retriable),
            )
            raise

        logger.info(
            "job.processed",
            extra={
                "job_id": job.job_id,
                "conversation_id": conversation_id,
                "tokens": response.total_tokens,
                "cost": response.cost,
                "latency_ms": latency,
            },
        )
        return JobResult(
            message_id=stored.message_id,
            tokens=response.total_tokens,
            cost=response.cost,
            latency=latency,
        )
