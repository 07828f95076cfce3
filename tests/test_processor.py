import pytest

from thinkspace.pipeline.broadcaster import ConnectionRegistry
from thinkspace.pipeline.errors import ContextNotFoundError, CredentialMissingError, ModelNotAllowedError, PipelineError
from thinkspace.pipeline.interfaces import ChatMessage
from thinkspace.pipeline.processor import ConversationRequestProcessor, build_messages
from thinkspace.pipeline.queue import InMemoryJobStore, PriorityJobQueue, RetryPolicy
from tests.fakes import (
    FakeConversations,
    FakeModels,
    FakeProvider,
    FakeSecrets,
    FakeUsage,
    RecordingSink,
    make_claimed,
    make_job_data,
)


def make_processor(events, conversations=None, provider=None, secrets=None, usage=None, queue=None):
    if conversations is None:
        conversations = FakeConversations()
        conversations.add_conversation("conv-1")
    return ConversationRequestProcessor(
        contexts=conversations,
        messages=conversations,
        provider=provider or FakeProvider(),
        secrets=secrets or FakeSecrets(),
        usage=usage or FakeUsage(),
        models=FakeModels(),
        events=events,
        queue=queue,
    )


def test_build_messages_wraps_history_with_system_and_user():
    history = [ChatMessage("user", "a"), ChatMessage("assistant", "b")]
    messages = build_messages("sys", history, "c")
    assert [m.role for m in messages] == ["system", "user", "assistant", "user"]
    assert messages[0].content == "sys"
    assert messages[-1].content == "c"


async def test_successful_job_emits_lifecycle_and_returns_result():
    sink = RecordingSink()
    conversations = FakeConversations()
    conversations.add_conversation("conv-1", [ChatMessage("user", "earlier"), ChatMessage("assistant", "reply")])
    provider, usage = FakeProvider(content="Why do you think so?"), FakeUsage()
    processor = make_processor(sink, conversations=conversations, provider=provider, usage=usage)

    result = await processor.process(make_claimed(job_id="42"))

    assert sink.types == ["processing", "progress", "progress", "message", "message", "complete"]
    assert [e.status for _, e in sink.events if e.type == "progress"] == ["Building prompt...", "AI is thinking..."]
    user_msg, assistant_msg = [e for _, e in sink.events if e.type == "message"]
    assert (user_msg.role, user_msg.sequence) == ("user", 3)
    assert (assistant_msg.role, assistant_msg.sequence, assistant_msg.tokens) == ("assistant", 4, 150)
    complete = sink.events[-1][1]
    assert complete.job_id == "42" and complete.tokens == 150 and complete.cost == 0.0004

    assert result.to_dict() == {"messageId": "msg-1", "tokens": 150, "cost": 0.0004, "latency": result.latency}

    sent, model, credential = provider.calls[0]
    assert [m.role for m in sent] == ["system", "user", "assistant", "user"]
    assert (model, credential) == ("openai/gpt-5-mini", "server-key")
    assert conversations.archive_calls == ["conv-1"]
    assert usage.records[0][0] == "user-1"
    assert usage.records[0][1]["technique"] == "elenchus"


async def test_missing_conversation_emits_error_then_raises():
    sink = RecordingSink()
    processor = make_processor(sink, conversations=FakeConversations())

    with pytest.raises(ContextNotFoundError):
        await processor.process(make_claimed())

    assert sink.types == ["processing", "error"]
    error = sink.events[-1][1]
    assert error.code == "CONTEXT_NOT_FOUND"
    assert error.retriable is False


async def test_uncurated_model_without_byok_is_rejected():
    sink = RecordingSink()
    provider = FakeProvider()
    processor = make_processor(sink, provider=provider)

    with pytest.raises(ModelNotAllowedError):
        await processor.process(make_claimed(make_job_data(model="anthropic/claude-opus")))

    assert provider.calls == []
    assert sink.events[-1][1].code == "MODEL_NOT_ALLOWED"


async def test_empty_model_is_a_client_error():
    sink = RecordingSink()
    processor = make_processor(sink)

    with pytest.raises(PipelineError) as info:
        await processor.process(make_claimed(make_job_data(model="   ")))

    assert info.value.code == "CLIENT_ERROR"


async def test_byok_allows_any_model_and_uses_the_users_key():
    sink = RecordingSink()
    provider = FakeProvider()
    processor = make_processor(sink, provider=provider, secrets=FakeSecrets(user_keys={"user-1": "sk-user"}))

    await processor.process(make_claimed(make_job_data(model=" anthropic/claude-opus ", used_byok=True)))

    _, model, credential = provider.calls[0]
    assert (model, credential) == ("anthropic/claude-opus", "sk-user")


async def test_missing_credential_is_not_retriable():
    sink = RecordingSink()
    processor = make_processor(sink, secrets=FakeSecrets())

    with pytest.raises(CredentialMissingError):
        await processor.process(make_claimed(make_job_data(used_byok=True)))

    assert sink.events[-1][1].code == "CREDENTIAL_MISSING"
    assert sink.events[-1][1].retriable is False


async def test_provider_timeout_is_reported_retriable():
    sink = RecordingSink()
    processor = make_processor(sink, provider=FakeProvider(error=TimeoutError()))

    with pytest.raises(TimeoutError):
        await processor.process(make_claimed())

    assert sink.types == ["processing", "progress", "progress", "error"]
    assert sink.events[-1][1].code == "TIMEOUT"
    assert sink.events[-1][1].retriable is True


async def test_progress_is_recorded_on_the_queue_job(clock):
    queue = PriorityJobQueue(InMemoryJobStore(clock=clock), RetryPolicy())
    job_id, _ = await queue.enqueue(make_job_data())
    job = await queue.claim_next()
    processor = make_processor(RecordingSink(), provider=FakeProvider(error=TimeoutError()), queue=queue)

    with pytest.raises(TimeoutError):
        await processor.process(job)

    assert (await queue.get_status(job_id))["progress"] == "AI is thinking..."


async def test_end_to_end_two_subscribers_see_the_same_stream(clock):
    registry = ConnectionRegistry()
    queue = PriorityJobQueue(InMemoryJobStore(clock=clock), RetryPolicy())
    frames = {"a": [], "b": []}
    await registry.add_connection("conv-1", "user-1", "a", frames["a"].append)
    await registry.add_connection("conv-1", "user-1", "b", frames["b"].append)
    processor = make_processor(registry, queue=queue)

    await queue.enqueue(make_job_data())
    job = await queue.claim_next()
    result = await processor.process(job)
    await queue.complete(job.job_id, result.to_dict())
    await registry.drain()

    for received in frames.values():
        wire = [f.to_wire() for f in received]
        types = [w["type"] for w in wire]
        assert types[0] == "processing"
        assert "progress" in types
        messages = [w["data"]["role"] for w in wire if w["type"] == "message"]
        assert messages == ["user", "assistant"]
        assert types[-1] == "complete"
        assert all(w["conversationId"] == "conv-1" for w in wire)
    assert [f.event for f in frames["a"]] == [f.event for f in frames["b"]]
    assert (await queue.get_status(job.job_id))["state"] == "completed"

    await registry.close()
