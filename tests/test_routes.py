import asyncio
import json

import httpx
import pytest

from thinkspace.main import app
from thinkspace.pipeline.broadcaster import ConnectionRegistry
from thinkspace.pipeline.events import ProgressEvent
from thinkspace.pipeline.queue import InMemoryJobStore
from thinkspace.routes import conversations
from thinkspace.worker import build_pipeline

USER = {"X-User-ID": "user-1"}


@pytest.fixture
async def client(session_factory):
    # ASGITransport skips startup events, so wire app.state by hand
    registry = ConnectionRegistry()
    pipeline = build_pipeline(registry, store=InMemoryJobStore())
    await pipeline.conversations.seed_techniques()
    app.state.registry = registry
    app.state.pipeline = pipeline
    conversations.limiter.reset()

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    await registry.close()


async def create(client, technique="elenchus", headers=USER):
    return await client.post("/api/conversations", json={"technique": technique, "title": "Virtue"}, headers=headers)


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["redis"] is False
    assert body["connections"] == 0


async def test_create_conversation(client):
    response = await create(client)
    assert response.status_code == 201
    data = response.json()["data"]
    assert data["technique"] == "elenchus"
    assert data["message_count"] == 0


async def test_create_with_unknown_technique_is_rejected(client):
    assert (await create(client, technique="rhetoric")).status_code == 400


async def test_missing_user_header_is_unauthorized(client):
    assert (await create(client, headers={})).status_code == 401


async def test_send_message_is_queued(client):
    conversation_id = (await create(client)).json()["data"]["id"]

    response = await client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"content": "What is courage?"},
        headers=USER,
    )

    assert response.status_code == 202
    data = response.json()["data"]
    assert data["position"] == 1

    status = (await client.get(f"/api/jobs/{data['job_id']}")).json()["data"]
    assert status["state"] == "waiting"
    assert status["attempts"] == 0

    metrics = (await client.get("/api/queue/metrics")).json()["data"]
    assert metrics["waiting"] == 1
    assert metrics["connections"] == 0


async def test_send_to_someone_elses_conversation_is_not_found(client):
    conversation_id = (await create(client)).json()["data"]["id"]

    response = await client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"content": "hello"},
        headers={"X-User-ID": "user-2"},
    )
    assert response.status_code == 404


async def test_unknown_job_is_not_found(client):
    assert (await client.get("/api/jobs/999")).status_code == 404


async def test_delete_conversation(client):
    conversation_id = (await create(client)).json()["data"]["id"]

    assert (await client.delete(f"/api/conversations/{conversation_id}", headers=USER)).status_code == 204
    assert (await client.delete(f"/api/conversations/{conversation_id}", headers=USER)).status_code == 404


async def test_archived_messages_start_empty(client):
    conversation_id = (await create(client)).json()["data"]["id"]

    response = await client.get(f"/api/conversations/{conversation_id}/messages/archived", headers=USER)

    assert response.status_code == 200
    assert response.json()["data"] == []


async def test_stream_requires_identity_and_ownership(client):
    conversation_id = (await create(client)).json()["data"]["id"]

    assert (await client.get(f"/api/conversations/{conversation_id}/stream")).status_code == 401
    assert (await client.get("/api/conversations/missing/stream", params={"user_id": "user-1"})).status_code == 404


async def test_models_and_own_key(client):
    models = (await client.get("/api/ai/models", headers=USER)).json()["data"]
    assert models["curated"] == ["openai/gpt-5-mini"]
    assert models["default"] == "openai/gpt-5-mini"
    assert models["has_own_key"] is False

    response = await client.put("/api/ai/openrouter-key", json={"api_key": "sk-or-v1-abcdef"}, headers=USER)
    assert response.status_code == 200
    assert (await client.get("/api/ai/models", headers=USER)).json()["data"]["has_own_key"] is True

    removed = (await client.delete("/api/ai/openrouter-key", headers=USER)).json()["data"]
    assert removed == {"has_own_key": False, "removed": True}


async def test_own_key_marks_jobs_as_byok(client):
    conversation_id = (await create(client)).json()["data"]["id"]
    await client.put("/api/ai/openrouter-key", json={"api_key": "sk-or-v1-abcdef"}, headers=USER)

    await client.post(
        f"/api/conversations/{conversation_id}/messages",
        json={"content": "hi", "model": "anthropic/claude-opus"},
        headers=USER,
    )

    job = await app.state.pipeline.queue.claim_next()
    assert job.data.used_byok is True
    assert job.data.model == "anthropic/claude-opus"


class ConnectedRequest:
    async def is_disconnected(self):
        return False


async def _wait_for_connections(registry, conversation_id, expected):
    for _ in range(200):
        if registry.get_conversation_connection_count(conversation_id) == expected:
            return
        await asyncio.sleep(0.005)
    raise AssertionError(f"expected {expected} connections")


async def test_stream_frames_carry_the_stamped_event(client):
    conversation_id = (await create(client)).json()["data"]["id"]
    registry = app.state.registry

    response = await conversations.stream_conversation(
        request=ConnectedRequest(),
        conversation_id=conversation_id,
        user_id="user-1",
        pipeline=app.state.pipeline,
        registry=registry,
    )
    frames = response.body_iterator
    first = asyncio.ensure_future(frames.__anext__())
    await _wait_for_connections(registry, conversation_id, 1)

    await registry.emit_to_conversation(conversation_id, ProgressEvent(job_id="7", status="AI is thinking..."))
    frame = await asyncio.wait_for(first, timeout=2)

    assert frame["event"] == "message"
    payload = json.loads(frame["data"])
    assert set(payload) == {"type", "data", "conversationId", "timestamp"}
    assert payload["type"] == "progress"
    assert payload["conversationId"] == conversation_id
    assert payload["data"] == {"jobId": "7", "status": "AI is thinking..."}

    await frames.aclose()
    assert registry.get_conversation_connection_count(conversation_id) == 0


async def test_metrics_report_queue_depth_and_connections(client):
    conversation_id = (await create(client)).json()["data"]["id"]
    await client.post(f"/api/conversations/{conversation_id}/messages", json={"content": "hi"}, headers=USER)

    gauges = (await client.get("/metrics")).json()["gauges"]

    assert gauges["queue.waiting"] == 1
    assert gauges["queue.active"] == 0
    assert gauges["connections"] == 0
