import pytest

from thinkspace.pipeline.errors import ContextNotFoundError
from thinkspace.services.conversation_store import DEFAULT_TECHNIQUES, ConversationStore


@pytest.fixture
async def store(session_factory):
    store = ConversationStore(session_factory, archive_threshold=4)
    await store.seed_techniques()
    return store


async def test_seeding_is_idempotent(store):
    assert await store.seed_techniques() == 0


async def test_create_requires_a_known_technique(store):
    with pytest.raises(ValueError):
        await store.create_conversation("user-1", "rhetoric")


async def test_load_context_of_new_conversation(store):
    conversation = await store.create_conversation("user-1", "elenchus", "Courage")

    context = await store.load_context(conversation.id, "elenchus")

    assert context.history == []
    assert context.system_prompt == DEFAULT_TECHNIQUES["elenchus"]


async def test_load_context_missing_conversation_or_technique(store):
    conversation = await store.create_conversation("user-1", "elenchus")

    with pytest.raises(ContextNotFoundError):
        await store.load_context("missing", "elenchus")
    with pytest.raises(ContextNotFoundError):
        await store.load_context(conversation.id, "rhetoric")


async def test_append_assigns_consecutive_sequences_and_updates_totals(store):
    conversation = await store.create_conversation("user-1", "maieutics")

    first = await store.append_messages(conversation.id, "q1", "a1", {"totalTokens": 10, "cost": 0.01})
    second = await store.append_messages(conversation.id, "q2", "a2", {"totalTokens": 5, "cost": 0.02})

    assert (first.user_sequence, first.assistant_sequence) == (1, 2)
    assert (second.user_sequence, second.assistant_sequence) == (3, 4)
    assert second.unarchived_count == 4

    context = await store.load_context(conversation.id, "maieutics")
    assert [(m.role, m.content) for m in context.history] == [
        ("user", "q1"), ("assistant", "a1"), ("user", "q2"), ("assistant", "a2"),
    ]

    refreshed = await store.get_conversation(conversation.id, "user-1")
    assert refreshed.message_count == 4
    assert refreshed.total_tokens == 15
    assert refreshed.total_cost == pytest.approx(0.03)


async def test_archive_keeps_the_newest_messages_in_context(store):
    conversation = await store.create_conversation("user-1", "dialectic")
    for n in range(3):
        await store.append_messages(conversation.id, f"q{n}", f"a{n}", {"totalTokens": 1})

    assert await store.archive_if_needed(conversation.id) == 2
    assert await store.archive_if_needed(conversation.id) == 0

    context = await store.load_context(conversation.id, "dialectic")
    assert [m.content for m in context.history] == ["q1", "a1", "q2", "a2"]

    archived = await store.get_archived_messages(conversation.id)
    assert [m.sequence for m in archived] == [2, 1]
    assert [m.sequence for m in await store.get_archived_messages(conversation.id, before_sequence=2)] == [1]


async def test_delete_only_by_owner(store):
    conversation = await store.create_conversation("user-1", "analogical")
    await store.append_messages(conversation.id, "q", "a", {})

    assert await store.delete_conversation(conversation.id, "user-2") is False
    assert await store.delete_conversation(conversation.id, "user-1") is True
    assert await store.get_conversation(conversation.id) is None
    assert await store.delete_conversation(conversation.id, "user-1") is False
