"""Tests for the aiosqlite-backed memory store."""

import pytest

from memory_engine.models import MemoryType, SourceType, StepState


@pytest.mark.asyncio
async def test_memories_table_exists(store):
    async with store._db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='memories'"
    ) as cursor:
        rows = await cursor.fetchall()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_create_and_get_roundtrip(store, make_memory):
    memory = make_memory(
        "User's name is Alex",
        importance=0.95,
        tags=["name", "identity"],
        embedding=[0.5, -0.25, 1.0],
        source_id="msg-1",
        metadata={"reasoning": "Core identity"},
    )
    await store.create_memory(memory)

    loaded = await store.get_memory(memory.id)
    assert loaded.content == "User's name is Alex"
    assert loaded.memory_type is MemoryType.FACT
    assert loaded.importance == pytest.approx(0.95)
    assert loaded.tags == ["name", "identity"]
    assert loaded.embedding == pytest.approx([0.5, -0.25, 1.0])
    assert loaded.source_id == "msg-1"
    assert loaded.source_type is SourceType.CHAT
    assert loaded.step_state is StepState.DONE
    assert loaded.metadata == {"reasoning": "Core identity"}
    assert loaded.created_at == memory.created_at


@pytest.mark.asyncio
async def test_get_missing_memory(store):
    assert await store.get_memory("nope") is None


@pytest.mark.asyncio
async def test_get_user_memories_oldest_first_and_scoped(store, make_memory):
    first = make_memory("User's name is Alex")
    second = make_memory("User prefers dark mode", memory_type=MemoryType.PREFERENCE)
    other = make_memory("Someone else entirely", user_id="user-2")
    for m in (second, other, first):
        await store.create_memory(m)

    memories = await store.get_user_memories("user-1")
    assert [m.id for m in memories] == [first.id, second.id]

    prefs = await store.get_user_memories("user-1", MemoryType.PREFERENCE)
    assert [m.id for m in prefs] == [second.id]


@pytest.mark.asyncio
async def test_set_embedding_marks_done(store, make_memory):
    memory = make_memory("User's name is Alex", step_state=StepState.PENDING_EMBEDDING)
    await store.create_memory(memory)
    assert [m.id for m in await store.get_incomplete_memories()] == [memory.id]

    await store.set_embedding(memory.id, [1.0, 0.0])

    loaded = await store.get_memory(memory.id)
    assert loaded.embedding == pytest.approx([1.0, 0.0])
    assert loaded.step_state is StepState.DONE
    assert await store.get_incomplete_memories() == []


@pytest.mark.asyncio
async def test_incomplete_memories_filtered_by_user(store, make_memory):
    mine = make_memory("User's name is Alex", step_state=StepState.PENDING_EMBEDDING)
    theirs = make_memory(
        "Another user's memory", user_id="user-2",
        step_state=StepState.PENDING_DELETE_ORIGINALS,
    )
    await store.create_memory(mine)
    await store.create_memory(theirs)

    assert [m.id for m in await store.get_incomplete_memories("user-1")] == [mine.id]
    assert len(await store.get_incomplete_memories()) == 2


@pytest.mark.asyncio
async def test_set_step_state(store, make_memory):
    memory = make_memory("User's name is Alex", step_state=StepState.PENDING_DELETE_ORIGINALS)
    await store.create_memory(memory)
    await store.set_step_state(memory.id, StepState.DONE)
    assert (await store.get_memory(memory.id)).step_state is StepState.DONE


@pytest.mark.asyncio
async def test_record_access(store, make_memory):
    memory = make_memory("User's name is Alex")
    await store.create_memory(memory)

    await store.record_access(memory.id)
    await store.record_access(memory.id)

    loaded = await store.get_memory(memory.id)
    assert loaded.access_count == 2
    assert loaded.last_accessed is not None


@pytest.mark.asyncio
async def test_delete_memory(store, make_memory):
    memory = make_memory("User's name is Alex")
    await store.create_memory(memory)

    assert await store.delete_memory(memory.id) is True
    assert await store.delete_memory(memory.id) is False
    assert await store.get_memory(memory.id) is None


@pytest.mark.asyncio
async def test_delete_user_memories(store, make_memory):
    await store.create_memory(make_memory("User's name is Alex"))
    await store.create_memory(make_memory("User prefers dark mode"))
    await store.create_memory(make_memory("Someone else entirely", user_id="user-2"))

    assert await store.delete_user_memories("user-1") == 2
    assert await store.get_user_memories("user-1") == []
    assert len(await store.get_user_memories("user-2")) == 1
