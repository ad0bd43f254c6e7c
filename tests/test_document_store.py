"""Test suite for the in-memory document store."""

import asyncio

import pytest

from slumini_chat.stores.base import (
    SERVER_TIMESTAMP,
    AlreadyExists,
    FailedPrecondition,
    FieldFilter,
    Increment,
    NotFound,
    OrderBy,
)
from slumini_chat.stores.memory import InMemoryDocumentStore


@pytest.mark.asyncio
async def test_create_is_single_winner():
    """Test only one of several racing creates succeeds."""
    store = InMemoryDocumentStore(latency=0)
    results = await asyncio.gather(
        *[store.create("rooms/r1", {"n": i}) for i in range(5)],
        return_exceptions=True
    )
    created = [r for r in results if not isinstance(r, Exception)]
    assert len(created) == 1
    assert all(isinstance(r, AlreadyExists) for r in results if isinstance(r, Exception))


@pytest.mark.asyncio
async def test_update_with_dotted_paths_and_increment():
    """Test nested field updates and atomic increments."""
    store = InMemoryDocumentStore()
    await store.create("rooms/r1", {"counts": {"a": 1}})

    await asyncio.gather(*[store.update("rooms/r1", {"counts.a": Increment(1)}) for _ in range(10)])
    document = await store.update("rooms/r1", {"counts.b": Increment(2), "title": "lobby"})

    assert document.data == {"counts": {"a": 11, "b": 2}, "title": "lobby"}


@pytest.mark.asyncio
async def test_update_missing_document():
    """Test updating an unknown document raises NotFound."""
    store = InMemoryDocumentStore()
    with pytest.raises(NotFound):
        await store.update("rooms/missing", {"a": 1})


@pytest.mark.asyncio
async def test_update_with_last_update_time():
    """Test a conditional update only applies to an unchanged document."""
    store = InMemoryDocumentStore()
    seen = await store.create("conversations/c1", {"count": 0})

    await store.update("conversations/c1", {"count": Increment(1)})
    with pytest.raises(FailedPrecondition):
        await store.update("conversations/c1", {"count": 5}, last_update_time=seen.update_time)

    current = await store.get("conversations/c1")
    assert current.data["count"] == 1
    updated = await store.update("conversations/c1", {"count": 5}, last_update_time=current.update_time)
    assert updated.data["count"] == 5


@pytest.mark.asyncio
async def test_server_timestamps_are_strictly_increasing():
    """Test server timestamps never collide."""
    store = InMemoryDocumentStore()
    documents = [await store.add("events", {"at": SERVER_TIMESTAMP}) for _ in range(20)]
    stamps = [d.data["at"] for d in documents]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


@pytest.mark.asyncio
async def test_query_filters_and_orders():
    """Test equality filters and descending order."""
    store = InMemoryDocumentStore()
    await store.set("people/1", {"team": {"id": "red"}, "score": 3})
    await store.set("people/2", {"team": {"id": "blue"}, "score": 9})
    await store.set("people/3", {"team": {"id": "red"}, "score": 7})

    documents = await store.query(
        "people",
        where=[FieldFilter("team.id", "==", "red")],
        order_by=[OrderBy("score", descending=True)],
    )
    assert [d.id for d in documents] == ["3", "1"]


def test_filter_rejects_unknown_operator():
    """Test filter operators are validated."""
    with pytest.raises(ValueError):
        FieldFilter("score", "~", 1)


@pytest.mark.asyncio
async def test_watch_delivers_initial_and_updated_snapshots():
    """Test live queries see every change until unsubscribed."""
    store = InMemoryDocumentStore()
    await store.add("rooms/r1/lines", {"text": "first", "at": SERVER_TIMESTAMP})
    snapshots = []

    subscription = await store.watch(
        "rooms/r1/lines",
        lambda docs: snapshots.append([d.data["text"] for d in docs]),
        order_by=[OrderBy("at")],
    )
    await store.add("rooms/r1/lines", {"text": "second", "at": SERVER_TIMESTAMP})
    await store.add("rooms/other/lines", {"text": "elsewhere", "at": SERVER_TIMESTAMP})

    subscription.unsubscribe()
    subscription.unsubscribe()
    await store.add("rooms/r1/lines", {"text": "third", "at": SERVER_TIMESTAMP})

    assert snapshots == [["first"], ["first", "second"]]
    assert not subscription.active


@pytest.mark.asyncio
async def test_watch_reports_query_failures():
    """Test a failing live query reaches the error callback once."""

    class BrokenStore(InMemoryDocumentStore):
        broken = False

        def _select(self, collection, where, order_by):
            if self.broken:
                raise RuntimeError("connection lost")
            return super()._select(collection, where, order_by)

    store = BrokenStore()
    errors = []
    subscription = await store.watch("rooms/r1/lines", lambda docs: None, on_error=errors.append)

    store.broken = True
    await store.add("rooms/r1/lines", {"text": "x"})
    await store.add("rooms/r1/lines", {"text": "y"})

    assert len(errors) == 1
    assert "connection lost" in str(errors[0])
    assert not subscription.active


@pytest.mark.asyncio
async def test_list_collections():
    """Test nested collections are discoverable by prefix."""
    store = InMemoryDocumentStore()
    await store.add("conversations/a_b/messages", {"text": "hi"})
    await store.set("conversations/a_b", {"x": 1})
    await store.add("other/c/messages", {"text": "hi"})

    assert await store.list_collections("conversations/") == ["conversations/a_b/messages"]


@pytest.mark.asyncio
async def test_invalid_paths_are_rejected():
    """Test collection and document paths are validated."""
    store = InMemoryDocumentStore()
    with pytest.raises(ValueError):
        await store.get("rooms")
    with pytest.raises(ValueError):
        await store.add("rooms/r1", {"a": 1})
