import pytest

from gatherings.errors import InternalError
from gatherings.models import ConfirmedGuest, Gathering
from gatherings.store import InMemoryGatheringStore, MongoGatheringStore


def _gathering(gathering_id="g1"):
    return Gathering(
        id=gathering_id, date="25/12/2025", time="20:00", location="Park",
        provided_items=["charcoal"], invited_users=["alice"], created_by="carol",
    )


@pytest.mark.asyncio
async def test_in_memory_store_hands_out_copies():
    store = InMemoryGatheringStore()
    await store.create(_gathering())

    loaded = await store.find_by_id("g1")
    loaded.provided_items.append("tampered")

    assert (await store.find_by_id("g1")).provided_items == ["charcoal"]


@pytest.mark.asyncio
async def test_in_memory_store_update_and_delete():
    store = InMemoryGatheringStore()
    await store.create(_gathering())

    updated = await store.update("g1", lambda g: g.declined_guests.append("bob"))
    assert updated.declined_guests == ["bob"]
    assert await store.update("missing", lambda g: None) is None

    removed = await store.delete("g1")
    assert removed.id == "g1"
    assert await store.delete("g1") is None
    assert await store.find_all() == []


@pytest.mark.asyncio
async def test_mongo_store_round_trip(fake_collection):
    store = MongoGatheringStore(fake_collection)
    await store.create(_gathering())

    def confirm(g):
        g.confirmed_guests.append(ConfirmedGuest(name="alice", items=["beer"]))
        g.provided_items.append("beer")

    await store.update("g1", confirm)

    loaded = await store.find_by_id("g1")
    assert loaded.provided_items == ["charcoal", "beer"]
    assert loaded.confirmed_guests[0].name == "alice"
    assert fake_collection.docs["g1"]["version"] == 1
    assert fake_collection.docs["g1"]["providedItems"] == ["charcoal", "beer"]
    assert [g.id for g in await store.find_all()] == ["g1"]

    assert (await store.delete("g1")).id == "g1"
    assert await store.find_by_id("g1") is None


@pytest.mark.asyncio
async def test_mongo_store_retries_after_concurrent_write(fake_collection):
    store = MongoGatheringStore(fake_collection)
    await store.create(_gathering())
    calls = []

    def confirm(g):
        calls.append(g.id)
        if len(calls) == 1:
            # Another writer sneaks in between our read and our replace
            fake_collection.docs["g1"]["providedItems"].append("ice")
            fake_collection.docs["g1"]["version"] += 1
        g.provided_items.append("beer")

    updated = await store.update("g1", confirm)

    assert len(calls) == 2
    assert updated.provided_items == ["charcoal", "ice", "beer"]


@pytest.mark.asyncio
async def test_mongo_store_gives_up_after_repeated_conflicts(fake_collection):
    store = MongoGatheringStore(fake_collection)
    await store.create(_gathering())

    def always_conflict(g):
        fake_collection.docs["g1"]["version"] += 1

    with pytest.raises(InternalError):
        await store.update("g1", always_conflict)


@pytest.mark.asyncio
async def test_in_memory_store_keeps_no_locks_for_unknown_ids():
    store = InMemoryGatheringStore()
    await store.create(_gathering())

    for i in range(100):
        assert await store.update(f"nope{i}", lambda g: None) is None
        assert await store.delete(f"nope{i}") is None
    await store.update("g1", lambda g: g.declined_guests.append("bob"))

    assert set(store._locks) <= {"g1"}


@pytest.mark.asyncio
async def test_mongo_store_skips_unreadable_documents(fake_collection, caplog):
    store = MongoGatheringStore(fake_collection)
    await store.create(_gathering())
    fake_collection.docs["legacy"] = {
        "_id": "legacy", "date": 20251225, "time": "20:00", "location": "Park", "createdBy": "carol",
    }

    gatherings = await store.find_all()

    assert [g.id for g in gatherings] == ["g1"]
    assert "legacy" in caplog.text
