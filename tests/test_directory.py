import pytest

from gatherings.directory import AccessGuard, MongoDirectory
from gatherings.errors import Conflict, Forbidden, NotFound, Unauthorized, ValidationError


@pytest.mark.asyncio
async def test_register_rejects_duplicate_username(directory):
    user = await directory.register("alice", "Alice")
    assert user.display_name == "Alice"
    assert user.endpoints == []

    with pytest.raises(Conflict):
        await directory.register("alice", "Another Alice")


@pytest.mark.asyncio
async def test_register_requires_fields(directory):
    with pytest.raises(ValidationError):
        await directory.register("", "Alice")
    with pytest.raises(ValidationError):
        await directory.register("alice", " ")


@pytest.mark.asyncio
async def test_record_login_adds_endpoint_once(directory):
    await directory.register("alice", "Alice")

    await directory.record_login("alice", "tok-1")
    await directory.record_login("alice", "tok-2")
    user = await directory.record_login("alice", "tok-1")

    assert user.endpoints == ["tok-1", "tok-2"]
    assert await directory.endpoints_for("alice") == ["tok-1", "tok-2"]
    assert await directory.endpoints_for("ghost") == []


@pytest.mark.asyncio
async def test_record_login_unknown_user(directory):
    with pytest.raises(NotFound):
        await directory.record_login("ghost", "tok-1")


@pytest.mark.asyncio
async def test_authenticate(guard, directory):
    await directory.register("alice", "Alice")

    assert await guard.authenticate("alice") == "alice"
    with pytest.raises(Unauthorized):
        await guard.authenticate(None)
    with pytest.raises(Unauthorized):
        await guard.authenticate("mallory")


def test_authorize_self():
    AccessGuard.authorize_self("alice", "alice")
    with pytest.raises(Forbidden):
        AccessGuard.authorize_self("bob", "alice")


@pytest.mark.asyncio
async def test_mongo_directory(fake_collection):
    directory = MongoDirectory(fake_collection)

    await directory.register("alice", "Alice")
    with pytest.raises(Conflict):
        await directory.register("alice", "Alice")

    await directory.record_login("alice", "tok-1")
    user = await directory.record_login("alice", "tok-1")
    assert user.username == "alice"
    assert user.endpoints == ["tok-1"]

    with pytest.raises(NotFound):
        await directory.record_login("ghost", "tok-1")
    assert await directory.get_user("ghost") is None
