from datetime import datetime
from types import SimpleNamespace

import pytest
from pymongo.errors import PyMongoError
from fastapi.testclient import TestClient

from gatherings.directory import AccessGuard, InMemoryDirectory
from gatherings.errors import DispatchError
from gatherings.lifecycle import GatheringLifecycle
from gatherings.main import create_app
from gatherings.notifications import NotificationDispatcher, PushTransport
from gatherings.store import InMemoryGatheringStore

NOW = datetime(2026, 1, 1, 0, 0)


class FakeTransport(PushTransport):
    def __init__(self):
        self.sent: list[dict] = []
        self.fail_with: str | None = None

    async def send(self, endpoints, title, body, data):
        if self.fail_with:
            raise DispatchError(self.fail_with)
        self.sent.append({"endpoints": list(endpoints), "title": title, "body": body, "data": data})
        return {"endpoints": len(endpoints), "status": 200, "tickets": []}


class FakeCursor:
    def __init__(self, docs):
        self._docs = iter(docs)

    def __aiter__(self):
        return self

    async def __anext__(self):
        try:
            return next(self._docs)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Just enough of a motor collection for the Mongo-backed classes."""

    def __init__(self):
        self.docs: dict[str, dict] = {}

    async def insert_one(self, doc):
        from pymongo.errors import DuplicateKeyError

        if doc["_id"] in self.docs:
            raise DuplicateKeyError("duplicate key")
        self.docs[doc["_id"]] = dict(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query):
        doc = self.docs.get(query["_id"])
        return dict(doc) if doc else None

    def find(self, query=None):
        return FakeCursor([dict(d) for d in self.docs.values()])

    async def replace_one(self, query, doc):
        current = self.docs.get(query["_id"])
        if current is None or current.get("version") != query.get("version"):
            return SimpleNamespace(matched_count=0)
        self.docs[query["_id"]] = dict(doc)
        return SimpleNamespace(matched_count=1)

    async def update_one(self, query, update):
        current = self.docs.get(query["_id"])
        if current is None:
            return SimpleNamespace(matched_count=0)
        for field, value in update.get("$addToSet", {}).items():
            values = current.setdefault(field, [])
            if value not in values:
                values.append(value)
        return SimpleNamespace(matched_count=1)

    async def find_one_and_delete(self, query):
        return self.docs.pop(query["_id"], None)


@pytest.fixture
def fake_collection():
    return FakeCollection()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def directory():
    return InMemoryDirectory()


@pytest.fixture
def guard(directory):
    return AccessGuard(directory)


@pytest.fixture
def store():
    return InMemoryGatheringStore()


@pytest.fixture
def dispatcher(directory, transport):
    return NotificationDispatcher(directory, transport, timeout=1)


@pytest.fixture
def lifecycle(store, dispatcher):
    return GatheringLifecycle(store, dispatcher, notification_mode="users", clock=lambda: NOW)


@pytest.fixture
def topic_lifecycle(store, dispatcher):
    return GatheringLifecycle(store, dispatcher, notification_mode="topic", clock=lambda: NOW)


@pytest.fixture
def client(store, directory, transport):
    app = create_app(store=store, directory=directory, transport=transport,
                     notification_mode="users", clock=lambda: NOW)
    with TestClient(app) as test_client:
        yield test_client


class UnreachableCollection(FakeCollection):
    async def find_one(self, query):
        raise PyMongoError("connection reset by peer")


class BrokenTransport(PushTransport):
    async def send(self, endpoints, title, body, data):
        raise RuntimeError("unexpected response shape")
