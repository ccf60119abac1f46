import copy

import pytest
from bson.errors import InvalidDocument
from pymongo.errors import ExecutionTimeout, OperationFailure, ServerSelectionTimeoutError

from src.flashsync.errors import AuthorizationError, SerializationError, TransientNetworkError
from src.flashsync.infrastructure.cloud_store_mongo import (
    MongoCloudStore,
    is_authorization_failure,
    translate_errors,
)


class _Cursor:
    def __init__(self, docs):
        self._docs = docs

    async def to_list(self, length=None):
        return self._docs


class _DeleteResult:
    def __init__(self, count):
        self.deleted_count = count


class FakeCollection:
    def __init__(self):
        self.docs = []
        self.indexes = []
        self.raise_on_find = None

    async def create_index(self, key, unique=False):
        self.indexes.append((key, unique))

    def _match(self, doc, query):
        return all(doc.get(k) == v for k, v in query.items())

    def find(self, query):
        if self.raise_on_find is not None:
            raise self.raise_on_find
        return _Cursor([dict(d, _id="oid") for d in self.docs if self._match(d, query)])

    async def replace_one(self, query, doc, upsert=False):
        self.docs = [d for d in self.docs if not self._match(d, query)]
        self.docs.append(copy.deepcopy(doc))

    async def find_one_and_update(self, query, update, upsert=False, return_document=None):
        for doc in self.docs:
            if self._match(doc, query):
                doc.update(update["$set"])
                return dict(doc, _id="oid")
        new = dict(query)
        new.update(update["$set"])
        self.docs.append(new)
        return dict(new, _id="oid")

    async def delete_one(self, query):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not self._match(d, query)]
        return _DeleteResult(before - len(self.docs))


class FakeDatabase:
    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())


class FakeMotorClient:
    def __init__(self, ping_error=None):
        self.db = FakeDatabase()
        self.ping_error = ping_error

    def __getitem__(self, name):
        return self.db

    async def server_info(self):
        if self.ping_error is not None:
            raise self.ping_error
        return {"version": "7.0"}


def test_authorization_failure_detection():
    assert is_authorization_failure(OperationFailure("command find requires authentication", code=13))
    assert is_authorization_failure(OperationFailure("Authentication failed.", code=18))
    assert is_authorization_failure(OperationFailure("user is not authorized on flashsync"))
    assert not is_authorization_failure(OperationFailure("quota exceeded: not allowed", code=8000))
    assert not is_authorization_failure(OperationFailure("write conflict", code=112))


def test_translate_errors_maps_driver_exceptions():
    with pytest.raises(AuthorizationError):
        with translate_errors("find", "chats"):
            raise OperationFailure("not authorized", code=13)
    with pytest.raises(TransientNetworkError):
        with translate_errors("find", "chats"):
            raise OperationFailure("quota exceeded", code=8000)
    with pytest.raises(TransientNetworkError):
        with translate_errors("find", "chats"):
            raise ExecutionTimeout("operation exceeded time limit", code=50)
    with pytest.raises(TransientNetworkError):
        with translate_errors("find", "chats"):
            raise ServerSelectionTimeoutError("no servers")
    with pytest.raises(SerializationError):
        with translate_errors("replace", "chats"):
            raise InvalidDocument("cannot encode object")


@pytest.mark.asyncio
async def test_mongo_store_roundtrip_strips_object_id():
    client = FakeMotorClient()
    store = MongoCloudStore("mongodb://unused", client=client)
    await store.connect()

    await store.replace("chats", {"id": "c1", "owner_id": "u1", "title": "A"})
    await store.replace("chats", {"id": "c1", "owner_id": "u1", "title": "B"})
    await store.replace("chats", {"id": "c2", "owner_id": "u2", "title": "C"})

    found = await store.find("chats", owner_id="u1")
    assert found == [{"id": "c1", "owner_id": "u1", "title": "B"}]
    assert await store.find("chats", record_id="missing") == []
    assert ("id", True) in client.db["chats"].indexes

    assert await store.delete("chats", "c1") is True
    assert await store.delete("chats", "c1") is False


@pytest.mark.asyncio
async def test_mongo_store_merge_keeps_sibling_fields():
    store = MongoCloudStore("mongodb://unused", client=FakeMotorClient())

    await store.merge("overrides", "u1", {"id": "u1", "theme": "dark"})
    merged = await store.merge("overrides", "u1", {"id": "u1", "visual_matrix": {"filter": "invert"}})

    assert merged == {"id": "u1", "theme": "dark", "visual_matrix": {"filter": "invert"}}


@pytest.mark.asyncio
async def test_mongo_store_connect_and_find_translate_errors():
    denied = MongoCloudStore(
        "mongodb://unused", client=FakeMotorClient(ping_error=OperationFailure("Authentication failed.", code=18))
    )
    with pytest.raises(AuthorizationError):
        await denied.connect()

    client = FakeMotorClient()
    store = MongoCloudStore("mongodb://unused", client=client)
    client.db["users"].raise_on_find = ServerSelectionTimeoutError("timed out")
    with pytest.raises(TransientNetworkError):
        await store.find("users")
