import copy
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from src.flashsync.errors import AuthorizationError  # noqa: E402
from src.flashsync.infrastructure.events import InProcessChangeNotifier  # noqa: E402
from src.flashsync.infrastructure.gateway import PersistenceGateway  # noqa: E402
from src.flashsync.infrastructure.local_cache import InMemoryLocalCache  # noqa: E402


class FakeCloudStore:
    """In-memory stand-in for MongoCloudStore.

    ``fail_with`` maps an operation name (find/replace/merge/delete) or ``*``
    to an exception instance raised on every call to that operation.
    """

    def __init__(self):
        self.data = {}
        self.fail_with = {}
        self.calls = []

    def _check(self, op):
        self.calls.append(op)
        exc = self.fail_with.get(op) or self.fail_with.get("*")
        if exc is not None:
            raise exc

    async def find(self, collection, record_id=None, owner_id=None):
        self._check("find")
        out = []
        for rec in self.data.get(collection, {}).values():
            if record_id is not None and rec.get("id") != record_id:
                continue
            if owner_id is not None and rec.get("owner_id") != owner_id:
                continue
            out.append(copy.deepcopy(rec))
        return out

    async def replace(self, collection, record):
        self._check("replace")
        self.data.setdefault(collection, {})[record["id"]] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def merge(self, collection, record_id, fields):
        self._check("merge")
        current = self.data.setdefault(collection, {}).setdefault(record_id, {"id": record_id})
        current.update(copy.deepcopy(fields))
        return copy.deepcopy(current)

    async def delete(self, collection, record_id):
        self._check("delete")
        return self.data.get(collection, {}).pop(record_id, None) is not None

    def deny_all(self, message="Missing or insufficient permissions: not authorized"):
        self.fail_with["*"] = AuthorizationError(message)


@pytest.fixture
def local_cache():
    return InMemoryLocalCache()


@pytest.fixture
def cloud_store():
    return FakeCloudStore()


@pytest.fixture
def notifier():
    return InProcessChangeNotifier()


@pytest.fixture
def cloud_gateway(local_cache, cloud_store, notifier):
    return PersistenceGateway(local_cache, cloud_store, notifier=notifier)


@pytest.fixture
def local_gateway(local_cache):
    return PersistenceGateway(local_cache)
