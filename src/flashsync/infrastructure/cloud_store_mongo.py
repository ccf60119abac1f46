from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Any, Dict, Iterator, List, Optional, Protocol

from bson.errors import InvalidDocument
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, ExecutionTimeout, OperationFailure

from ..errors import AuthorizationError, SerializationError, TransientNetworkError

LOG = logging.getLogger("flashsync.cloud")

Record = Dict[str, Any]

# Unauthorized, AuthenticationFailed
_AUTH_CODES = {13, 18}
_AUTH_MARKERS = ("not authorized", "unauthorized", "not allowed", "authentication failed")


class CloudStore(Protocol):
    async def find(self, collection: str, record_id: Optional[str] = None, owner_id: Optional[str] = None) -> List[Record]: ...
    async def replace(self, collection: str, record: Record) -> Record: ...
    async def merge(self, collection: str, record_id: str, fields: Record) -> Record: ...
    async def delete(self, collection: str, record_id: str) -> bool: ...


def is_authorization_failure(exc: OperationFailure) -> bool:
    message = str(exc).lower()
    if "quota" in message:
        return False
    if exc.code in _AUTH_CODES:
        return True
    return any(marker in message for marker in _AUTH_MARKERS)


@contextmanager
def translate_errors(op: str, collection: str) -> Iterator[None]:
    """Map driver exceptions onto the persistence error taxonomy."""
    try:
        yield
    except ExecutionTimeout as exc:
        raise TransientNetworkError(f"{op} on {collection} timed out") from exc
    except OperationFailure as exc:
        if is_authorization_failure(exc):
            raise AuthorizationError(f"{op} on {collection} refused: {exc}") from exc
        raise TransientNetworkError(f"{op} on {collection} failed: {exc}") from exc
    except ConnectionFailure as exc:
        raise TransientNetworkError(f"{op} on {collection}: cloud store unreachable") from exc
    except InvalidDocument as exc:
        raise SerializationError(f"{op} on {collection}: {exc}") from exc


def _strip(doc: Dict[str, Any]) -> Record:
    data = dict(doc)
    data.pop("_id", None)
    return data


class MongoCloudStore:
    """Cloud document store on MongoDB via motor.

    Records keep their own string ``id`` (unique index); Mongo's ``_id`` is
    never returned to callers.
    """

    def __init__(
        self,
        url: str,
        db_name: str = "flashsync",
        timeout_ms: int = 500,
        client: Any = None,
    ) -> None:
        self._client = client if client is not None else AsyncIOMotorClient(url, serverSelectionTimeoutMS=timeout_ms)
        self._db: AsyncIOMotorDatabase = self._client[db_name]
        self._indexed: set[str] = set()

    async def connect(self) -> None:
        """Ping the server; raises AuthorizationError / TransientNetworkError."""
        with translate_errors("connect", "*"):
            await self._client.server_info()

    async def _collection(self, collection: str):
        coll = self._db[collection]
        if collection not in self._indexed:
            with translate_errors("create_index", collection):
                await coll.create_index("id", unique=True)
                await coll.create_index("owner_id")
            self._indexed.add(collection)
        return coll

    async def find(self, collection: str, record_id: Optional[str] = None, owner_id: Optional[str] = None) -> List[Record]:
        query: Dict[str, Any] = {}
        if record_id is not None:
            query["id"] = record_id
        if owner_id is not None:
            query["owner_id"] = owner_id
        coll = await self._collection(collection)
        with translate_errors("find", collection):
            docs = await coll.find(query).to_list(length=None)
        return [_strip(doc) for doc in docs]

    async def replace(self, collection: str, record: Record) -> Record:
        coll = await self._collection(collection)
        with translate_errors("replace", collection):
            await coll.replace_one({"id": record["id"]}, dict(record), upsert=True)
        return dict(record)

    async def merge(self, collection: str, record_id: str, fields: Record) -> Record:
        coll = await self._collection(collection)
        update = {k: v for k, v in fields.items() if k != "id"}
        with translate_errors("merge", collection):
            doc = await coll.find_one_and_update(
                {"id": record_id},
                {"$set": update or {"id": record_id}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        return _strip(doc or {"id": record_id, **update})

    async def delete(self, collection: str, record_id: str) -> bool:
        coll = await self._collection(collection)
        with translate_errors("delete", collection):
            res = await coll.delete_one({"id": record_id})
        return bool(res and res.deleted_count)
