"""Change notifications backing push subscriptions.

After a successful cloud write the gateway publishes a ``ChangeEvent`` on
``flashsync.changes.<collection>``. Subscribers only learn *that* a record
changed; they re-read the full snapshot themselves.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Literal, Optional, Protocol, Set

import redis.asyncio as redis
from pydantic import BaseModel

LOG = logging.getLogger("flashsync.events")

CHANNEL_PREFIX = "flashsync.changes."


class ChangeEvent(BaseModel):
    collection: str
    record_id: str
    owner_id: Optional[str] = None
    op: Literal["write", "delete"] = "write"


def channel_for(collection: str) -> str:
    return f"{CHANNEL_PREFIX}{collection}"


class ChangeListener(Protocol):
    def __aiter__(self) -> AsyncIterator[ChangeEvent]: ...
    async def close(self) -> None: ...


class ChangeNotifier(Protocol):
    async def publish(self, event: ChangeEvent) -> None: ...
    async def open(self, collection: str) -> ChangeListener: ...


class _QueueListener:
    def __init__(self, notifier: "InProcessChangeNotifier", collection: str) -> None:
        self._notifier = notifier
        self._collection = collection
        self.queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        while not self._closed:
            yield await self.queue.get()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._notifier._detach(self._collection, self)


class InProcessChangeNotifier:
    """Fan-out within one process; every open listener receives every event."""

    def __init__(self) -> None:
        self._listeners: Dict[str, Set[_QueueListener]] = {}

    async def publish(self, event: ChangeEvent) -> None:
        for listener in list(self._listeners.get(event.collection, ())):
            listener.queue.put_nowait(event)

    async def open(self, collection: str) -> _QueueListener:
        listener = _QueueListener(self, collection)
        self._listeners.setdefault(collection, set()).add(listener)
        return listener

    def listener_count(self, collection: str) -> int:
        return len(self._listeners.get(collection, ()))

    def _detach(self, collection: str, listener: _QueueListener) -> None:
        self._listeners.get(collection, set()).discard(listener)


class _RedisListener:
    def __init__(self, pubsub: Any) -> None:
        self._pubsub = pubsub
        self._closed = False

    async def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                yield ChangeEvent.model_validate_json(message["data"])
            except ValueError:
                LOG.warning("change_event_malformed", extra={"data": str(message.get("data"))[:200]})

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._pubsub.unsubscribe()
        await self._pubsub.aclose()


class RedisChangeNotifier:
    """Cross-process notifications over Redis pub/sub."""

    def __init__(self, url: str, client: Any = None) -> None:
        self._url = url
        self._client = client if client is not None else redis.Redis.from_url(url, socket_connect_timeout=0.5)

    async def publish(self, event: ChangeEvent) -> None:
        await self._client.publish(channel_for(event.collection), event.model_dump_json())

    async def open(self, collection: str) -> _RedisListener:
        pubsub = self._client.pubsub()
        await pubsub.subscribe(channel_for(collection))
        return _RedisListener(pubsub)

    async def aclose(self) -> None:
        await self._client.aclose()
