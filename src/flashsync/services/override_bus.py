from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

from ..domain.overrides import BroadcastOverride, OverrideDocument, decode_override_document, parse_override
from ..domain.records import OVERRIDES, USERS, now_ms
from ..infrastructure.gateway import PersistenceGateway
from ..observability.metrics import OVERRIDE_PUSHES
from .channel import ReactiveChannel, SubscriptionHandle, SubscriptionKey

LOG = logging.getLogger("flashsync.overrides")

DocumentCallback = Callable[[OverrideDocument], Union[None, Awaitable[None]]]


class OverrideBus:
    """Administrative command channel: one merge-written document per user.

    ``push`` overlays a single sub-command field (plus the bookkeeping
    ``timestamp``) onto the target's document and leaves sibling fields alone.
    Deliveries are passed on verbatim; deduplicating timestamped events is the
    receiver's job (see ``OverrideConsumer``).
    """

    def __init__(self, gateway: PersistenceGateway, channel: ReactiveChannel) -> None:
        self._gateway = gateway
        self._channel = channel

    async def push(self, target_user_id: str, payload: Any) -> Dict[str, Any]:
        override = parse_override(payload)
        record = {"id": target_user_id, **override.document_fields(), "timestamp": now_ms()}
        LOG.info("override_push", extra={"target": target_user_id, "kind": override.kind})
        stored = await self._gateway.write(OVERRIDES, record)
        OVERRIDE_PUSHES.labels(kind=override.kind).inc()
        return stored

    async def broadcast_to_all(self, text: str) -> List[str]:
        """Push one broadcast (shared trigger timestamp) to every known user."""
        users = await self._gateway.read(USERS)
        payload = BroadcastOverride(text=text, trigger_timestamp=now_ms())
        targets = [u["id"] for u in users if u.get("id")]
        await asyncio.gather(*(self.push(uid, payload) for uid in targets))
        return targets

    async def current(self, user_id: str) -> OverrideDocument:
        records = await self._gateway.read(OVERRIDES, record_id=user_id)
        return decode_override_document(user_id, records[0] if records else None)

    def subscribe(self, own_user_id: str, callback: DocumentCallback) -> SubscriptionHandle:
        async def _on_snapshot(records: List[Dict[str, Any]]) -> None:
            doc = decode_override_document(own_user_id, records[0] if records else None)
            result = callback(doc)
            if inspect.isawaitable(result):
                await result

        return self._channel.subscribe(SubscriptionKey.document(OVERRIDES, own_user_id), _on_snapshot)
