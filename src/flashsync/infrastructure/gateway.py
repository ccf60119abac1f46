from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..config import Settings
from ..core.capability import CapabilityMode, CapabilityState
from ..core.sanitize import sanitize
from ..core.write_policy import WritePolicy, policy_for, resolve
from ..errors import AuthorizationError, TransientNetworkError
from ..observability.metrics import CAPABILITY_DOWNGRADES, record_operation
from .cloud_store_mongo import CloudStore, MongoCloudStore
from .events import ChangeEvent, ChangeNotifier, RedisChangeNotifier
from .local_cache import FileLocalCache, InMemoryLocalCache, LocalCache

LOG = logging.getLogger("flashsync.gateway")

Record = Dict[str, Any]


class PersistenceGateway:
    """The only component that touches the cloud store and the local cache.

    In Cloud mode every call goes to the cloud first. An AuthorizationError
    moves this gateway to LocalOnly for the rest of its life and the failing
    call is retried once against the local cache. Any other cloud error is
    raised to the caller as is. Successful cloud reads, writes and deletes are
    mirrored into the local cache so a later downgrade starts from current data.
    """

    def __init__(
        self,
        local: LocalCache,
        cloud: Optional[CloudStore] = None,
        *,
        notifier: Optional[ChangeNotifier] = None,
        capability: Optional[CapabilityState] = None,
    ) -> None:
        self._local = local
        self._cloud = cloud
        self._notifier = notifier
        if capability is None:
            capability = CapabilityState(CapabilityMode.CLOUD if cloud is not None else CapabilityMode.LOCAL_ONLY)
        if cloud is None and capability.is_cloud():
            capability.downgrade("no cloud store configured")
        self._capability = capability

    @property
    def capability(self) -> CapabilityState:
        return self._capability

    @property
    def notifier(self) -> Optional[ChangeNotifier]:
        return self._notifier

    def is_cloud_enabled(self) -> bool:
        return self._capability.is_cloud()

    def _use_cloud(self) -> bool:
        return self._cloud is not None and self._capability.is_cloud()

    def _downgrade(self, exc: AuthorizationError, op: str, collection: str) -> None:
        if self._capability.downgrade(f"{op} on {collection}: {exc}"):
            CAPABILITY_DOWNGRADES.inc()

    def _mirror_read(
        self,
        collection: str,
        records: List[Record],
        record_id: Optional[str],
        owner_id: Optional[str],
    ) -> None:
        """Make the local cache match a cloud snapshot within the queried scope."""
        seen = set()
        for rec in records:
            if isinstance(rec.get("id"), str) and rec["id"]:
                self._local.put(collection, rec)
                seen.add(rec["id"])
        # Records gone from the cloud within this scope go locally too
        for stale in self._local.find(collection, record_id=record_id, owner_id=owner_id):
            if stale.get("id") not in seen:
                self._local.remove(collection, stale["id"])

    async def _notify(self, event: ChangeEvent) -> None:
        if self._notifier is None:
            return
        try:
            await self._notifier.publish(event)
        except Exception as exc:
            # Best effort; subscribers re-read on their next delivery
            LOG.warning(
                "change_publish_failed",
                extra={"collection": event.collection, "record_id": event.record_id, "err": str(exc)},
            )

    async def read(
        self,
        collection: str,
        record_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> List[Record]:
        """Records matching the id and/or owner filter; all records when neither is given.

        A missing id is an empty list, never an error.
        """
        policy_for(collection)
        if self._use_cloud():
            try:
                records = await self._cloud.find(collection, record_id=record_id, owner_id=owner_id)  # type: ignore[union-attr]
                record_operation(collection, "read", "cloud")
                self._mirror_read(collection, records, record_id, owner_id)
                return records
            except AuthorizationError as exc:
                self._downgrade(exc, "read", collection)
        record_operation(collection, "read", "local")
        return self._local.find(collection, record_id=record_id, owner_id=owner_id)

    async def write(self, collection: str, record: Any) -> Record:
        """Upsert ``record`` under its id using the collection's write policy."""
        policy = policy_for(collection)
        clean = sanitize(record)
        if not isinstance(clean, dict) or not isinstance(clean.get("id"), str) or not clean["id"]:
            raise ValueError(f"records written to {collection} need a non-empty string id")

        if self._use_cloud():
            try:
                if policy is WritePolicy.MERGE:
                    stored = await self._cloud.merge(collection, clean["id"], clean)  # type: ignore[union-attr]
                else:
                    stored = await self._cloud.replace(collection, clean)  # type: ignore[union-attr]
            except AuthorizationError as exc:
                self._downgrade(exc, "write", collection)
            else:
                record_operation(collection, "write", "cloud")
                self._local.put(collection, stored)
                await self._notify(
                    ChangeEvent(collection=collection, record_id=stored["id"], owner_id=stored.get("owner_id"))
                )
                return stored

        existing = self._local.get(collection, clean["id"]) if policy is WritePolicy.MERGE else None
        stored = self._local.put(collection, resolve(existing, clean, policy))
        record_operation(collection, "write", "local")
        return stored

    async def delete(self, collection: str, record_id: str) -> bool:
        policy_for(collection)
        if self._use_cloud():
            try:
                existing = self._local.get(collection, record_id)
                removed = await self._cloud.delete(collection, record_id)  # type: ignore[union-attr]
            except AuthorizationError as exc:
                self._downgrade(exc, "delete", collection)
            else:
                record_operation(collection, "delete", "cloud")
                self._local.remove(collection, record_id)
                await self._notify(
                    ChangeEvent(
                        collection=collection,
                        record_id=record_id,
                        owner_id=(existing or {}).get("owner_id"),
                        op="delete",
                    )
                )
                return removed
        record_operation(collection, "delete", "local")
        return self._local.remove(collection, record_id)


async def build_gateway(settings: Optional[Settings] = None) -> PersistenceGateway:
    """Wire a gateway from configuration.

    The cloud store is used only when a Mongo URL is configured and the server
    answers at startup; otherwise the session starts LocalOnly.
    """
    settings = settings or Settings.from_env()
    local: LocalCache = FileLocalCache(settings.data_dir) if settings.data_dir else InMemoryLocalCache()
    if not settings.mongo_url:
        LOG.info("gateway_local_only", extra={"reason": "no mongo url"})
        return PersistenceGateway(local)

    cloud = MongoCloudStore(settings.mongo_url, settings.mongo_db, settings.mongo_timeout_ms)
    notifier = RedisChangeNotifier(settings.redis_url) if settings.redis_url else None
    try:
        await cloud.connect()
    except (AuthorizationError, TransientNetworkError) as exc:
        LOG.warning("cloud_unavailable_at_startup", extra={"err": str(exc)})
        return PersistenceGateway(local, notifier=notifier, capability=CapabilityState(CapabilityMode.LOCAL_ONLY))
    return PersistenceGateway(local, cloud, notifier=notifier)
