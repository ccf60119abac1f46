from __future__ import annotations

import asyncio
from dataclasses import dataclass
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from ..config import Settings
from ..core.scheduling import IntervalScheduler
from ..domain.records import OVERRIDES
from ..infrastructure.events import ChangeEvent, ChangeListener
from ..infrastructure.gateway import PersistenceGateway

LOG = logging.getLogger("flashsync.channel")

Record = Dict[str, Any]
SnapshotCallback = Callable[[List[Record]], Union[None, Awaitable[None]]]


@dataclass(frozen=True)
class SubscriptionKey:
    """What a subscription watches: one document, one owner's records or a whole collection."""

    collection: str
    record_id: Optional[str] = None
    owner_id: Optional[str] = None

    @classmethod
    def document(cls, collection: str, record_id: str) -> "SubscriptionKey":
        return cls(collection=collection, record_id=record_id)

    @classmethod
    def owned(cls, collection: str, owner_id: str) -> "SubscriptionKey":
        return cls(collection=collection, owner_id=owner_id)

    @classmethod
    def whole(cls, collection: str) -> "SubscriptionKey":
        return cls(collection=collection)

    def matches(self, event: ChangeEvent) -> bool:
        if event.collection != self.collection:
            return False
        if self.record_id is not None:
            return event.record_id == self.record_id
        if self.owner_id is not None:
            # Deletes of uncached records carry no owner
            return event.owner_id is None or event.owner_id == self.owner_id
        return True


class SubscriptionHandle:
    """Cancellation token for one subscription. ``dispose`` is idempotent."""

    def __init__(self, key: SubscriptionKey, on_dispose: Callable[[], None]) -> None:
        self.key = key
        self._on_dispose = on_dispose
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def dispose(self) -> None:
        if not self._active:
            return
        self._active = False
        self._on_dispose()

    __call__ = dispose


class _Subscription:
    def __init__(
        self,
        channel: "ReactiveChannel",
        key: SubscriptionKey,
        callback: SnapshotCallback,
        interval: float,
    ) -> None:
        self._channel = channel
        self._gateway = channel.gateway
        self.key = key
        self._callback = callback
        self._interval = interval
        self._push_task: Optional[asyncio.Task] = None
        self._poller: Optional[IntervalScheduler] = None
        self._unwatch_capability: Optional[Callable[[], None]] = None
        self.handle = SubscriptionHandle(key, self._stop)

    @property
    def mode(self) -> str:
        if self._poller is not None:
            return "poll"
        return "push" if self._push_task is not None else "idle"

    def start(self) -> None:
        notifier = self._gateway.notifier
        if self._gateway.is_cloud_enabled() and notifier is not None:
            self._unwatch_capability = self._gateway.capability.on_downgrade(self._switch_to_polling)
            self._push_task = asyncio.get_running_loop().create_task(
                self._run_push(), name=f"push:{self.key.collection}"
            )
        else:
            self._start_polling()

    def _start_polling(self) -> None:
        self._poller = IntervalScheduler(self._interval, self._deliver, name=f"poll:{self.key.collection}")
        self._poller.start()

    def _switch_to_polling(self) -> None:
        if not self.handle.active or self._poller is not None:
            return
        LOG.info("subscription_switched_to_polling", extra={"collection": self.key.collection})
        if self._push_task is not None and not self._push_task.done():
            self._push_task.cancel()
        self._start_polling()

    async def _deliver(self) -> None:
        if not self.handle.active:
            return
        records = await self._gateway.read(
            self.key.collection, record_id=self.key.record_id, owner_id=self.key.owner_id
        )
        # Disposed while the read was in flight
        if not self.handle.active:
            return
        try:
            result = self._callback(records)
            if inspect.isawaitable(result):
                await result
        except Exception:
            LOG.exception("subscription_callback_failed", extra={"collection": self.key.collection})

    async def _deliver_logged(self) -> None:
        try:
            await self._deliver()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOG.warning(
                "subscription_read_failed",
                extra={"collection": self.key.collection, "err": str(exc)},
            )

    async def _run_push(self) -> None:
        listener: Optional[ChangeListener] = None
        try:
            listener = await self._gateway.notifier.open(self.key.collection)  # type: ignore[union-attr]
            await self._deliver_logged()
            async for event in listener:
                if not self.handle.active or not self._gateway.is_cloud_enabled():
                    break
                if self.key.matches(event):
                    await self._deliver_logged()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOG.warning(
                "subscription_push_failed",
                extra={"collection": self.key.collection, "err": str(exc)},
            )
            if self.handle.active and self._poller is None:
                self._start_polling()
        finally:
            if listener is not None:
                try:
                    await listener.close()
                except Exception as exc:
                    LOG.warning(
                        "subscription_listener_close_failed",
                        extra={"collection": self.key.collection, "err": str(exc)},
                    )

    def _stop(self) -> None:
        if self._unwatch_capability is not None:
            self._unwatch_capability()
            self._unwatch_capability = None
        if self._push_task is not None and not self._push_task.done():
            self._push_task.cancel()
        if self._poller is not None:
            self._poller.stop()
        self._channel._forget(self)


class ReactiveChannel:
    """Per-key subscriptions over the gateway.

    Push mode (cloud enabled and a change notifier configured): the callback
    gets the current snapshot immediately, then a fresh full snapshot after
    every matching change. Otherwise the key is polled on a fixed interval and
    the callback may see identical snapshots repeatedly.
    """

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        poll_interval: float = 10.0,
        intervals: Optional[Dict[str, float]] = None,
    ) -> None:
        self.gateway = gateway
        self._poll_interval = poll_interval
        self._intervals = dict(intervals or {})
        self._subs: Set[_Subscription] = set()

    @classmethod
    def from_settings(cls, gateway: PersistenceGateway, settings: Settings) -> "ReactiveChannel":
        return cls(
            gateway,
            poll_interval=settings.chat_poll_interval,
            intervals={OVERRIDES: settings.override_poll_interval},
        )

    def interval_for(self, collection: str) -> float:
        return self._intervals.get(collection, self._poll_interval)

    @property
    def active_count(self) -> int:
        return len(self._subs)

    def subscribe(
        self,
        key: SubscriptionKey,
        callback: SnapshotCallback,
        *,
        interval: Optional[float] = None,
    ) -> SubscriptionHandle:
        """Start watching ``key``. Must be called from within a running event loop."""
        sub = _Subscription(self, key, callback, interval or self.interval_for(key.collection))
        self._subs.add(sub)
        sub.start()
        LOG.debug("subscribed", extra={"collection": key.collection, "mode": sub.mode})
        return sub.handle

    def close(self) -> None:
        for sub in list(self._subs):
            sub.handle.dispose()

    def _forget(self, sub: _Subscription) -> None:
        self._subs.discard(sub)
