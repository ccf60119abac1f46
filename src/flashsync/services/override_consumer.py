from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from ..config import Settings
from ..core.scheduling import OneShotTimer
from ..domain.overrides import (
    TIMESTAMPED_CHANNELS,
    AppSettingsOverride,
    BroadcastOverride,
    ForcedConfigOverride,
    GhostMessageOverride,
    OverrideCommand,
    OverrideDocument,
    TakeoverOverride,
    VisualMatrixOverride,
)
from ..domain.records import CHATS, Chat, Message, now_iso
from ..infrastructure.gateway import PersistenceGateway
from .channel import SubscriptionHandle
from .override_bus import OverrideBus

LOG = logging.getLogger("flashsync.overrides")


class SessionEffects:
    """Hooks the presentation layer implements to render override effects.

    Every hook is a no-op here; subclasses override what they render.
    """

    def apply_theme(self, theme: str) -> None: ...

    def apply_visual_matrix(self, matrix: VisualMatrixOverride) -> None: ...

    def apply_config(self, config: ForcedConfigOverride) -> None: ...

    def apply_app_settings(self, settings: AppSettingsOverride) -> None: ...

    def show_broadcast(self, text: str) -> None: ...

    def dismiss_broadcast(self) -> None: ...

    def start_takeover(self, takeover_id: str) -> None: ...

    def end_takeover(self, takeover_id: str) -> None: ...

    def play_audio(self, media_url: str) -> None: ...

    def stop_audio(self) -> None: ...

    def ghost_message_injected(self, chat_id: str, message: Message) -> None: ...


class OverrideConsumer:
    """Receiving side of the override bus for one signed-in session.

    Bare values are applied on every delivery. Timestamped events fire only
    when their ``trigger_timestamp`` is newer than the last one seen on the
    same channel. ``last_seen`` lives in memory and starts at zero per
    session, so the latest event of each channel fires once more after a
    restart.
    """

    def __init__(
        self,
        bus: OverrideBus,
        gateway: PersistenceGateway,
        user_id: str,
        effects: Optional[SessionEffects] = None,
        *,
        active_chat_id: Callable[[], Optional[str]] = lambda: None,
        broadcast_seconds: float = 10.0,
        takeover_seconds: float = 15.0,
    ) -> None:
        self._bus = bus
        self._gateway = gateway
        self.user_id = user_id
        self._effects = effects or SessionEffects()
        self._active_chat_id = active_chat_id
        self._broadcast_seconds = broadcast_seconds
        self._takeover_seconds = takeover_seconds
        self.last_seen: Dict[str, int] = {channel: 0 for channel in TIMESTAMPED_CHANNELS}
        self.accepted: List[OverrideCommand] = []
        self._handle: Optional[SubscriptionHandle] = None
        self._broadcast_timer: Optional[OneShotTimer] = None
        self._takeover_timer: Optional[OneShotTimer] = None

    @classmethod
    def from_settings(
        cls,
        bus: OverrideBus,
        gateway: PersistenceGateway,
        user_id: str,
        settings: Settings,
        effects: Optional[SessionEffects] = None,
        active_chat_id: Callable[[], Optional[str]] = lambda: None,
    ) -> "OverrideConsumer":
        return cls(
            bus,
            gateway,
            user_id,
            effects,
            active_chat_id=active_chat_id,
            broadcast_seconds=settings.broadcast_display_seconds,
            takeover_seconds=settings.takeover_display_seconds,
        )

    def start(self) -> SubscriptionHandle:
        if self._handle is None or not self._handle.active:
            self._handle = self._bus.subscribe(self.user_id, self.handle)
        return self._handle

    def close(self) -> None:
        if self._handle is not None:
            self._handle.dispose()
        for timer in (self._broadcast_timer, self._takeover_timer):
            if timer is not None:
                timer.cancel()

    def _accept(self, event: Optional[OverrideCommand]) -> bool:
        if event is None:
            return False
        stamp = event.trigger_timestamp  # type: ignore[attr-defined]
        if stamp <= self.last_seen[event.field]:
            return False
        self.last_seen[event.field] = stamp
        self.accepted.append(event)
        return True

    async def handle(self, doc: OverrideDocument) -> None:
        if doc.theme is not None:
            self._effects.apply_theme(doc.theme)
        if doc.visual_matrix is not None:
            self._effects.apply_visual_matrix(doc.visual_matrix)
        if doc.config is not None:
            self._effects.apply_config(doc.config)
        if doc.app_settings is not None:
            self._effects.apply_app_settings(doc.app_settings)
        if doc.audio is not None:
            if doc.audio.playing:
                self._effects.play_audio(doc.audio.media_url)
            else:
                self._effects.stop_audio()

        if self._accept(doc.broadcast):
            self._show_broadcast(doc.broadcast)  # type: ignore[arg-type]
        if self._accept(doc.takeover):
            self._start_takeover(doc.takeover)  # type: ignore[arg-type]
        if self._accept(doc.ghost_payload):
            await self._inject_ghost(doc.ghost_payload)  # type: ignore[arg-type]

    def _show_broadcast(self, event: BroadcastOverride) -> None:
        if self._broadcast_timer is not None:
            self._broadcast_timer.cancel()
        self._effects.show_broadcast(event.text)
        self._broadcast_timer = OneShotTimer(
            self._broadcast_seconds, self._effects.dismiss_broadcast, name="broadcast-dismiss"
        ).start()

    def _start_takeover(self, event: TakeoverOverride) -> None:
        if self._takeover_timer is not None:
            self._takeover_timer.cancel()
        self._effects.start_takeover(event.takeover_id)
        self._takeover_timer = OneShotTimer(
            self._takeover_seconds,
            lambda: self._effects.end_takeover(event.takeover_id),
            name="takeover-dismiss",
        ).start()

    async def _inject_ghost(self, event: GhostMessageOverride) -> None:
        # The session writes its own chat; the administrator only delivered intent
        message = Message(owner_id=self.user_id, role="model", text=event.text, injected_by=event.sender)
        chat: Optional[Chat] = None
        chat_id = self._active_chat_id()
        if chat_id:
            records = await self._gateway.read(CHATS, record_id=chat_id)
            if records and records[0].get("owner_id") == self.user_id:
                chat = Chat.model_validate(records[0])
        if chat is None:
            chat = Chat(owner_id=self.user_id, title=f"Message from {event.sender}")
        chat.messages = [*chat.messages, message]
        chat.updated_at = max(chat.updated_at, now_iso())
        await self._gateway.write(CHATS, chat)
        LOG.info("ghost_message_injected", extra={"chat_id": chat.id, "sender": event.sender})
        self._effects.ghost_message_injected(chat.id, message)
