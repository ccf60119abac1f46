from __future__ import annotations

import asyncio
from dataclasses import dataclass
import inspect
import logging
from typing import Awaitable, Callable, Dict, Optional, Sequence, Set, Union

from ..domain.records import CHATS, Chat, ChatConfig, Message, new_id, now_iso
from ..infrastructure.gateway import PersistenceGateway
from ..observability.metrics import STREAM_COMMITS
from .completion import CompletionEngine, clean_title

LOG = logging.getLogger("flashsync.stream")

STREAM_ERROR_SUFFIX = "\n\n[FATAL: Neural transmission interrupted.]"

FragmentCallback = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class StreamSession:
    target_chat_id: str
    message_id: str
    accumulated_text: str = ""


class StreamAccumulator:
    """Turns one streamed reply into exactly one chat write.

    Fragments are only shown through ``on_fragment``; the chat is written once
    when the stream ends, normally or not, always to the chat id given to
    ``run``. Two runs on the same chat are not ordered against each other;
    that race is logged, not prevented.
    """

    def __init__(self, gateway: PersistenceGateway, engine: CompletionEngine) -> None:
        self._gateway = gateway
        self._engine = engine
        self._inflight: Dict[str, int] = {}
        self._title_tasks: Set[asyncio.Task] = set()

    @property
    def is_streaming(self) -> bool:
        return bool(self._inflight)

    def is_streaming_chat(self, chat_id: str) -> bool:
        return chat_id in self._inflight

    async def run(
        self,
        target_chat_id: str,
        user_message: Message,
        history_snapshot: Sequence[Message],
        config: ChatConfig,
        on_fragment: Optional[FragmentCallback] = None,
    ) -> str:
        history = list(history_snapshot)
        session = StreamSession(target_chat_id=target_chat_id, message_id=new_id())
        if target_chat_id in self._inflight:
            LOG.warning("concurrent_stream", extra={"chat_id": target_chat_id})
        self._inflight[target_chat_id] = self._inflight.get(target_chat_id, 0) + 1

        failed = False
        try:
            try:
                async for fragment in self._engine.stream_reply(history, user_message, config):
                    session.accumulated_text += fragment
                    if on_fragment is not None:
                        result = on_fragment(session.accumulated_text)
                        if inspect.isawaitable(result):
                            await result
            except Exception as exc:
                failed = True
                LOG.warning(
                    "stream_interrupted",
                    extra={"chat_id": target_chat_id, "chars": len(session.accumulated_text), "err": str(exc)},
                )
                session.accumulated_text += STREAM_ERROR_SUFFIX
            await self._commit(session, user_message, history)
        finally:
            remaining = self._inflight.get(target_chat_id, 1) - 1
            if remaining > 0:
                self._inflight[target_chat_id] = remaining
            else:
                self._inflight.pop(target_chat_id, None)

        STREAM_COMMITS.labels(outcome="partial" if failed else "complete").inc()
        if not history:
            self._schedule_title(target_chat_id, user_message.text)
        return session.accumulated_text

    async def _commit(self, session: StreamSession, user_message: Message, history: Sequence[Message]) -> None:
        existing = await self._gateway.read(CHATS, record_id=session.target_chat_id)
        if existing:
            chat = Chat.model_validate(existing[0])
        else:
            chat = Chat(id=session.target_chat_id, owner_id=user_message.owner_id, messages=list(history))

        messages = list(chat.messages)
        if not any(m.id == user_message.id for m in messages):
            messages.append(user_message)
        reply = Message(
            id=session.message_id,
            owner_id=user_message.owner_id,
            role="model",
            text=session.accumulated_text,
        )
        messages.append(reply)
        chat.messages = messages
        chat.updated_at = max(chat.updated_at, now_iso())
        await self._gateway.write(CHATS, chat)
        LOG.debug("stream_committed", extra={"chat_id": session.target_chat_id, "message_id": reply.id})

    def _schedule_title(self, chat_id: str, first_message: str) -> None:
        task = asyncio.get_running_loop().create_task(self._retitle(chat_id, first_message))
        self._title_tasks.add(task)
        task.add_done_callback(self._title_tasks.discard)

    async def _retitle(self, chat_id: str, first_message: str) -> None:
        try:
            title = clean_title(await self._engine.summarize_title(first_message))
            if not title:
                return
            records = await self._gateway.read(CHATS, record_id=chat_id)
            if not records:
                return
            chat = Chat.model_validate(records[0])
            chat.title = title
            chat.updated_at = max(chat.updated_at, now_iso())
            await self._gateway.write(CHATS, chat)
        except Exception as exc:
            LOG.warning("title_update_failed", extra={"chat_id": chat_id, "err": str(exc)})

    async def wait_idle(self) -> None:
        """Wait for background title updates started by earlier runs."""
        while self._title_tasks:
            pending = list(self._title_tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._title_tasks.difference_update(pending)
