from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable, List, Optional, TYPE_CHECKING, Union

from ..domain.records import (
    CHATS,
    COMMUNITY_POSTS,
    GAMES,
    OVERRIDES,
    USERS,
    Chat,
    CommunityPost,
    GameProject,
    User,
    now_iso,
)
from .gateway import PersistenceGateway

if TYPE_CHECKING:  # pragma: no cover
    from ..services.channel import ReactiveChannel, SubscriptionHandle


class RecordRepository:
    """Typed helpers over the gateway for the presentation layer.

    Every mutation is a whole-record read-modify-write; nothing here bypasses
    the gateway.
    """

    def __init__(self, gateway: PersistenceGateway) -> None:
        self._gateway = gateway

    # ---------------------- Users ----------------------

    async def list_users(self) -> List[User]:
        return [User.model_validate(r) for r in await self._gateway.read(USERS)]

    async def get_user(self, user_id: str) -> Optional[User]:
        records = await self._gateway.read(USERS, record_id=user_id)
        return User.model_validate(records[0]) if records else None

    async def save_user(self, user: User) -> User:
        return User.model_validate(await self._gateway.write(USERS, user))

    async def update_user(self, user_id: str, **changes: Any) -> User:
        user = await self.get_user(user_id)
        if user is None:
            raise KeyError("User not found")
        updated = user.model_copy(update=changes)
        return await self.save_user(User.model_validate(updated.model_dump()))

    async def set_banned(self, user_id: str, banned: bool) -> User:
        return await self.update_user(user_id, is_banned=banned)

    async def set_admin(self, user_id: str, is_admin: bool) -> User:
        return await self.update_user(user_id, is_admin=is_admin)

    async def delete_user(self, user_id: str) -> bool:
        """Delete a user together with their chats, games and override document."""
        chats, games = await asyncio.gather(
            self._gateway.read(CHATS, owner_id=user_id),
            self._gateway.read(GAMES, owner_id=user_id),
        )
        for rec in chats:
            await self._gateway.delete(CHATS, rec["id"])
        for rec in games:
            await self._gateway.delete(GAMES, rec["id"])
        await self._gateway.delete(OVERRIDES, user_id)
        return await self._gateway.delete(USERS, user_id)

    # ---------------------- Chats ----------------------

    async def list_chats(self, owner_id: str) -> List[Chat]:
        chats = [Chat.model_validate(r) for r in await self._gateway.read(CHATS, owner_id=owner_id)]
        # Newest first
        return sorted(chats, key=lambda c: c.updated_at, reverse=True)

    async def get_chat(self, chat_id: str) -> Optional[Chat]:
        records = await self._gateway.read(CHATS, record_id=chat_id)
        return Chat.model_validate(records[0]) if records else None

    async def create_chat(self, owner_id: str, title: str = "New Conversation") -> Chat:
        return await self.save_chat(Chat(owner_id=owner_id, title=title))

    async def save_chat(self, chat: Chat) -> Chat:
        return Chat.model_validate(await self._gateway.write(CHATS, chat))

    async def rename_chat(self, chat_id: str, title: str) -> Chat:
        chat = await self.get_chat(chat_id)
        if chat is None:
            raise KeyError("Chat not found")
        chat.title = title
        chat.updated_at = max(chat.updated_at, now_iso())
        return await self.save_chat(chat)

    async def delete_chat(self, chat_id: str) -> bool:
        return await self._gateway.delete(CHATS, chat_id)

    async def clear_chats(self, owner_id: str) -> int:
        records = await self._gateway.read(CHATS, owner_id=owner_id)
        for rec in records:
            await self._gateway.delete(CHATS, rec["id"])
        return len(records)

    # ---------------------- Games ----------------------

    async def save_game(self, game: GameProject) -> GameProject:
        return GameProject.model_validate(await self._gateway.write(GAMES, game))

    async def list_games(self, owner_id: str) -> List[GameProject]:
        games = [GameProject.model_validate(r) for r in await self._gateway.read(GAMES, owner_id=owner_id)]
        return sorted(games, key=lambda g: g.updated_at, reverse=True)

    async def get_public_game(self, game_id: str) -> Optional[GameProject]:
        records = await self._gateway.read(GAMES, record_id=game_id)
        if not records:
            return None
        game = GameProject.model_validate(records[0])
        return game if game.is_published else None

    async def publish_game(self, game_id: str, text: str = "") -> CommunityPost:
        """Mark a game published and announce it on the community feed."""
        records = await self._gateway.read(GAMES, record_id=game_id)
        if not records:
            raise KeyError("Game not found")
        game = GameProject.model_validate(records[0])
        game.is_published = True
        game.updated_at = max(game.updated_at, now_iso())
        await self.save_game(game)
        post = CommunityPost(
            owner_id=game.owner_id,
            username=game.username or game.owner_id,
            text=text or f"Published {game.title}",
            type="game",
            game_id=game.id,
            game_title=game.title,
        )
        return await self.save_post(post)

    # ---------------------- Community ----------------------

    async def save_post(self, post: CommunityPost) -> CommunityPost:
        return CommunityPost.model_validate(await self._gateway.write(COMMUNITY_POSTS, post))

    async def list_posts(self, kind: Optional[str] = None) -> List[CommunityPost]:
        posts = [CommunityPost.model_validate(r) for r in await self._gateway.read(COMMUNITY_POSTS)]
        if kind is not None:
            posts = [p for p in posts if p.type == kind]
        return sorted(posts, key=lambda p: p.timestamp, reverse=True)


def _typed(model, callback: Callable[[List[Any]], Union[None, Awaitable[None]]], sort_key: str):
    async def _deliver(records: List[dict]) -> None:
        items = sorted((model.model_validate(r) for r in records), key=lambda x: getattr(x, sort_key), reverse=True)
        result = callback(items)
        if inspect.isawaitable(result):
            await result

    return _deliver


def subscribe_chats(
    channel: "ReactiveChannel",
    owner_id: str,
    callback: Callable[[List[Chat]], Union[None, Awaitable[None]]],
) -> "SubscriptionHandle":
    from ..services.channel import SubscriptionKey

    return channel.subscribe(SubscriptionKey.owned(CHATS, owner_id), _typed(Chat, callback, "updated_at"))


def subscribe_community(
    channel: "ReactiveChannel",
    callback: Callable[[List[CommunityPost]], Union[None, Awaitable[None]]],
) -> "SubscriptionHandle":
    from ..services.channel import SubscriptionKey

    return channel.subscribe(SubscriptionKey.whole(COMMUNITY_POSTS), _typed(CommunityPost, callback, "timestamp"))
