from __future__ import annotations

from datetime import UTC, datetime
from typing import List, Literal, Optional
import uuid

from pydantic import BaseModel, Field


USERS = "users"
CHATS = "chats"
GAMES = "games"
COMMUNITY_POSTS = "community_posts"
OVERRIDES = "overrides"

COLLECTIONS = (USERS, CHATS, GAMES, COMMUNITY_POSTS, OVERRIDES)


def now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


Role = Literal["user", "model", "system"]


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    role: Role
    text: str
    timestamp: str = Field(default_factory=now_iso)
    # Set when an administrative command injected the message instead of the completion engine
    injected_by: Optional[str] = None


class Chat(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    title: str = "New Conversation"
    messages: List[Message] = Field(default_factory=list)
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


class User(BaseModel):
    id: str = Field(default_factory=new_id)
    username: str
    is_admin: bool = False
    is_premium: bool = False
    is_banned: bool = False
    profile_pic: Optional[str] = None
    last_device_info: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)


class GameProject(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    username: Optional[str] = None
    title: str
    messages: List[Message] = Field(default_factory=list)
    latest_code: str = ""
    is_published: bool = False
    created_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)


class CommunityPost(BaseModel):
    id: str = Field(default_factory=new_id)
    owner_id: str
    username: str
    text: str
    type: Literal["signal", "game"] = "signal"
    game_id: Optional[str] = None
    game_title: Optional[str] = None
    timestamp: str = Field(default_factory=now_iso)
    profile_pic: Optional[str] = None


DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a professional AI assistant. Respond with clear, structured information. "
    "Use bolding (like **this**) for key points and backticks (like `this`) for code or commands. "
    "Avoid excessive technical jargon unless asked."
)


class ChatConfig(BaseModel):
    model: str = "gemini-3-flash-preview"
    temperature: float = 0.8
    top_p: float = 0.9
    top_k: int = 40
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    thinking_budget: int = 0


class AppSettings(BaseModel):
    background_url: str = ""
    background_blur: int = 10
    background_opacity: int = 20
    disco_mode: bool = False
