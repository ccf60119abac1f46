"""Runtime configuration.

Values come from ``FLASHSYNC_*`` environment variables; a ``.env`` file in the
working directory is loaded first so local development does not need exported
variables.
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class Settings(BaseModel):
    mongo_url: Optional[str] = None
    mongo_db: str = "flashsync"
    mongo_timeout_ms: int = 500
    redis_url: Optional[str] = None
    data_dir: Optional[str] = None

    # Poll intervals (seconds) used when push notifications are unavailable
    override_poll_interval: float = 2.0
    chat_poll_interval: float = 10.0

    broadcast_display_seconds: float = 10.0
    takeover_display_seconds: float = 15.0

    llm_base_url: str = "http://127.0.0.1:11434"
    llm_api_key: Optional[str] = None
    llm_model: str = "gemini-3-flash-preview"
    llm_connect_timeout: int = 3
    llm_read_timeout: int = 60

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        defaults = cls()
        return cls(
            mongo_url=os.getenv("FLASHSYNC_MONGO_URL") or None,
            mongo_db=os.getenv("FLASHSYNC_MONGO_DB", defaults.mongo_db),
            mongo_timeout_ms=int(os.getenv("FLASHSYNC_MONGO_TIMEOUT_MS", str(defaults.mongo_timeout_ms))),
            redis_url=os.getenv("FLASHSYNC_REDIS_URL") or None,
            data_dir=os.getenv("FLASHSYNC_DATA_DIR") or None,
            override_poll_interval=float(
                os.getenv("FLASHSYNC_OVERRIDE_POLL_INTERVAL", str(defaults.override_poll_interval))
            ),
            chat_poll_interval=float(os.getenv("FLASHSYNC_CHAT_POLL_INTERVAL", str(defaults.chat_poll_interval))),
            broadcast_display_seconds=float(
                os.getenv("FLASHSYNC_BROADCAST_SECONDS", str(defaults.broadcast_display_seconds))
            ),
            takeover_display_seconds=float(
                os.getenv("FLASHSYNC_TAKEOVER_SECONDS", str(defaults.takeover_display_seconds))
            ),
            llm_base_url=os.getenv("FLASHSYNC_LLM_BASE_URL", defaults.llm_base_url),
            llm_api_key=os.getenv("FLASHSYNC_LLM_API_KEY") or None,
            llm_model=os.getenv("FLASHSYNC_LLM_MODEL", defaults.llm_model),
            llm_connect_timeout=int(os.getenv("FLASHSYNC_LLM_CONNECT_TIMEOUT", str(defaults.llm_connect_timeout))),
            llm_read_timeout=int(os.getenv("FLASHSYNC_LLM_READ_TIMEOUT", str(defaults.llm_read_timeout))),
            log_level=(os.getenv("FLASHSYNC_LOG_LEVEL") or defaults.log_level).upper(),
        )
