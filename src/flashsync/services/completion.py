from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Protocol, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import Settings
from ..domain.records import ChatConfig, Message
from ..errors import StreamError
from .streaming import iter_in_thread

LOG = logging.getLogger("flashsync.stream")

DEFAULT_TITLE = "New Conversation"


class CompletionEngine(Protocol):
    def stream_reply(self, history: Sequence[Message], new_message: Message, config: ChatConfig) -> AsyncIterator[str]: ...

    async def summarize_title(self, first_message: str) -> str: ...


def clean_title(raw: str, limit: int = 60) -> str:
    text = raw.replace('"', "").replace("`", "").strip()
    text = re.sub(r"\s+", " ", text)
    return text[:limit].rstrip()


def _build_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def to_chat_messages(history: Sequence[Message], new_message: Message, config: ChatConfig) -> List[Dict[str, str]]:
    out: List[Dict[str, str]] = []
    if config.system_instruction:
        out.append({"role": "system", "content": config.system_instruction})
    for msg in history:
        role = "user" if msg.role == "user" else ("system" if msg.role == "system" else "assistant")
        out.append({"role": role, "content": msg.text})
    out.append({"role": "user", "content": new_message.text})
    return out


class HttpCompletionEngine:
    """Completion engine on an OpenAI-compatible ``/v1/chat/completions`` endpoint.

    The blocking ``requests`` stream is drained in a worker thread so the event
    loop keeps serving subscriptions while a reply is generated.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        timeout: tuple[int, int] = (3, 60),
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._api_key = api_key
        self._timeout = timeout
        self._session = session or _build_session()

    @classmethod
    def from_settings(cls, settings: Settings) -> "HttpCompletionEngine":
        return cls(
            settings.llm_base_url,
            settings.llm_model,
            api_key=settings.llm_api_key,
            timeout=(settings.llm_connect_timeout, settings.llm_read_timeout),
        )

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _model_for(self, config: ChatConfig) -> str:
        """An explicitly chosen model wins; otherwise the engine's configured one."""
        if "model" in config.model_fields_set and config.model:
            return config.model
        return self.model

    def _payload(self, messages: List[Dict[str, str]], config: ChatConfig, stream: bool) -> Dict[str, Any]:
        # thinking_budget has no OpenAI-compatible field and is not sent
        return {
            "model": self._model_for(config),
            "messages": messages,
            "temperature": config.temperature,
            "top_p": config.top_p,
            "top_k": config.top_k,
            "stream": stream,
        }

    def _stream_tokens(self, payload: Dict[str, Any]) -> Iterator[str]:
        LOG.debug("llm_stream", extra={"model": payload.get("model"), "base_url": self.base_url})
        try:
            with self._session.post(
                f"{self.base_url}/v1/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
                stream=True,
            ) as resp:
                resp.raise_for_status()
                for raw_line in resp.iter_lines():
                    if not raw_line:
                        continue
                    line = raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line
                    if not line.startswith("data: "):
                        continue
                    data = line[6:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        parsed = json.loads(data)
                    except json.JSONDecodeError:
                        continue
                    delta = (parsed.get("choices") or [{}])[0].get("delta") or {}
                    token = delta.get("content") or ""
                    if token:
                        yield token
        except requests.exceptions.RequestException as exc:
            raise StreamError(f"completion stream failed: {exc}") from exc

    async def stream_reply(
        self, history: Sequence[Message], new_message: Message, config: ChatConfig
    ) -> AsyncIterator[str]:
        payload = self._payload(to_chat_messages(history, new_message, config), config, stream=True)
        async for token in iter_in_thread(self._stream_tokens(payload)):
            yield token

    def _complete(self, payload: Dict[str, Any]) -> str:
        try:
            resp = self._session.post(
                f"{self.base_url}/v1/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.exceptions.RequestException, ValueError) as exc:
            raise StreamError(f"completion request failed: {exc}") from exc
        choices = data.get("choices") or []
        if choices:
            content = (choices[0].get("message") or {}).get("content")
            if content:
                return content
        return data.get("response") or data.get("text") or ""

    async def summarize_title(self, first_message: str) -> str:
        prompt = (
            f'Generate a short (2-4 words) title for a chat that starts with: "{first_message}". '
            "Return ONLY the title text."
        )
        payload = self._payload([{"role": "user", "content": prompt}], ChatConfig(model=self.model), stream=False)
        title = clean_title(await asyncio.to_thread(self._complete, payload))
        return title or DEFAULT_TITLE
