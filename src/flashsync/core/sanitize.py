from __future__ import annotations

import dataclasses
import math
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Set

from pydantic import BaseModel

from ..errors import SerializationError


class _Undefined:
    """Marker for a deliberately absent value (dropped by ``sanitize``)."""

    _instance = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


def _droppable(value: Any) -> bool:
    if value is UNDEFINED:
        return True
    # Classes count as callables too
    return callable(value) and not isinstance(value, (BaseModel, Enum))


def _render_key(key: Any) -> str:
    if isinstance(key, str):
        return key
    if isinstance(key, Enum):
        return str(key.value)
    if isinstance(key, bool):
        return "true" if key else "false"
    if isinstance(key, (int, float)):
        return str(key)
    raise SerializationError(f"mapping key {key!r} has no plain-data rendering")


def _render_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _sanitize(value: Any, active: Set[int]) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise SerializationError(f"float {value!r} is not representable")
        return value
    if isinstance(value, Enum):
        return _sanitize(value.value, active)
    if isinstance(value, datetime):
        return _render_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SerializationError("binary value is not valid UTF-8 text") from exc
    if isinstance(value, BaseModel):
        return _sanitize(value.model_dump(mode="python"), active)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return _sanitize({f.name: getattr(value, f.name) for f in dataclasses.fields(value)}, active)

    marker = id(value)
    if marker in active:
        raise SerializationError("cyclic reference cannot be serialized")

    if isinstance(value, dict):
        active.add(marker)
        try:
            out: Dict[str, Any] = {}
            for key, item in value.items():
                if _droppable(item):
                    continue
                out[_render_key(key)] = _sanitize(item, active)
            return out
        finally:
            active.discard(marker)
    if isinstance(value, (list, tuple, set, frozenset)):
        active.add(marker)
        try:
            items: List[Any] = []
            for item in value:
                if _droppable(item):
                    continue
                items.append(_sanitize(item, active))
            return items
        finally:
            active.discard(marker)

    raise SerializationError(f"{type(value).__name__} value has no plain-data rendering")


def sanitize(value: Any) -> Any:
    """Return a JSON-safe copy of ``value``.

    Callables and ``UNDEFINED`` entries are removed from mappings and
    sequences. Datetimes become ISO-8601 UTC strings, enums their values,
    pydantic models and dataclasses plain dicts, tuples and sets lists.
    Anything else that cannot be rendered raises ``SerializationError``
    rather than being dropped silently.
    """
    if _droppable(value):
        raise SerializationError("top-level value is a callable or UNDEFINED")
    return _sanitize(value, set())
