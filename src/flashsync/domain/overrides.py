"""Administrative override sub-commands.

Every command an administrator can send to another user's session is one
variant of the closed ``OverridePayload`` union. A variant knows which
top-level field of the target's override document it occupies, so pushes
only ever touch their own field.

Two families exist:

* bare values (theme, visual matrix, forced config, app settings, audio) are
  applied by the receiver on every delivery;
* timestamped events (broadcast, takeover, ghost message) carry a
  ``trigger_timestamp`` in epoch milliseconds and are deduplicated by the
  receiver.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, ClassVar, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from ..errors import OverrideValidationError

LOG = logging.getLogger("flashsync.overrides")


class OverrideCommand(BaseModel):
    field: ClassVar[str]

    def document_value(self) -> Any:
        return self.model_dump(exclude={"kind"}, exclude_none=True)

    def document_fields(self) -> Dict[str, Any]:
        return {self.field: self.document_value()}


class ThemeOverride(OverrideCommand):
    field: ClassVar[str] = "theme"
    kind: Literal["theme"] = "theme"
    theme: Literal["light", "dark"]

    def document_value(self) -> Any:
        return self.theme


class VisualMatrixOverride(OverrideCommand):
    field: ClassVar[str] = "visual_matrix"
    kind: Literal["visual_matrix"] = "visual_matrix"
    accent_color: Optional[str] = None
    border_radius: Optional[str] = None
    font_type: Optional[str] = None
    filter: Optional[str] = None


class ForcedConfigOverride(OverrideCommand):
    field: ClassVar[str] = "config"
    kind: Literal["config"] = "config"
    model: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    system_instruction: Optional[str] = None
    thinking_budget: Optional[int] = None

    @model_validator(mode="after")
    def _require_one_setting(self) -> "ForcedConfigOverride":
        if not self.document_value():
            raise ValueError("forced config needs a model id or at least one generation parameter")
        return self


class AppSettingsOverride(OverrideCommand):
    field: ClassVar[str] = "app_settings"
    kind: Literal["app_settings"] = "app_settings"
    background_url: Optional[str] = None
    background_blur: Optional[int] = None
    background_opacity: Optional[int] = None
    disco_mode: Optional[bool] = None


class BroadcastOverride(OverrideCommand):
    field: ClassVar[str] = "broadcast"
    kind: Literal["broadcast"] = "broadcast"
    text: str = Field(min_length=1)
    trigger_timestamp: int


class TakeoverOverride(OverrideCommand):
    field: ClassVar[str] = "takeover"
    kind: Literal["takeover"] = "takeover"
    takeover_id: str = Field(min_length=1)
    trigger_timestamp: int


class GhostMessageOverride(OverrideCommand):
    field: ClassVar[str] = "ghost_payload"
    kind: Literal["ghost_payload"] = "ghost_payload"
    text: str = Field(min_length=1)
    sender: str
    trigger_timestamp: int


class AudioOverride(OverrideCommand):
    field: ClassVar[str] = "audio"
    kind: Literal["audio"] = "audio"
    media_url: str
    playing: bool = True


OverridePayload = Annotated[
    Union[
        ThemeOverride,
        VisualMatrixOverride,
        ForcedConfigOverride,
        AppSettingsOverride,
        BroadcastOverride,
        TakeoverOverride,
        GhostMessageOverride,
        AudioOverride,
    ],
    Field(discriminator="kind"),
]

_PAYLOAD_ADAPTER: TypeAdapter[Any] = TypeAdapter(OverridePayload)

TIMESTAMPED_CHANNELS = (
    BroadcastOverride.field,
    TakeoverOverride.field,
    GhostMessageOverride.field,
)

_FIELD_TYPES: Dict[str, type[OverrideCommand]] = {
    cls.field: cls
    for cls in (
        VisualMatrixOverride,
        ForcedConfigOverride,
        AppSettingsOverride,
        BroadcastOverride,
        TakeoverOverride,
        GhostMessageOverride,
        AudioOverride,
    )
}


def parse_override(payload: Any) -> OverrideCommand:
    """Validate an incoming sub-command (model instance or plain mapping)."""
    if isinstance(payload, OverrideCommand):
        return payload
    try:
        return _PAYLOAD_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise OverrideValidationError(f"invalid override payload: {exc.errors()}") from exc


class OverrideDocument(BaseModel):
    """The decoded per-user mailbox as seen by the receiving session."""

    id: str
    theme: Optional[Literal["light", "dark"]] = None
    visual_matrix: Optional[VisualMatrixOverride] = None
    config: Optional[ForcedConfigOverride] = None
    app_settings: Optional[AppSettingsOverride] = None
    broadcast: Optional[BroadcastOverride] = None
    takeover: Optional[TakeoverOverride] = None
    ghost_payload: Optional[GhostMessageOverride] = None
    audio: Optional[AudioOverride] = None
    timestamp: Optional[int] = None


def decode_override_document(user_id: str, raw: Optional[Dict[str, Any]]) -> OverrideDocument:
    """Decode a stored override document field by field.

    A malformed sub-payload is dropped (and logged) so one bad field never
    hides its siblings from the receiver.
    """
    doc = OverrideDocument(id=user_id)
    if not raw:
        return doc
    theme = raw.get("theme")
    if theme is not None:
        try:
            doc.theme = ThemeOverride(theme=theme).theme
        except ValidationError:
            LOG.warning("override_field_dropped", extra={"user_id": user_id, "field": "theme"})
    for name, cls in _FIELD_TYPES.items():
        value = raw.get(name)
        if value is None:
            continue
        try:
            setattr(doc, name, cls.model_validate(value))
        except ValidationError:
            LOG.warning("override_field_dropped", extra={"user_id": user_id, "field": name})
    stamp = raw.get("timestamp")
    if isinstance(stamp, int):
        doc.timestamp = stamp
    return doc
