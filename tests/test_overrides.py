import asyncio

import pytest

from src.flashsync.domain.overrides import (
    BroadcastOverride,
    GhostMessageOverride,
    OverrideDocument,
    TakeoverOverride,
    ThemeOverride,
    decode_override_document,
    parse_override,
)
from src.flashsync.domain.records import CHATS, OVERRIDES, USERS, Chat
from src.flashsync.errors import OverrideValidationError
from src.flashsync.services.channel import ReactiveChannel
from src.flashsync.services.override_bus import OverrideBus
from src.flashsync.services.override_consumer import OverrideConsumer, SessionEffects


class RecordingEffects(SessionEffects):
    def __init__(self):
        self.calls = []

    def apply_theme(self, theme):
        self.calls.append(("theme", theme))

    def apply_visual_matrix(self, matrix):
        self.calls.append(("visual_matrix", matrix.filter))

    def show_broadcast(self, text):
        self.calls.append(("broadcast", text))

    def dismiss_broadcast(self):
        self.calls.append(("dismiss_broadcast",))

    def start_takeover(self, takeover_id):
        self.calls.append(("takeover", takeover_id))

    def end_takeover(self, takeover_id):
        self.calls.append(("end_takeover", takeover_id))

    def play_audio(self, media_url):
        self.calls.append(("audio", media_url))

    def ghost_message_injected(self, chat_id, message):
        self.calls.append(("ghost", chat_id, message.text))

    def named(self, name):
        return [c for c in self.calls if c[0] == name]


@pytest.fixture
def bus(local_gateway):
    return OverrideBus(local_gateway, ReactiveChannel(local_gateway, poll_interval=0.02))


def test_parse_override_accepts_known_kinds_and_rejects_others():
    assert isinstance(parse_override({"kind": "theme", "theme": "dark"}), ThemeOverride)
    assert parse_override({"kind": "broadcast", "text": "hi", "trigger_timestamp": 1}).field == "broadcast"

    with pytest.raises(OverrideValidationError):
        parse_override({"kind": "self_destruct"})
    with pytest.raises(OverrideValidationError):
        parse_override({"kind": "theme", "theme": "purple"})
    with pytest.raises(OverrideValidationError):
        parse_override({"kind": "config"})


def test_decode_drops_only_malformed_fields():
    doc = decode_override_document(
        "u1",
        {
            "id": "u1",
            "theme": "dark",
            "broadcast": {"text": "", "trigger_timestamp": 5},
            "takeover": {"takeover_id": "x", "trigger_timestamp": 7},
        },
    )
    assert doc.theme == "dark"
    assert doc.broadcast is None
    assert doc.takeover.trigger_timestamp == 7
    assert decode_override_document("u2", None) == OverrideDocument(id="u2")


@pytest.mark.asyncio
async def test_push_merges_sibling_fields(bus, local_gateway):
    await bus.push("u1", {"kind": "theme", "theme": "dark"})
    await bus.push("u1", {"kind": "visual_matrix", "filter": "grayscale(100%)"})

    doc = await bus.current("u1")
    assert doc.theme == "dark"
    assert doc.visual_matrix.filter == "grayscale(100%)"
    (raw,) = await local_gateway.read(OVERRIDES, record_id="u1")
    assert isinstance(raw["timestamp"], int)


@pytest.mark.asyncio
async def test_invalid_push_writes_nothing(bus, local_gateway):
    with pytest.raises(OverrideValidationError):
        await bus.push("u1", {"kind": "broadcast", "text": "missing stamp"})
    assert await local_gateway.read(OVERRIDES) == []


@pytest.mark.asyncio
async def test_broadcast_to_all_shares_trigger_timestamp(bus, local_gateway):
    await local_gateway.write(USERS, {"id": "u1", "username": "ann"})
    await local_gateway.write(USERS, {"id": "u2", "username": "bob"})

    targets = await bus.broadcast_to_all("maintenance at noon")

    assert sorted(targets) == ["u1", "u2"]
    docs = [await bus.current(uid) for uid in targets]
    assert {d.broadcast.text for d in docs} == {"maintenance at noon"}
    assert len({d.broadcast.trigger_timestamp for d in docs}) == 1


@pytest.mark.asyncio
async def test_consumer_fires_each_timestamp_once(bus, local_gateway):
    effects = RecordingEffects()
    consumer = OverrideConsumer(bus, local_gateway, "u1", effects, broadcast_seconds=5)

    for stamp in (100, 100, 200):
        await consumer.handle(OverrideDocument(id="u1", broadcast=BroadcastOverride(text=f"b{stamp}", trigger_timestamp=stamp)))

    assert effects.named("broadcast") == [("broadcast", "b100"), ("broadcast", "b200")]
    assert consumer.last_seen["broadcast"] == 200
    consumer.close()


@pytest.mark.asyncio
async def test_consumer_reapplies_bare_values_every_delivery(bus, local_gateway):
    effects = RecordingEffects()
    consumer = OverrideConsumer(bus, local_gateway, "u1", effects)
    doc = decode_override_document("u1", {"theme": "light", "visual_matrix": {"filter": "invert(1)"}})

    await consumer.handle(doc)
    await consumer.handle(doc)

    assert effects.named("theme") == [("theme", "light"), ("theme", "light")]
    assert effects.named("visual_matrix") == [("visual_matrix", "invert(1)")] * 2


@pytest.mark.asyncio
async def test_broadcast_dismisses_after_display_time(bus, local_gateway):
    effects = RecordingEffects()
    consumer = OverrideConsumer(bus, local_gateway, "u1", effects, broadcast_seconds=0.02)

    await consumer.handle(OverrideDocument(id="u1", broadcast=BroadcastOverride(text="hi", trigger_timestamp=1)))
    await asyncio.sleep(0.06)

    assert effects.calls == [("broadcast", "hi"), ("dismiss_broadcast",)]


@pytest.mark.asyncio
async def test_newer_takeover_replaces_running_one(bus, local_gateway):
    effects = RecordingEffects()
    consumer = OverrideConsumer(bus, local_gateway, "u1", effects, takeover_seconds=0.05)

    await consumer.handle(OverrideDocument(id="u1", takeover=TakeoverOverride(takeover_id="jumpscare", trigger_timestamp=1)))
    await consumer.handle(OverrideDocument(id="u1", takeover=TakeoverOverride(takeover_id="rickroll", trigger_timestamp=2)))
    await asyncio.sleep(0.1)

    assert effects.named("end_takeover") == [("end_takeover", "rickroll")]
    assert effects.named("takeover") == [("takeover", "jumpscare"), ("takeover", "rickroll")]


@pytest.mark.asyncio
async def test_ghost_message_lands_in_active_chat_with_provenance(bus, local_gateway):
    await local_gateway.write(CHATS, Chat(id="c1", owner_id="u1"))
    effects = RecordingEffects()
    consumer = OverrideConsumer(bus, local_gateway, "u1", effects, active_chat_id=lambda: "c1")

    ghost = GhostMessageOverride(text="I see you", sender="admin", trigger_timestamp=10)
    await consumer.handle(OverrideDocument(id="u1", ghost_payload=ghost))
    await consumer.handle(OverrideDocument(id="u1", ghost_payload=ghost))

    (record,) = await local_gateway.read(CHATS, record_id="c1")
    assert len(record["messages"]) == 1
    message = record["messages"][0]
    assert (message["role"], message["text"], message["injected_by"]) == ("model", "I see you", "admin")
    assert effects.named("ghost") == [("ghost", "c1", "I see you")]


@pytest.mark.asyncio
async def test_ghost_message_without_active_chat_opens_new_chat(bus, local_gateway):
    await local_gateway.write(CHATS, Chat(id="theirs", owner_id="u2"))
    consumer = OverrideConsumer(bus, local_gateway, "u1", active_chat_id=lambda: "theirs")

    await consumer.handle(
        OverrideDocument(id="u1", ghost_payload=GhostMessageOverride(text="hello", sender="admin", trigger_timestamp=3))
    )

    chats = await local_gateway.read(CHATS, owner_id="u1")
    assert len(chats) == 1
    assert chats[0]["title"] == "Message from admin"
    (theirs,) = await local_gateway.read(CHATS, record_id="theirs")
    assert theirs["messages"] == []


@pytest.mark.asyncio
async def test_consumer_receives_pushes_through_channel(bus, local_gateway):
    effects = RecordingEffects()
    consumer = OverrideConsumer(bus, local_gateway, "u1", effects, broadcast_seconds=5)
    handle = consumer.start()
    assert consumer.start() is handle

    await bus.push("u1", BroadcastOverride(text="hello there", trigger_timestamp=42))
    await bus.push("u1", {"kind": "audio", "media_url": "https://example.com/a.mp3"})
    for _ in range(50):
        if effects.named("broadcast") and effects.named("audio"):
            break
        await asyncio.sleep(0.01)

    assert effects.named("broadcast") == [("broadcast", "hello there")]
    assert effects.named("audio")[0] == ("audio", "https://example.com/a.mp3")
    consumer.close()
    assert not handle.active
