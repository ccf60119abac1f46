import pytest

from src.flashsync.core.capability import CapabilityMode, CapabilityState, is_valid_transition
from src.flashsync.core.write_policy import WritePolicy, policy_for, resolve
from src.flashsync.domain.records import CHATS, OVERRIDES, USERS


def test_only_cloud_to_local_transition_is_valid():
    assert is_valid_transition(CapabilityMode.CLOUD, CapabilityMode.LOCAL_ONLY)
    assert not is_valid_transition(CapabilityMode.LOCAL_ONLY, CapabilityMode.CLOUD)


def test_downgrade_is_one_way_and_notifies_once():
    state = CapabilityState()
    calls = []
    state.on_downgrade(lambda: calls.append("down"))

    assert state.downgrade("denied") is True
    assert state.mode is CapabilityMode.LOCAL_ONLY
    assert state.reason == "denied"
    assert state.downgrade("again") is False
    assert state.reason == "denied"
    assert calls == ["down"]


def test_downgrade_listener_can_be_removed_and_failures_are_contained():
    state = CapabilityState()
    seen = []

    def boom():
        raise RuntimeError("listener bug")

    state.on_downgrade(boom)
    remove = state.on_downgrade(lambda: seen.append(1))
    remove()
    remove()  # idempotent

    assert state.downgrade("denied")
    assert seen == []
    assert not state.is_cloud()


def test_policies_per_collection():
    assert policy_for(USERS) is WritePolicy.REPLACE
    assert policy_for(CHATS) is WritePolicy.REPLACE
    assert policy_for(OVERRIDES) is WritePolicy.MERGE
    with pytest.raises(ValueError):
        policy_for("nope")


def test_resolve_replace_and_merge():
    existing = {"id": "u1", "theme": "dark", "broadcast": {"text": "hi"}}
    incoming = {"id": "u1", "visual_matrix": {"filter": "grayscale"}}

    assert resolve(existing, incoming, WritePolicy.REPLACE) == incoming
    merged = resolve(existing, incoming, WritePolicy.MERGE)
    assert merged == {
        "id": "u1",
        "theme": "dark",
        "broadcast": {"text": "hi"},
        "visual_matrix": {"filter": "grayscale"},
    }
    assert resolve(None, incoming, WritePolicy.MERGE) == incoming
