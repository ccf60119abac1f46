from __future__ import annotations

from enum import Enum
import logging
from typing import Callable, Dict, List, Optional

LOG = logging.getLogger("flashsync.capability")


class CapabilityMode(str, Enum):
    CLOUD = "cloud"
    LOCAL_ONLY = "local_only"


# Cloud -> LocalOnly is the only legal move within a session
MODE_TRANSITIONS: Dict[CapabilityMode, List[CapabilityMode]] = {
    CapabilityMode.CLOUD: [CapabilityMode.LOCAL_ONLY],
    CapabilityMode.LOCAL_ONLY: [],
}


def is_valid_transition(current: CapabilityMode, target: CapabilityMode) -> bool:
    return target in MODE_TRANSITIONS.get(current, [])


class CapabilityState:
    """Cloud/local capability owned by a single gateway instance."""

    def __init__(self, mode: CapabilityMode = CapabilityMode.CLOUD) -> None:
        self._mode = CapabilityMode(mode)
        self._reason: Optional[str] = None
        self._listeners: List[Callable[[], None]] = []

    @property
    def mode(self) -> CapabilityMode:
        return self._mode

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def is_cloud(self) -> bool:
        return self._mode is CapabilityMode.CLOUD

    def downgrade(self, reason: str) -> bool:
        """Move to LocalOnly. Returns False when already there."""
        if not is_valid_transition(self._mode, CapabilityMode.LOCAL_ONLY):
            return False
        self._mode = CapabilityMode.LOCAL_ONLY
        self._reason = reason
        LOG.warning("capability_downgraded", extra={"reason": reason})
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                LOG.exception("capability_listener_failed")
        return True

    def on_downgrade(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register ``listener``; returns a function that unregisters it."""
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove
