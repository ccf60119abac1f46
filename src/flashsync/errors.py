from __future__ import annotations


class FlashSyncError(Exception):
    """Base class for every error raised by the persistence layer."""


class AuthorizationError(FlashSyncError):
    """The cloud store refused the operation for authorization reasons.

    Handled by the gateway itself: it downgrades to the local cache and retries
    the failing call there once.
    """


class TransientNetworkError(FlashSyncError):
    """Network, timeout or quota failure against the cloud store.

    Surfaced to the caller unchanged; never triggers a downgrade.
    """


class SerializationError(FlashSyncError, ValueError):
    """A value has no plain-data rendering and cannot be stored."""


class StreamError(FlashSyncError):
    """The completion engine failed while producing fragments."""


class OverrideValidationError(FlashSyncError, ValueError):
    """An administrative payload is not a known override sub-command."""
