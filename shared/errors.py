"""
Error taxonomy for the notification engine.

Every failure the engine raises on purpose derives from NotificationEngineError,
so callers at the outer seams (HTTP handlers, the realtime listener, the CLI)
can tell engine failures apart from programming errors.

Propagation policy:
- Per-recipient and per-category failures are isolated by the component that
  owns the batch and never abort it.
- Audience-resolution and configuration failures abort the whole dispatch.
- The only user-visible errors are validation errors on preference toggles.
"""

from typing import Any, Optional


class NotificationEngineError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(NotificationEngineError):
    """Required settings are missing or invalid. Fatal, surfaced at startup."""


class BackendError(NotificationEngineError):
    """The backend data store could not complete a read or write."""

    def __init__(self, message: str, table: Optional[str] = None):
        super().__init__(message)
        self.table = table


class TransientDeliveryError(NotificationEngineError):
    """
    A delivery channel is unreachable.

    Handled by falling through to the next channel in the chain. The same
    channel is never retried for the same delivery.
    """

    def __init__(self, message: str, channel: Optional[str] = None):
        super().__init__(message)
        self.channel = channel


class EndpointExpiredError(TransientDeliveryError):
    """The push service reported the subscription endpoint as gone (404/410)."""

    def __init__(self, endpoint: str):
        super().__init__(f"Push endpoint expired: {endpoint[:60]}", channel="remote")
        self.endpoint = endpoint


class NotificationPermissionError(NotificationEngineError):
    """
    The user has not granted local notifications.

    This is an expected condition and is not logged as a failure.
    """


class DataIntegrityError(NotificationEngineError):
    """A referenced category or row is missing. The event is dropped and logged."""


class LockTimeoutError(NotificationEngineError):
    """The concurrency guard could not serialize a critical section."""

    def __init__(self, name: str, attempts: int):
        super().__init__(f"Could not acquire lock '{name}' after {attempts} attempts")
        self.name = name
        self.attempts = attempts


class AudienceResolutionError(NotificationEngineError):
    """The candidate audience for a dispatch could not be resolved at all."""


class PreferenceValidationError(NotificationEngineError, ValueError):
    """A preference toggle request is malformed."""


class PreferenceWriteError(NotificationEngineError):
    """
    A preference write did not reach the durable store.

    The intended value has been kept in the local fallback copy, which is
    exposed as `fallback` so the caller can reflect the toggle and warn.
    """

    def __init__(self, message: str, fallback: Any = None):
        super().__init__(message)
        self.fallback = fallback
