from __future__ import annotations

from typing import Optional


class WaworkerError(Exception):
    """Base class for session lifecycle and delivery errors."""


class CreationConflict(WaworkerError):
    """Raised internally when a tenant session is already being created."""


class EngineError(WaworkerError):
    """Raised when the automation engine rejects or fails a call."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class HealthCheckFailure(WaworkerError):
    """Recorded as an ``ERROR`` snapshot; never raised past the monitor."""


class DeliveryFailure(WaworkerError):
    """A queued message could not be handed to the engine."""


class ReconnectExhausted(WaworkerError):
    """The tenant ran out of reconnect attempts and needs a fresh QR login."""


class QrTimeout(WaworkerError):
    """No QR notification arrived within the polling bound."""

    def __init__(self, tenant_id: str, attempts: int) -> None:
        super().__init__("qr_timeout")
        self.tenant_id = tenant_id
        self.attempts = attempts


class QrRenderError(WaworkerError):
    """The raw QR payload could not be rendered to an image."""


class AlreadyConnected(WaworkerError):
    """QR requested for a tenant whose session is already authorized."""


class SessionRemoved(WaworkerError):
    """The tenant was removed while its session was still initializing."""

    def __init__(self, tenant_id: str) -> None:
        super().__init__("session_removed")
        self.tenant_id = tenant_id


class StoreError(WaworkerError):
    """The remote user/log store failed."""


ExternalStoreFailure = StoreError


__all__ = [
    "AlreadyConnected",
    "CreationConflict",
    "DeliveryFailure",
    "EngineError",
    "ExternalStoreFailure",
    "HealthCheckFailure",
    "QrRenderError",
    "QrTimeout",
    "ReconnectExhausted",
    "SessionRemoved",
    "StoreError",
    "WaworkerError",
]
