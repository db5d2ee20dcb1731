from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base class for errors surfaced to control-surface callers."""

    code = "relay_error"


class CapacityError(RelayError):
    """Raised when admitting a session would exceed the configured limit."""

    code = "session_limit_reached"

    def __init__(self, active: int, limit: int) -> None:
        super().__init__(self.code)
        self.active = active
        self.limit = limit


class NotFoundError(RelayError):
    code = "session_not_found"


class NotConnectedError(RelayError):
    code = "session_not_connected"


class TransportError(RelayError):
    """Raised when the underlying connection fails to connect, send or log out."""

    code = "transport_error"

    def __init__(self, detail: Optional[str] = None) -> None:
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class PairingTimeoutError(RelayError):
    code = "pairing_timeout"


__all__ = [
    "RelayError",
    "CapacityError",
    "NotFoundError",
    "NotConnectedError",
    "TransportError",
    "PairingTimeoutError",
]
