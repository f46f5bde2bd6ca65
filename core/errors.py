"""Reqbench Plugin Bridge — Error Taxonomy

Every failure that crosses the plugin boundary is one of five kinds. The
host maps store failures into these before building a response envelope;
the plugin side rebuilds the matching exception from the envelope.
"""

from __future__ import annotations
from typing import Dict, Optional, Type

from models.events import ErrorKind


class BridgeError(Exception):
    """Base class for errors that travel across the event channel."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_wire(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class ValidationError(BridgeError):
    """Malformed or missing arguments."""
    kind = ErrorKind.VALIDATION


class NotFoundError(BridgeError):
    """Referenced id does not resolve in its expected scope."""
    kind = ErrorKind.NOT_FOUND


class ConflictError(BridgeError):
    """Operation would violate an invariant."""
    kind = ErrorKind.CONFLICT


class TransportError(BridgeError):
    """Channel closed, request timed out or was cancelled."""
    kind = ErrorKind.TRANSPORT

    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    CLOSED = "closed"

    def __init__(self, message: str, reason: str = CLOSED):
        super().__init__(message)
        self.reason = reason


class InternalError(BridgeError):
    """Unexpected failure; details stay in the host logs."""
    kind = ErrorKind.INTERNAL


_ERROR_TYPES: Dict[str, Type[BridgeError]] = {
    cls.kind.value: cls
    for cls in (ValidationError, NotFoundError, ConflictError, TransportError, InternalError)
}


def error_from_wire(error: Optional[Dict[str, str]]) -> BridgeError:
    """Rebuild the typed exception carried by an error response."""
    if not isinstance(error, dict):
        return InternalError("Malformed error response")
    kind = error.get("kind")
    message = str(error.get("message", ""))
    cls = _ERROR_TYPES.get(kind)
    if cls is None:
        return InternalError(message or f"Unknown error kind {kind!r}")
    return cls(message)


def not_found(label: str, entity_id: str, scope: Optional[str] = None) -> NotFoundError:
    if scope:
        return NotFoundError(f"{label} {entity_id!r} not found in workspace {scope!r}")
    return NotFoundError(f"{label} {entity_id!r} not found")
