"""Exception hierarchy shared by the snapshot and session layers."""

from __future__ import annotations

from typing import Any, Mapping


class CtxSyncError(RuntimeError):
    """Base error raised by ctxsync components."""


class SnapshotError(CtxSyncError):
    """Raised when the snapshot root itself cannot be traversed."""


class UnsupportedLanguageError(CtxSyncError):
    """Raised when no identifier extractor is registered for a path."""

    def __init__(self, path: str) -> None:
        super().__init__(f"No extractor registered for {path}")
        self.path = path


class ProtocolError(CtxSyncError):
    """Base error for envelope and stage contract violations."""


class EnvelopeDecodeError(ProtocolError):
    """Raised when a frame does not decode into a session envelope."""


class StageOrderError(ProtocolError):
    """Raised when a stage is attempted out of its fixed order."""


class SchemaValidationError(ProtocolError):
    """Raised when a stage payload does not match its response schema."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class SessionClosedError(ProtocolError):
    """Raised when the peer closes the channel while a response is pending."""

    def __init__(self, code: int | None, reason: str = "") -> None:
        label = f"code {code}" if code is not None else "no close code"
        message = f"Channel closed ({label})"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.code = code
        self.reason = reason


class ModelCallError(ProtocolError):
    """Raised by the server session when the model backend fails."""


__all__ = [
    "CtxSyncError",
    "EnvelopeDecodeError",
    "ModelCallError",
    "ProtocolError",
    "SchemaValidationError",
    "SessionClosedError",
    "SnapshotError",
    "StageOrderError",
    "UnsupportedLanguageError",
]
