"""
Error types for the reconciliation engine.

This module defines every failure the engine can surface:
- SyncError: Base exception
- SubscriptionError: Change stream could not be established
- FetchError: Initial bulk load failed
- CommitError: Local edit could not be persisted
- ProtocolViolation: Event kind or row shape unsupported for its source
- StaleHandleError: Operation on a closed subscription or torn-down view
- UploadError: Document upload transport failed
- InvalidTransition: Edit session operation not allowed in its state

Invariants:
    - All errors inherit from SyncError
    - Errors carry a stable code for programmatic handling
    - None of these is allowed to terminate the event loop
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base exception for all engine errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses and log context."""
        return {"error": self.message, "code": self.code, "details": self.details}


class SubscriptionError(SyncError):
    """The remote change stream could not be established.

    The affected view falls back to fetch-only mode.
    """

    def __init__(self, message: str, source: Optional[str] = None) -> None:
        super().__init__(message, code="SUBSCRIPTION_ERROR", details={"source": source})
        self.source = source


class FetchError(SyncError):
    """Initial bulk fetch failed. The store stays empty."""

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="FETCH_ERROR",
            details={"source": source, "status_code": status_code},
        )
        self.source = source
        self.status_code = status_code


class CommitError(SyncError):
    """A staged edit could not be persisted.

    The edit session returns to DIRTY with the edit intact.
    """

    def __init__(
        self,
        message: str,
        source: Optional[str] = None,
        key: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            code="COMMIT_ERROR",
            details={"source": source, "key": key, "status_code": status_code},
        )
        self.source = source
        self.key = key
        self.status_code = status_code


class ProtocolViolation(SyncError):
    """A change event the receiving source cannot accept.

    Raised when:
    - A delete or update arrives for an append-only source
    - A row is missing its id or carries an unsupported value kind
    - An event names a source with no binding
    """

    def __init__(self, message: str, source: Optional[str] = None, kind: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="PROTOCOL_VIOLATION",
            details={"source": source, "kind": kind},
        )
        self.source = source
        self.kind = kind


class StaleHandleError(SyncError):
    """Operation attempted through a closed handle or a finished activation."""

    def __init__(self, message: str, handle_id: Optional[str] = None) -> None:
        super().__init__(message, code="STALE_HANDLE", details={"handle_id": handle_id})
        self.handle_id = handle_id


class UploadError(SyncError):
    """Document upload failed before any per-document status was returned."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message, code="UPLOAD_ERROR", details={"status_code": status_code})
        self.status_code = status_code


class InvalidTransition(SyncError):
    """Edit session operation not permitted in the current state."""

    def __init__(self, message: str, state: Optional[str] = None, action: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="INVALID_TRANSITION",
            details={"state": state, "action": action},
        )
        self.state = state
        self.action = action
