"""Typed errors raised by the lifecycle core.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer answers with, plus structured fields callers can branch on instead of
parsing messages::

    ChangeFlowError
    +-- ValidationError           fields that failed
    +-- NotAuthorized
    +-- InvalidTransition         current / target status
    +-- InvalidState
    +-- Conflict                  expected / actual version
    +-- NotFound
    +-- PayloadTooLarge
    +-- NotificationFailed
    +-- CollaboratorTimeout
    +-- AttachmentCleanupPending  storage key left behind
"""

from typing import Any


class ChangeFlowError(Exception):
    code: str = "CHANGEFLOW_ERROR"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(ChangeFlowError):
    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, fields: list[str], message: str | None = None) -> None:
        self.fields = list(fields)
        super().__init__(message or f"Invalid or missing field(s): {', '.join(self.fields)}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "fields": self.fields}


class NotAuthorized(ChangeFlowError):
    code = "NOT_AUTHORIZED"
    status_code = 403


class InvalidTransition(ChangeFlowError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition from {current} to {target}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "current": self.current, "target": self.target}


class InvalidState(ChangeFlowError):
    code = "INVALID_STATE"
    status_code = 409


class Conflict(ChangeFlowError):
    code = "CONFLICT"
    status_code = 409

    def __init__(self, request_id: str, expected_version: int, actual_version: int | None = None) -> None:
        self.request_id = request_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Change request {request_id} was modified concurrently "
            f"(expected version {expected_version}). Reload and retry."
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "expected_version": self.expected_version,
            "actual_version": self.actual_version,
        }


class NotFound(ChangeFlowError):
    code = "NOT_FOUND"
    status_code = 404


class PayloadTooLarge(ChangeFlowError):
    code = "PAYLOAD_TOO_LARGE"
    status_code = 413

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Attachment is {size} bytes; the limit is {limit} bytes")


class NotificationFailed(ChangeFlowError):
    code = "NOTIFICATION_FAILED"
    status_code = 502


class CollaboratorTimeout(ChangeFlowError):
    code = "TIMEOUT"
    status_code = 504

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} did not complete within {timeout:g}s")


class AttachmentCleanupPending(ChangeFlowError):
    """Metadata is gone but the blob could not be deleted yet.

    The storage key stays tombstoned until the reconciliation pass removes it.
    """

    code = "ATTACHMENT_CLEANUP_PENDING"
    status_code = 202

    def __init__(self, storage_key: str, reason: str) -> None:
        self.storage_key = storage_key
        self.reason = reason
        super().__init__(f"Attachment removed; blob {storage_key} is queued for cleanup ({reason})")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "storage_key": self.storage_key}
