"""
Error types for the Kii SDK.

This module defines all exception types raised by the SDK:
- KiiError: Base exception
- TransportError: Network failure or non-2xx response from the backend
- AclEntryRejectedError: Backend refused an ACL batch and named the entry
- ValidationError: Reserved key misuse, malformed values, bad credentials format
- FieldTypeError: Field value that cannot be encoded as JSON
- InvalidQueryError: Query that cannot be executed (limit out of range, two targets)
- PreconditionError: Entity is not in the state an operation needs
- InvalidStateError: Wrong trash lifecycle transition
- StaleEntityError: Operation on a deleted entity
- NoBodyError: Publish requested for a file without a stored body
- PartialFailureError: File metadata was created but the body upload failed

Invariants:
    - All errors inherit from KiiError
    - Validation, precondition and state errors are raised before any round-trip
    - Transport errors carry the failing method, path and status
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .acl import AclEntry


class KiiError(Exception):
    """Base exception for all Kii SDK errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "KII_ERROR"
        self.details = details or {}


class TransportError(KiiError):
    """Request to the backend failed.

    Raised when:
    - Server is unreachable or the connection times out
    - The backend answers with a non-2xx status

    Attributes:
        status: HTTP status, None when no response was received
        method: Request method
        path: Resource path
        body: Decoded error body returned by the backend, if any
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        method: str | None = None,
        path: str | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSPORT_ERROR",
            details={"status": status, "method": method, "path": path, "body": body},
        )
        self.status = status
        self.method = method
        self.path = path
        self.body = body


class AclEntryRejectedError(TransportError):
    """The backend rejected an ACL batch because of one entry.

    No staged change was merged; the ACL keeps its pending grants and revokes.
    """

    def __init__(
        self,
        message: str,
        entry: AclEntry | None,
        status: int | None = None,
        method: str | None = None,
        path: str | None = None,
        body: Any = None,
    ) -> None:
        super().__init__(message, status=status, method=method, path=path, body=body)
        self.code = "ACL_ENTRY_REJECTED"
        self.entry = entry
        self.details["entry"] = str(entry) if entry is not None else None


class ValidationError(KiiError):
    """Local validation failed.

    Raised when:
    - A username, password, email or phone number is malformed
    - A URI cannot be parsed
    - A metadata attribute exceeds its size limit
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name},
        )
        self.field_name = field_name


class FieldTypeError(ValidationError, TypeError):
    """Field value cannot be stored because it is not JSON encodable."""

    def __init__(self, field_name: str, value: Any) -> None:
        super().__init__(
            f"Field '{field_name}' has unsupported type {type(value).__name__}",
            field_name=field_name,
        )
        self.code = "FIELD_TYPE_ERROR"


class InvalidQueryError(ValidationError):
    """Query cannot be executed.

    Raised when:
    - limit is outside 1..100
    - both a collection and a container are targeted
    """

    def __init__(self, message: str, limit: int | None = None) -> None:
        super().__init__(message, field_name="limit" if limit is not None else None)
        self.code = "INVALID_QUERY"
        self.details["limit"] = limit
        self.limit = limit


class PreconditionError(KiiError):
    """Operation requires a state the entity is not in.

    Raised when:
    - refresh/delete is called on an entity that was never saved
    - object_uri or acl is read before the entity has a uuid
    - a non-blocking call is made without a worker
    """

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(
            message,
            code="PRECONDITION_FAILED",
            details={"operation": operation},
        )
        self.operation = operation


class InvalidStateError(KiiError):
    """Trash lifecycle transition attempted from the wrong state.

    Attributes:
        current: Current trash state value
        required: State the transition needs
    """

    def __init__(self, message: str, current: str, required: str) -> None:
        super().__init__(
            message,
            code="INVALID_STATE",
            details={"current": current, "required": required},
        )
        self.current = current
        self.required = required


class StaleEntityError(KiiError):
    """Operation attempted on an entity that has been deleted."""

    def __init__(self, message: str, uuid: str | None = None) -> None:
        super().__init__(message, code="STALE_ENTITY", details={"uuid": uuid})
        self.uuid = uuid


class NoBodyError(KiiError):
    """File has no stored body to publish."""

    def __init__(self, message: str, uuid: str | None = None) -> None:
        super().__init__(message, code="NO_BODY", details={"uuid": uuid})
        self.uuid = uuid


class PartialFailureError(KiiError):
    """File metadata exists on the server but the body upload failed.

    The file handle keeps its uuid. Retry the body upload, not the metadata
    creation.

    Attributes:
        entity: The file handle that was created
        cause: The transport error raised by the upload
    """

    def __init__(self, message: str, entity: Any, cause: Exception) -> None:
        super().__init__(
            message,
            code="PARTIAL_FAILURE",
            details={"uuid": getattr(entity, "uuid", None), "cause": str(cause)},
        )
        self.entity = entity
        self.cause = cause
