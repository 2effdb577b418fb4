"""
Error types for the mirror server.

This module defines the exceptions raised by the sync engine, the
directory components and the reconciliation jobs:
- MirrorError: Base exception
- NotFoundError: Referenced record, tenant, profile or invitation is missing
- InvalidStateError: Operation not allowed in the record's current state
- PrimaryWriteError: The write that persists the caller's own data failed
- PropagationFailure: A canonical or mirror write failed after the primary write
- BatchPartialFailure: Fan-out mutations failed for every batch attempted

Invariants:
    - All errors inherit from MirrorError
    - Errors carry a stable code and a details dict for structured logging
    - PropagationFailure never implies the primary write was rolled back

How to change safely:
    - Keep codes stable, HTTP and CLI surfaces map on them
    - Add new errors as subclasses of MirrorError
"""

from __future__ import annotations

from typing import Any


class MirrorError(Exception):
    """Base exception for all mirror server errors.

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
        self.code = code or "MIRROR_ERROR"
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(MirrorError):
    """A referenced entity does not exist.

    Raised when:
    - A record targeted by update/delete/transfer is missing
    - An invitation or user profile cannot be found
    """

    def __init__(
        self,
        message: str,
        resource_type: str | None = None,
        resource_id: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class InvalidStateError(MirrorError):
    """Operation is not allowed for the entity's current state.

    No write has been performed when this is raised.
    """

    def __init__(
        self,
        message: str,
        resource_id: str | None = None,
        state: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_STATE",
            details={"resource_id": resource_id, "state": state or {}},
        )
        self.resource_id = resource_id


class PrimaryWriteError(MirrorError):
    """The write that persists the caller's data failed."""

    def __init__(
        self,
        message: str,
        record_id: str | None = None,
        tenant_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="PRIMARY_WRITE_FAILED",
            details={"record_id": record_id, "tenant_id": tenant_id, "operation": operation},
        )
        self.record_id = record_id
        self.tenant_id = tenant_id
        self.operation = operation


class PropagationFailure(MirrorError):
    """A write to a canonical tenant or mirror failed.

    The primary write that preceded it stays in place. A transfer writes
    its canonical copy first, so a failed transfer leaves nothing changed.

    Attributes:
        record_id: Record being propagated
        target_tenant_id: Tenant the write was aimed at
        operation: Propagation step that failed
    """

    def __init__(
        self,
        message: str,
        record_id: str | None = None,
        target_tenant_id: str | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="PROPAGATION_FAILED",
            details={
                "record_id": record_id,
                "target_tenant_id": target_tenant_id,
                "operation": operation,
            },
        )
        self.record_id = record_id
        self.target_tenant_id = target_tenant_id
        self.operation = operation


class BatchPartialFailure(MirrorError):
    """Fan-out batches failed.

    Raised only when nothing was committed out of a non-empty attempt.
    Partial success is reported through counts instead.
    """

    def __init__(
        self,
        message: str,
        attempted: int = 0,
        succeeded: int = 0,
        failed_batches: int = 0,
    ) -> None:
        super().__init__(
            message,
            code="BATCH_PARTIAL_FAILURE",
            details={
                "attempted": attempted,
                "succeeded": succeeded,
                "failed_batches": failed_batches,
            },
        )
        self.attempted = attempted
        self.succeeded = succeeded
        self.failed_batches = failed_batches
