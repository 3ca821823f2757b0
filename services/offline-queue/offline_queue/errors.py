from __future__ import annotations

from enum import Enum
from typing import Any

from fastapi import status
from pydantic import BaseModel


class ErrorCode(str, Enum):
    INVALID_MUTATION = "INVALID_MUTATION"
    QUEUE_OVERFLOW = "QUEUE_OVERFLOW"
    TRANSIENT_REMOTE_ERROR = "TRANSIENT_REMOTE_ERROR"
    VERSION_CONFLICT = "VERSION_CONFLICT"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    MANUAL_RESOLUTION_REQUIRED = "MANUAL_RESOLUTION_REQUIRED"
    MUTATION_NOT_FOUND = "MUTATION_NOT_FOUND"
    MUTATION_NOT_CANCELLABLE = "MUTATION_NOT_CANCELLABLE"
    STORAGE_ERROR = "STORAGE_ERROR"


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    trace_id: str | None = None


class QueueError(Exception):
    """Base error for the offline queue engine."""

    code: ErrorCode = ErrorCode.STORAGE_ERROR
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class InvalidMutation(QueueError):
    """Malformed intent. Rejected at enqueue time and never persisted."""

    code = ErrorCode.INVALID_MUTATION
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, *, field: str | None = None) -> None:
        self.field = field
        super().__init__(message, details={"field": field} if field else None)


class QueueOverflow(QueueError):
    """Storage pressure forced pending mutations out of the queue.

    Surfaced as a warning; the save that produced it still succeeds.
    """

    code = ErrorCode.QUEUE_OVERFLOW
    status_code = status.HTTP_507_INSUFFICIENT_STORAGE

    def __init__(self, dropped_ids: list[str], *, hard_cap: int) -> None:
        self.dropped_ids = list(dropped_ids)
        self.hard_cap = hard_cap
        super().__init__(
            f"Queue exceeded hard cap of {hard_cap}; dropped {len(dropped_ids)} oldest pending mutation(s)",
            details={"dropped_ids": self.dropped_ids, "hard_cap": hard_cap},
        )


class TransientRemoteError(QueueError):
    """Network, timeout or 5xx failure talking to the remote authority."""

    code = ErrorCode.TRANSIENT_REMOTE_ERROR
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class VersionConflict(QueueError):
    """The remote authority holds a newer version of the target entity."""

    code = ErrorCode.VERSION_CONFLICT
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, entity_id: str, remote: Any = None) -> None:
        self.entity_id = entity_id
        self.remote = remote
        super().__init__(f"Remote has a newer version of {entity_id}", details={"entity_id": entity_id})


class ManualResolutionRequired(QueueError):
    code = ErrorCode.MANUAL_RESOLUTION_REQUIRED
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, conflict_id: str, fields: list[str]) -> None:
        self.conflict_id = conflict_id
        self.fields = list(fields)
        super().__init__(
            f"Conflict {conflict_id} requires manual resolution",
            details={"conflict_id": conflict_id, "fields": self.fields},
        )


class PreconditionFailed(QueueError):
    """Programming error. Never retried, propagated immediately."""

    code = ErrorCode.PRECONDITION_FAILED
    status_code = status.HTTP_400_BAD_REQUEST


class MutationNotFound(QueueError):
    code = ErrorCode.MUTATION_NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, mutation_id: str) -> None:
        self.mutation_id = mutation_id
        super().__init__(f"Mutation not found: {mutation_id}", details={"mutation_id": mutation_id})


class MutationNotCancellable(QueueError):
    code = ErrorCode.MUTATION_NOT_CANCELLABLE
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, mutation_id: str, current_status: str) -> None:
        self.mutation_id = mutation_id
        self.current_status = current_status
        super().__init__(
            f"Mutation {mutation_id} is {current_status} and can no longer be cancelled",
            details={"mutation_id": mutation_id, "status": current_status},
        )


class StorageError(QueueError):
    code = ErrorCode.STORAGE_ERROR
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
