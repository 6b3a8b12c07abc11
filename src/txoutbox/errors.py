"""
Error Taxonomy

Every failure the outbox subsystem surfaces carries a stable ErrorCode,
which the admin API maps to an HTTP status.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable error codes."""

    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    ENTITY_NOT_FOUND = "ENTITY_NOT_FOUND"
    DELIVERY_ERROR = "DELIVERY_ERROR"
    EXHAUSTED_RETRIES = "EXHAUSTED_RETRIES"
    STORAGE_ERROR = "STORAGE_ERROR"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_SAGA = "INVALID_SAGA"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS_CODES = {
    ErrorCode.CONCURRENCY_CONFLICT: 409,
    ErrorCode.ENTITY_NOT_FOUND: 404,
    ErrorCode.DELIVERY_ERROR: 502,
    ErrorCode.EXHAUSTED_RETRIES: 502,
    ErrorCode.STORAGE_ERROR: 503,
    ErrorCode.UNAUTHENTICATED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.INVALID_SAGA: 400,
    ErrorCode.INTERNAL_ERROR: 500,
}


def get_status_code(code: ErrorCode) -> int:
    """Get the HTTP status code for an error code."""
    return ERROR_STATUS_CODES.get(code, 500)


class OutboxError(Exception):
    """Base class for all txoutbox errors."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return get_status_code(self.code)


class ConcurrencyConflict(OutboxError):
    """
    The expected version did not match the stored version.

    Never retried internally. The caller re-reads and decides whether
    re-applying its mutation is safe.
    """

    code = ErrorCode.CONCURRENCY_CONFLICT

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        actual_version: Optional[int] = None
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        detail = f"expected version {expected_version}"
        if actual_version is not None:
            detail += f", found {actual_version}"
        super().__init__(f"{entity_type} '{entity_id}' was modified concurrently ({detail})")


class EntityNotFound(OutboxError):
    """Entity (or outbox entry) does not exist."""

    code = ErrorCode.ENTITY_NOT_FOUND

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} with ID '{entity_id}' not found")


class DeliveryError(OutboxError):
    """The event sink rejected an event or timed out."""

    code = ErrorCode.DELIVERY_ERROR


class ExhaustedRetries(OutboxError):
    """An event reached max_attempts and was dead-lettered."""

    code = ErrorCode.EXHAUSTED_RETRIES

    def __init__(self, entry_id: str, attempts: int, last_error: str):
        self.entry_id = entry_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Outbox entry {entry_id} dead-lettered after {attempts} attempts: {last_error}"
        )


class StorageError(OutboxError):
    """The underlying database is unavailable or rejected a statement."""

    code = ErrorCode.STORAGE_ERROR


class AuthenticationRequired(OutboxError):
    """No trusted credential identified the caller."""

    code = ErrorCode.UNAUTHENTICATED

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class AuthorizationDenied(OutboxError):
    """The actor lacks the permission required for an operation."""

    code = ErrorCode.FORBIDDEN

    def __init__(self, actor_id: str, permission: str):
        self.actor_id = actor_id
        self.permission = permission
        super().__init__(f"Actor '{actor_id}' lacks permission '{permission}'")


class SagaDefinitionError(OutboxError):
    """A saga definition is malformed."""

    code = ErrorCode.INVALID_SAGA
