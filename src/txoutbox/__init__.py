"""
txoutbox - transactional event outbox with optimistic concurrency control.

Entity updates are guarded by a version counter, and the events they
produce are written to an outbox table in the same transaction. A relay
delivers those events at-least-once to an EventSink.
"""

__version__ = "1.0.0"

from .errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    ConcurrencyConflict,
    DeliveryError,
    EntityNotFound,
    ExhaustedRetries,
    OutboxError,
    SagaDefinitionError,
    StorageError,
)
from .database import DatabaseAdapter, DatabaseConfig, create_schema, get_database
from .entities import VersionedEntity, VersionedEntityStore
from .outbox import OutboxEvent, OutboxRelay, OutboxStatus, OutboxWriter, UnitOfWork, unit_of_work

__all__ = [
    "__version__",
    "AuthenticationRequired",
    "AuthorizationDenied",
    "ConcurrencyConflict",
    "DeliveryError",
    "EntityNotFound",
    "ExhaustedRetries",
    "OutboxError",
    "SagaDefinitionError",
    "StorageError",
    "DatabaseAdapter",
    "DatabaseConfig",
    "create_schema",
    "get_database",
    "VersionedEntity",
    "VersionedEntityStore",
    "OutboxEvent",
    "OutboxRelay",
    "OutboxStatus",
    "OutboxWriter",
    "UnitOfWork",
    "unit_of_work",
]
