"""
Outbox Models

The outbox row, its status state machine, and the EventSink protocol.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Protocol, runtime_checkable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class OutboxStatus(str, Enum):
    """Status of an outbox entry."""
    PENDING = "pending"
    PROCESSING = "processing"
    PUBLISHED = "published"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"  # Exceeded max attempts
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    OutboxStatus.PUBLISHED,
    OutboxStatus.DEAD_LETTER,
    OutboxStatus.CANCELLED,
})

CLAIMABLE_STATUSES = frozenset({OutboxStatus.PENDING, OutboxStatus.FAILED})

ALLOWED_TRANSITIONS: Dict[OutboxStatus, frozenset] = {
    OutboxStatus.PENDING: frozenset({OutboxStatus.PROCESSING, OutboxStatus.CANCELLED}),
    OutboxStatus.FAILED: frozenset({OutboxStatus.PROCESSING, OutboxStatus.CANCELLED}),
    # processing -> processing is a lease-expired reclaim
    OutboxStatus.PROCESSING: frozenset({
        OutboxStatus.PUBLISHED,
        OutboxStatus.FAILED,
        OutboxStatus.DEAD_LETTER,
        OutboxStatus.PROCESSING,
    }),
    OutboxStatus.PUBLISHED: frozenset(),
    OutboxStatus.DEAD_LETTER: frozenset(),
    OutboxStatus.CANCELLED: frozenset(),
}


def can_transition(current: OutboxStatus, target: OutboxStatus) -> bool:
    """Check a status change against the outbox state machine."""
    return OutboxStatus(target) in ALLOWED_TRANSITIONS[OutboxStatus(current)]


def _decode_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value) if value else {}
    return value if value is not None else {}


class OutboxEvent(BaseModel):
    """An entry in the outbox table."""

    model_config = ConfigDict(use_enum_values=False)

    id: str = Field(default_factory=_new_id)
    event_id: str = Field(default_factory=_new_id)
    sequence: Optional[int] = None

    event_type: str
    aggregate_type: str = "entity"
    aggregate_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    max_attempts: int = Field(default=5, ge=1)

    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    error_message: Optional[str] = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("payload", "metadata", mode="before")
    @classmethod
    def _json_columns(cls, value: Any) -> Any:
        return _decode_json(value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "OutboxEvent":
        return cls.model_validate(dict(row))

    def to_message(self) -> Dict[str, Any]:
        """The wire shape handed to sinks that serialise events."""
        return {
            "id": self.id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "payload": self.payload,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }


@runtime_checkable
class EventSink(Protocol):
    """
    Destination the relay pushes events into.

    ``publish`` signals failure by raising or by returning False. It must
    tolerate duplicates of the same ``event_id``; delivery is at-least-once.
    """

    async def publish(self, event: OutboxEvent) -> Optional[bool]:
        ...
