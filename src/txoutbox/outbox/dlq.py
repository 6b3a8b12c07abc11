"""
Dead Letter Queue (DLQ) Management

Operator views over outbox entries that exhausted their attempts.

Dead letters are terminal and never revert. A requeue writes a fresh
pending row carrying the same event_id, so consumers still deduplicate.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..database.adapter import DatabaseAdapter, get_database
from ..database.schema import OUTBOX_TABLE
from ..errors import EntityNotFound
from .models import OutboxEvent, OutboxStatus
from .writer import OutboxWriter

logger = logging.getLogger(__name__)


def _isoformat(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


@dataclass
class DLQEntry:
    """A dead letter queue entry."""
    id: str
    event_id: str
    event_type: str
    aggregate_type: str
    aggregate_id: str
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    created_at: datetime
    failed_at: datetime

    @classmethod
    def from_event(cls, event: OutboxEvent) -> "DLQEntry":
        return cls(
            id=event.id,
            event_id=event.event_id,
            event_type=event.event_type,
            aggregate_type=event.aggregate_type,
            aggregate_id=event.aggregate_id,
            payload=event.payload,
            attempts=event.attempts,
            max_attempts=event.max_attempts,
            last_error=event.error_message,
            created_at=event.created_at,
            failed_at=event.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "aggregate_type": self.aggregate_type,
            "aggregate_id": self.aggregate_id,
            "payload": self.payload,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "last_error": self.last_error,
            "created_at": _isoformat(self.created_at),
            "failed_at": _isoformat(self.failed_at)
        }


class DeadLetterManager:
    """
    Manages the Dead Letter Queue.

    Responsibilities:
    - Query DLQ entries
    - Requeue dead letters as new pending entries
    - Generate DLQ reports
    """

    def __init__(self, db: Optional[DatabaseAdapter] = None, writer: Optional[OutboxWriter] = None):
        self._db = db
        self._writer = writer

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def get_entries(
        self,
        limit: int = 100,
        offset: int = 0,
        aggregate_id: Optional[str] = None
    ) -> List[DLQEntry]:
        """Get DLQ entries, most recent first."""
        db = await self._get_db()

        if aggregate_id:
            rows = await db.fetch(
                f"""
                SELECT * FROM {OUTBOX_TABLE}
                WHERE status = $1 AND aggregate_id = $2
                ORDER BY created_at DESC, sequence DESC
                LIMIT $3 OFFSET $4
                """,
                OutboxStatus.DEAD_LETTER.value, aggregate_id, limit, offset
            )
        else:
            rows = await db.fetch(
                f"""
                SELECT * FROM {OUTBOX_TABLE}
                WHERE status = $1
                ORDER BY created_at DESC, sequence DESC
                LIMIT $2 OFFSET $3
                """,
                OutboxStatus.DEAD_LETTER.value, limit, offset
            )

        return [DLQEntry.from_event(OutboxEvent.from_row(row)) for row in rows]

    async def get_count(self, aggregate_id: Optional[str] = None) -> int:
        """Get total DLQ entry count."""
        db = await self._get_db()

        if aggregate_id:
            count = await db.fetchval(
                f"SELECT COUNT(*) AS count FROM {OUTBOX_TABLE} WHERE status = $1 AND aggregate_id = $2",
                OutboxStatus.DEAD_LETTER.value, aggregate_id
            )
        else:
            count = await db.fetchval(
                f"SELECT COUNT(*) AS count FROM {OUTBOX_TABLE} WHERE status = $1",
                OutboxStatus.DEAD_LETTER.value
            )

        return int(count or 0)

    async def requeue(self, entry_id: str, operator_id: Optional[str] = None) -> OutboxEvent:
        """
        Requeue a dead letter as a new pending entry.

        The dead-letter row is left as it is. The new row keeps the
        event_id, type, aggregate and payload, and records the row it was
        requeued from in its metadata.

        Args:
            entry_id: The dead-lettered outbox entry ID
            operator_id: ID of operator performing the action

        Returns:
            The new pending OutboxEvent

        Raises:
            EntityNotFound: No dead-lettered entry with this id
        """
        db = await self._get_db()
        writer = self._writer or OutboxWriter(db)

        async with db.transaction() as txn:
            row = await txn.fetchrow(
                f"SELECT * FROM {OUTBOX_TABLE} WHERE id = $1 AND status = $2",
                entry_id, OutboxStatus.DEAD_LETTER.value
            )
            if row is None:
                raise EntityNotFound("DeadLetter", entry_id)
            dead = OutboxEvent.from_row(row)

            metadata = dict(dead.metadata)
            metadata["requeued_from"] = dead.id
            if operator_id:
                metadata["requeued_by"] = operator_id

            entry = await writer.enqueue(
                event_type=dead.event_type,
                aggregate_id=dead.aggregate_id,
                payload=dead.payload,
                metadata=metadata,
                max_attempts=dead.max_attempts,
                aggregate_type=dead.aggregate_type,
                event_id=dead.event_id,
                conn=txn
            )

        logger.info(f"DLQ entry {entry_id} requeued as {entry.id} by {operator_id}")
        return entry

    async def get_stats(self) -> Dict[str, Any]:
        """Get DLQ statistics."""
        db = await self._get_db()

        total = await self.get_count()

        by_type = await db.fetch(
            f"""
            SELECT event_type, COUNT(*) AS count
            FROM {OUTBOX_TABLE}
            WHERE status = $1
            GROUP BY event_type
            ORDER BY count DESC
            """,
            OutboxStatus.DEAD_LETTER.value
        )

        oldest = await db.fetchval(
            f"SELECT MIN(created_at) AS oldest FROM {OUTBOX_TABLE} WHERE status = $1",
            OutboxStatus.DEAD_LETTER.value
        )

        return {
            "total_count": total,
            "by_event_type": {row["event_type"]: int(row["count"]) for row in by_type},
            "oldest_entry": _isoformat(oldest)
        }
