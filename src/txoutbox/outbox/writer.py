"""
Outbox Writer

Writes events to the outbox table within the same transaction as the
entity mutation they describe, so both commit together or not at all.
"""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from ..config import OutboxConfig
from ..database.adapter import DatabaseAdapter, Transaction, get_database, use_connection
from ..database.schema import OUTBOX_TABLE
from ..observability import inject_trace_context, record_counter
from .models import OutboxEvent, OutboxStatus

logger = logging.getLogger(__name__)


class OutboxWriter:
    """
    Writes events to the outbox for reliable delivery.

    Usage:
        async with db.transaction() as txn:
            board = await boards.update(board_id, version, rename, conn=txn)
            await writer.enqueue(
                event_type="board.renamed",
                aggregate_id=board.id,
                payload={"name": board.name},
                conn=txn
            )
        # Transaction commits, outbox entry is persisted with the board
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        default_max_attempts: Optional[int] = None,
        config: Optional[OutboxConfig] = None
    ):
        self._db = db
        if default_max_attempts is None:
            default_max_attempts = (config or OutboxConfig()).max_attempts
        self.default_max_attempts = default_max_attempts

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def enqueue(
        self,
        event_type: str,
        aggregate_id: str,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
        aggregate_type: str = "entity",
        event_id: Optional[str] = None,
        conn: Optional[Transaction] = None
    ) -> OutboxEvent:
        """
        Write a pending event to the outbox.

        Args:
            event_type: Event type tag (e.g., "board.renamed")
            aggregate_id: ID of the entity the event concerns
            payload: Event body
            metadata: Trace/causation/actor data; the active trace context is added
            max_attempts: Delivery attempts before dead-lettering
            aggregate_type: Type of aggregate (e.g., "board", "meeting")
            event_id: Logical event identity; generated when omitted
            conn: Transaction of the enclosing unit of work. Without it the
                event is written in its own transaction.

        Returns:
            The created OutboxEvent
        """
        metadata = dict(metadata or {})
        inject_trace_context(metadata)

        fields = dict(
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=str(aggregate_id),
            payload=payload,
            metadata=metadata,
            max_attempts=max_attempts if max_attempts is not None else self.default_max_attempts,
        )
        if event_id:
            fields["event_id"] = event_id
        entry = OutboxEvent(**fields)
        entry.updated_at = entry.created_at

        db = await self._get_db()
        async with use_connection(db, conn) as txn:
            await txn.execute(
                f"""
                INSERT INTO {OUTBOX_TABLE} (
                    id, event_id, event_type, aggregate_type, aggregate_id,
                    payload, metadata, status, attempts, max_attempts,
                    created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                """,
                entry.id,
                entry.event_id,
                entry.event_type,
                entry.aggregate_type,
                entry.aggregate_id,
                json.dumps(entry.payload),
                json.dumps(entry.metadata),
                OutboxStatus.PENDING.value,
                entry.attempts,
                entry.max_attempts,
                entry.created_at,
                entry.updated_at
            )

        record_counter("outbox_enqueued_total", attributes={"event_type": entry.event_type})
        logger.debug(
            "Wrote event to outbox: id=%s type=%s aggregate=%s",
            entry.id, entry.event_type, entry.aggregate_id
        )

        return entry

    async def enqueue_batch(
        self,
        events: Iterable[Dict[str, Any]],
        conn: Optional[Transaction] = None
    ) -> List[OutboxEvent]:
        """
        Write several events in one transaction.

        Args:
            events: Keyword dictionaries accepted by enqueue()
            conn: Transaction of the enclosing unit of work

        Returns:
            List of created OutboxEvent objects, in input order
        """
        db = await self._get_db()
        results = []
        async with use_connection(db, conn) as txn:
            for event in events:
                results.append(await self.enqueue(**event, conn=txn))
        return results
