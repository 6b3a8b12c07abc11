"""
Unit of Work

Combines entity mutations with event publishing in a single transaction
to guarantee atomicity: either both succeed or both fail.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from ..auth import SYSTEM_ACTOR, Actor, Permission, authorize
from ..database.adapter import DatabaseAdapter, Transaction, get_database
from ..entities import VersionedEntity, VersionedEntityStore
from ..entities.store import Mutator
from .models import OutboxEvent
from .writer import OutboxWriter

logger = logging.getLogger(__name__)


class UnitOfWork:
    """
    Binds one transaction, authorization, entity writes and outbox enqueues.

    Usage:
        async with UnitOfWork(actor=Actor("svc-boards", "service")) as uow:
            board = await uow.update(boards, board_id, version, rename)
            await uow.emit("board.renamed", board.id, {"name": board.name})
        # Both commit together or both rollback

    Every store and writer call is authorized for the actor first. The
    actor id and a causation id are added to each emitted event's metadata.
    """

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        actor: Actor = SYSTEM_ACTOR,
        writer: Optional[OutboxWriter] = None,
        causation_id: Optional[str] = None
    ):
        self.db = db
        self.actor = actor
        self.causation_id = causation_id
        self._writer = writer
        self._txn_cm = None
        self.conn: Optional[Transaction] = None
        self._events: List[OutboxEvent] = []

    async def __aenter__(self) -> "UnitOfWork":
        if self.db is None:
            self.db = await get_database()
        if self._writer is None:
            self._writer = OutboxWriter(self.db)
        self._events = []
        self._txn_cm = self.db.transaction()
        self.conn = await self._txn_cm.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        txn_cm, self._txn_cm = self._txn_cm, None
        self.conn = None
        if exc_type is not None:
            # Transaction rolls back, outbox entries too
            self._events = []
            logger.debug(f"Unit of work rolled back: {exc_type.__name__}")
        await txn_cm.__aexit__(exc_type, exc_val, exc_tb)
        return False

    def _require_open(self) -> Transaction:
        if self.conn is None:
            raise RuntimeError("UnitOfWork is not active; use 'async with'")
        return self.conn

    async def read(self, store: VersionedEntityStore, entity_id: str) -> VersionedEntity:
        authorize(self.actor, Permission.ENTITIES_READ)
        return await store.read(entity_id, conn=self._require_open())

    async def create(self, store: VersionedEntityStore, entity: VersionedEntity) -> VersionedEntity:
        authorize(self.actor, Permission.ENTITIES_WRITE)
        return await store.create(entity, conn=self._require_open())

    async def update(
        self,
        store: VersionedEntityStore,
        entity_id: str,
        expected_version: int,
        mutator: Mutator
    ) -> VersionedEntity:
        """Optimistically locked update inside this transaction."""
        authorize(self.actor, Permission.ENTITIES_WRITE)
        return await store.update(entity_id, expected_version, mutator, conn=self._require_open())

    async def emit(
        self,
        event_type: str,
        aggregate_id: str,
        payload: Dict[str, Any],
        metadata: Optional[Dict[str, Any]] = None,
        aggregate_type: str = "entity",
        max_attempts: Optional[int] = None
    ) -> OutboxEvent:
        """
        Emit an event (writes to outbox in current transaction).

        Args:
            event_type: Event type tag
            aggregate_id: ID of the entity the event concerns
            payload: Event body
            metadata: Extra metadata merged with actor and causation
            aggregate_type: Type of aggregate
            max_attempts: Delivery attempts before dead-lettering

        Returns:
            The created OutboxEvent
        """
        authorize(self.actor, Permission.OUTBOX_ENQUEUE)

        merged = {"actor_id": self.actor.id}
        if self.causation_id:
            merged["causation_id"] = self.causation_id
        merged.update(metadata or {})

        entry = await self._writer.enqueue(
            event_type=event_type,
            aggregate_id=aggregate_id,
            payload=payload,
            metadata=merged,
            max_attempts=max_attempts,
            aggregate_type=aggregate_type,
            conn=self._require_open()
        )
        self._events.append(entry)
        return entry

    @property
    def emitted_events(self) -> List[OutboxEvent]:
        """Get list of events emitted in this transaction."""
        return self._events.copy()


@asynccontextmanager
async def unit_of_work(
    db: Optional[DatabaseAdapter] = None,
    actor: Actor = SYSTEM_ACTOR,
    causation_id: Optional[str] = None
):
    """
    Context manager shorthand for UnitOfWork.

    Usage:
        async with unit_of_work(actor=actor) as uow:
            await uow.create(boards, Board(name="Roadmap"))
            await uow.emit("board.created", board.id, {...})
    """
    async with UnitOfWork(db=db, actor=actor, causation_id=causation_id) as uow:
        yield uow
