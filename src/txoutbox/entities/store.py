"""
Versioned Entity Store

Generic read/modify/write over any VersionedEntity table with
optimistic locking. Every update is a conditional write on the version
the caller read; a mismatch raises ConcurrencyConflict and is never
retried here.

Usage:
    boards = VersionedEntityStore(Board, db)

    board = await boards.read(board_id)
    board = await boards.update(board_id, board.version, lambda b: setattr(b, "name", "Q3"))

Inside a unit of work, pass ``conn=`` so the write shares the outbox
transaction.
"""

import inspect
import json
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Generic, Optional, Type, TypeVar, Union

from ..database.adapter import DatabaseAdapter, Transaction, get_database, use_connection
from ..database.schema import validate_identifier
from ..errors import ConcurrencyConflict, EntityNotFound
from ..observability import record_counter
from .models import VersionedEntity

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=VersionedEntity)

Mutator = Callable[[T], Union[Optional[T], Awaitable[Optional[T]]]]


def bump_version(entity: T, now: datetime) -> T:
    """Return a copy with version incremented by exactly one and updated_at set."""
    return entity.model_copy(update={"version": entity.version + 1, "updated_at": now})


class VersionedEntityStore(Generic[T]):
    """Optimistically locked persistence for one entity type."""

    def __init__(
        self,
        entity_cls: Type[T],
        db: Optional[DatabaseAdapter] = None,
        table: Optional[str] = None
    ):
        self.entity_cls = entity_cls
        self.table = validate_identifier(table or entity_cls.table_name)
        self._db = db

    @property
    def entity_type(self) -> str:
        return self.entity_cls.entity_type()

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def create(self, entity: T, conn: Optional[Transaction] = None) -> T:
        """Insert a new entity at version 1."""
        if entity.version != 1:
            entity = entity.model_copy(update={"version": 1})

        db = await self._get_db()
        async with use_connection(db, conn) as txn:
            await txn.execute(
                f"""
                INSERT INTO {self.table} (id, version, data, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5)
                """,
                entity.id,
                entity.version,
                json.dumps(entity.to_document()),
                entity.created_at,
                entity.updated_at
            )

        logger.debug(f"Created {self.entity_type} {entity.id} at version 1")
        return entity

    async def read_or_none(self, entity_id: str, conn: Optional[Transaction] = None) -> Optional[T]:
        db = await self._get_db()
        async with use_connection(db, conn) as txn:
            row = await txn.fetchrow(
                f"SELECT id, version, data, created_at, updated_at FROM {self.table} WHERE id = $1",
                entity_id
            )
        if row is None:
            return None
        return self.entity_cls.from_row(row)

    async def read(self, entity_id: str, conn: Optional[Transaction] = None) -> T:
        """
        Read an entity. Its current version is ``entity.version``.

        Raises:
            EntityNotFound: No row with this id
        """
        entity = await self.read_or_none(entity_id, conn=conn)
        if entity is None:
            raise EntityNotFound(self.entity_type, entity_id)
        return entity

    async def update(
        self,
        entity_id: str,
        expected_version: int,
        mutator: Mutator,
        conn: Optional[Transaction] = None
    ) -> T:
        """
        Apply ``mutator`` and write back only if the version is unchanged.

        Args:
            entity_id: Entity to modify
            expected_version: The version the caller read
            mutator: Called with a copy of the stored entity. It may modify
                the copy in place and return None, or return a new entity.
                Coroutine functions are awaited.
            conn: Transaction of the enclosing unit of work

        Returns:
            The stored entity at ``expected_version + 1``

        Raises:
            EntityNotFound: No row with this id
            ConcurrencyConflict: Stored version differs from expected_version
        """
        db = await self._get_db()
        async with use_connection(db, conn) as txn:
            current = await self.read(entity_id, conn=txn)
            if current.version != expected_version:
                self._conflict(entity_id, expected_version, current.version)

            draft = current.model_copy(deep=True)
            result = mutator(draft)
            if inspect.isawaitable(result):
                result = await result
            mutated = result if result is not None else draft

            if mutated.id != current.id or mutated.version != current.version:
                raise ValueError("Mutator must not change id or version")

            updated = bump_version(mutated, datetime.now(timezone.utc))

            row = await txn.fetchrow(
                f"""
                UPDATE {self.table}
                SET data = $1, version = $2, updated_at = $3
                WHERE id = $4 AND version = $5
                RETURNING version
                """,
                json.dumps(updated.to_document()),
                updated.version,
                updated.updated_at,
                entity_id,
                expected_version
            )
            if row is None:
                # Another writer committed between our read and the conditional write
                self._conflict(entity_id, expected_version, None)

        logger.debug(
            f"Updated {self.entity_type} {entity_id}: version {expected_version} -> {updated.version}"
        )
        return updated

    def _conflict(self, entity_id: str, expected: int, actual: Optional[int]):
        record_counter("entity_conflicts_total", attributes={"entity_type": self.entity_type})
        logger.info(
            f"Optimistic lock conflict on {self.entity_type} {entity_id}: "
            f"expected={expected} actual={actual}"
        )
        raise ConcurrencyConflict(self.entity_type, entity_id, expected, actual)
