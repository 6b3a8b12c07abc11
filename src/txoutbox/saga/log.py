"""
Transaction Log

Append-only diagnostic log keyed by transaction (saga) id. Every entry
is mirrored to the Python logger; persisting it is best effort and a
storage failure never affects the transaction being logged.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ..database.adapter import DatabaseAdapter, Transaction, get_database
from ..database.schema import TRANSACTION_LOG_TABLE
from ..errors import StorageError

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    DEBUG = "DEBUG"


_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class TransactionLogEntry(BaseModel):
    """One row of the transaction log."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    transaction_id: str
    step_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    level: LogLevel = LogLevel.INFO
    message: str
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @field_validator("data", mode="before")
    @classmethod
    def _decode_data(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value else None
        return value

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TransactionLogEntry":
        return cls.model_validate({k: v for k, v in row.items() if k != "sequence"})

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class TransactionLog:
    """
    Writes and reads transaction log entries.

    Usage:
        txlog = TransactionLog(db)
        await txlog.log(txn_id, LogLevel.INFO, "Executing step: reserve", step_id="reserve")
        entries = await txlog.entries(txn_id)
    """

    def __init__(self, db: Optional[DatabaseAdapter] = None):
        self._db = db

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def log(
        self,
        transaction_id: str,
        level: LogLevel,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        step_id: Optional[str] = None,
        error: Optional[str] = None,
        conn: Optional[Transaction] = None
    ) -> TransactionLogEntry:
        """Append an entry. Never raises on storage failure."""
        entry = TransactionLogEntry(
            transaction_id=transaction_id,
            step_id=step_id,
            level=LogLevel(level),
            message=message,
            data=data,
            error=str(error) if error is not None else None,
        )

        logger.log(
            _PY_LEVELS[entry.level],
            f"[{transaction_id}] {message}",
            extra={"transaction_id": transaction_id, "step_id": step_id}
        )

        try:
            db = await self._get_db()
            # A failed insert must not poison the caller's transaction
            scope = conn.savepoint() if conn is not None else db.transaction()
            async with scope as txn:
                await txn.execute(
                    f"""
                    INSERT INTO {TRANSACTION_LOG_TABLE} (
                        id, transaction_id, step_id, timestamp, level, message, data, error
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    entry.id,
                    entry.transaction_id,
                    entry.step_id,
                    entry.timestamp,
                    entry.level.value,
                    entry.message,
                    json.dumps(entry.data, default=str) if entry.data is not None else None,
                    entry.error
                )
        except StorageError as e:
            logger.warning(f"Failed to persist transaction log: {e}")

        return entry

    async def entries(self, transaction_id: str) -> List[TransactionLogEntry]:
        """All entries for a transaction, in write order."""
        db = await self._get_db()
        rows = await db.fetch(
            f"""
            SELECT * FROM {TRANSACTION_LOG_TABLE}
            WHERE transaction_id = $1
            ORDER BY sequence ASC
            """,
            transaction_id
        )
        return [TransactionLogEntry.from_row(row) for row in rows]
