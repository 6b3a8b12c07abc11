"""
Database abstraction layer supporting PostgreSQL and SQLite.

Usage:
    from txoutbox.database import get_database

    db = await get_database()

    async with db.transaction() as txn:
        await txn.execute("UPDATE boards SET ... WHERE id = $1", board_id)
"""

from .adapter import (
    DatabaseAdapter,
    DatabaseBackend,
    DatabaseConfig,
    Transaction,
    format_timestamp,
    use_connection,
    get_database,
    set_database,
    close_database,
)
from .schema import (
    OUTBOX_TABLE,
    TRANSACTION_LOG_TABLE,
    create_schema,
)

__all__ = [
    "DatabaseAdapter",
    "DatabaseBackend",
    "DatabaseConfig",
    "Transaction",
    "format_timestamp",
    "use_connection",
    "get_database",
    "set_database",
    "close_database",
    "OUTBOX_TABLE",
    "TRANSACTION_LOG_TABLE",
    "create_schema",
]
