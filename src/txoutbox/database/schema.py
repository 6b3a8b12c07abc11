"""
Schema Definitions

DDL for the outbox, the transaction log and versioned entity tables, in
both dialects. create_schema() is idempotent.
"""

import re
import logging
from typing import Iterable, List

from .adapter import DatabaseAdapter, DatabaseBackend

logger = logging.getLogger(__name__)

OUTBOX_TABLE = "outbox_events"
TRANSACTION_LOG_TABLE = "transaction_logs"

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]{0,62}$")

_OUTBOX_STATUSES = "('pending', 'processing', 'published', 'failed', 'dead_letter', 'cancelled')"
_LOG_LEVELS = "('INFO', 'WARN', 'ERROR', 'DEBUG')"


def validate_identifier(name: str) -> str:
    """Table names are interpolated into SQL, so only plain identifiers are allowed."""
    if not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid table name: {name!r}")
    return name


def _types(backend: DatabaseBackend) -> dict:
    if backend == DatabaseBackend.POSTGRESQL:
        return {
            "seq": "BIGSERIAL UNIQUE",
            "ts": "TIMESTAMPTZ",
            "json": "JSONB",
            "id_pk": "TEXT PRIMARY KEY",
        }
    return {
        "seq": "INTEGER PRIMARY KEY AUTOINCREMENT",
        "ts": "TEXT",
        "json": "TEXT",
        "id_pk": "TEXT NOT NULL UNIQUE",
    }


def outbox_ddl(backend: DatabaseBackend) -> List[str]:
    t = _types(backend)
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {OUTBOX_TABLE} (
            sequence {t['seq']},
            id {t['id_pk']},
            event_id TEXT NOT NULL,
            event_type TEXT NOT NULL,
            aggregate_type TEXT NOT NULL,
            aggregate_id TEXT NOT NULL,
            payload {t['json']} NOT NULL DEFAULT '{{}}',
            metadata {t['json']} NOT NULL DEFAULT '{{}}',
            status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN {_OUTBOX_STATUSES}),
            attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
            max_attempts INTEGER NOT NULL DEFAULT 5 CHECK (max_attempts >= 1),
            last_attempt_at {t['ts']},
            next_attempt_at {t['ts']},
            published_at {t['ts']},
            error_message TEXT,
            created_at {t['ts']} NOT NULL,
            updated_at {t['ts']} NOT NULL
        )
        """,
        f"CREATE INDEX IF NOT EXISTS idx_{OUTBOX_TABLE}_claim ON {OUTBOX_TABLE} (status, next_attempt_at, created_at)",
        f"CREATE INDEX IF NOT EXISTS idx_{OUTBOX_TABLE}_aggregate ON {OUTBOX_TABLE} (aggregate_id)",
        f"CREATE INDEX IF NOT EXISTS idx_{OUTBOX_TABLE}_event_id ON {OUTBOX_TABLE} (event_id)",
    ]


def transaction_log_ddl(backend: DatabaseBackend) -> List[str]:
    t = _types(backend)
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {TRANSACTION_LOG_TABLE} (
            sequence {t['seq']},
            id {t['id_pk']},
            transaction_id TEXT NOT NULL,
            step_id TEXT,
            timestamp {t['ts']} NOT NULL,
            level TEXT NOT NULL CHECK (level IN {_LOG_LEVELS}),
            message TEXT NOT NULL,
            data {t['json']},
            error TEXT
        )
        """,
        f"CREATE INDEX IF NOT EXISTS idx_{TRANSACTION_LOG_TABLE}_txn "
        f"ON {TRANSACTION_LOG_TABLE} (transaction_id, sequence)",
    ]


def entity_table_ddl(table: str, backend: DatabaseBackend) -> List[str]:
    table = validate_identifier(table)
    t = _types(backend)
    return [
        f"""
        CREATE TABLE IF NOT EXISTS {table} (
            id TEXT PRIMARY KEY,
            version INTEGER NOT NULL DEFAULT 1 CHECK (version >= 1),
            data {t['json']} NOT NULL DEFAULT '{{}}',
            created_at {t['ts']} NOT NULL,
            updated_at {t['ts']} NOT NULL
        )
        """,
    ]


async def create_schema(db: DatabaseAdapter, entity_tables: Iterable[str] = ()) -> None:
    """Create the outbox, transaction log and the given entity tables."""
    statements = outbox_ddl(db.backend) + transaction_log_ddl(db.backend)
    for table in entity_tables:
        statements.extend(entity_table_ddl(table, db.backend))

    async with db.transaction() as txn:
        for statement in statements:
            await txn.execute(statement)

    logger.info(f"Schema ready ({db.backend.value}): {len(statements)} statements applied")
