"""
Admin/Operator API

Endpoints for outbox operators: queue statistics, dead letters,
requeue, cancellation and transaction logs.

The caller is the actor ActorMiddleware authenticated; every endpoint
requires the outbox:admin permission.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..auth import Actor, Permission, authorize
from ..database import OUTBOX_TABLE, DatabaseAdapter, get_database
from ..outbox.dlq import DeadLetterManager
from ..outbox.models import OutboxStatus
from ..outbox.relay import OutboxRelay, get_outbox_relay
from ..outbox.sinks import LoggingEventSink
from ..saga.log import TransactionLog
from .middleware import require_actor

router = APIRouter(prefix="/api/admin", tags=["admin"])

# Pending entries older than this are reported as stuck
STUCK_AFTER = timedelta(hours=1)


def require_admin(actor: Actor = Depends(require_actor)) -> Actor:
    authorize(actor, Permission.OUTBOX_ADMIN)
    return actor


async def get_db() -> DatabaseAdapter:
    return await get_database()


def _relay(db: DatabaseAdapter) -> OutboxRelay:
    # Status changes go through the relay; a sink is only needed for delivery
    return get_outbox_relay() or OutboxRelay(LoggingEventSink(), db=db)


# Outbox Status Endpoints

@router.get("/outbox/stats")
async def outbox_stats(
    actor: Actor = Depends(require_admin),
    db: DatabaseAdapter = Depends(get_db),
):
    """Get outbox queue statistics."""
    by_status = await _relay(db).get_stats()

    stuck = await db.fetchval(
        f"SELECT COUNT(*) AS count FROM {OUTBOX_TABLE} WHERE status = $1 AND created_at < $2",
        OutboxStatus.PENDING.value,
        datetime.now(timezone.utc) - STUCK_AFTER
    )
    stuck = int(stuck or 0)

    return {
        "by_status": by_status,
        "total": sum(by_status.values()),
        "stuck_count": stuck,
        "healthy": stuck == 0
    }


@router.post("/outbox/{entry_id}/cancel")
async def cancel_outbox_entry(
    entry_id: str,
    actor: Actor = Depends(require_admin),
    db: DatabaseAdapter = Depends(get_db),
):
    """Cancel a pending or failed outbox entry."""
    cancelled = await _relay(db).cancel(entry_id)

    if not cancelled:
        raise HTTPException(
            status_code=409,
            detail="Only pending or failed entries can be cancelled"
        )

    return {"status": "cancelled", "entry_id": entry_id, "cancelled_by": actor.id}


# DLQ Management Endpoints

@router.get("/dlq")
async def list_dlq_entries(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    aggregate_id: Optional[str] = None,
    actor: Actor = Depends(require_admin),
    db: DatabaseAdapter = Depends(get_db),
):
    """List Dead Letter Queue entries."""
    manager = DeadLetterManager(db)

    entries = await manager.get_entries(limit=limit, offset=offset, aggregate_id=aggregate_id)
    total = await manager.get_count(aggregate_id)

    return {
        "entries": [e.to_dict() for e in entries],
        "total": total,
        "limit": limit,
        "offset": offset
    }


@router.get("/dlq/stats")
async def dlq_stats(
    actor: Actor = Depends(require_admin),
    db: DatabaseAdapter = Depends(get_db),
):
    """Get DLQ statistics."""
    return await DeadLetterManager(db).get_stats()


@router.post("/dlq/{entry_id}/requeue")
async def requeue_dlq_entry(
    entry_id: str,
    actor: Actor = Depends(require_admin),
    db: DatabaseAdapter = Depends(get_db),
):
    """Requeue a dead letter as a new pending entry with the same event_id."""
    entry = await DeadLetterManager(db).requeue(entry_id, operator_id=actor.id)

    return {
        "status": "requeued",
        "entry_id": entry_id,
        "new_entry_id": entry.id,
        "event_id": entry.event_id
    }


# Transaction Log Endpoints

@router.get("/transactions/{transaction_id}/logs")
async def transaction_logs(
    transaction_id: str,
    actor: Actor = Depends(require_admin),
    db: DatabaseAdapter = Depends(get_db),
):
    """Get the transaction log of one saga execution."""
    entries = await TransactionLog(db).entries(transaction_id)

    return {
        "transaction_id": transaction_id,
        "entries": [e.to_dict() for e in entries],
        "count": len(entries)
    }
