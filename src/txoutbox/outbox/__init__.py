"""
Outbox Pattern Implementation

Provides transactional event publishing with guaranteed delivery.

Usage:
    from txoutbox.outbox import unit_of_work

    async with unit_of_work(actor=actor) as uow:
        board = await uow.update(boards, board_id, version, rename)
        # This is atomic with the board update
        await uow.emit("board.renamed", board.id, {"name": board.name})
"""

from .models import (
    ALLOWED_TRANSITIONS,
    EventSink,
    OutboxEvent,
    OutboxStatus,
    TERMINAL_STATUSES,
    can_transition,
)
from .writer import OutboxWriter
from .relay import (
    OutboxRelay,
    calculate_next_attempt,
    get_outbox_relay,
    start_outbox_relay,
    stop_outbox_relay,
)
from .sinks import HttpEventSink, InMemoryEventSink, LoggingEventSink
from .transactional import UnitOfWork, unit_of_work
from .dlq import DeadLetterManager, DLQEntry
from .janitor import RetentionJanitor

__all__ = [
    "ALLOWED_TRANSITIONS",
    "EventSink",
    "OutboxEvent",
    "OutboxStatus",
    "TERMINAL_STATUSES",
    "can_transition",
    "OutboxWriter",
    "OutboxRelay",
    "calculate_next_attempt",
    "get_outbox_relay",
    "start_outbox_relay",
    "stop_outbox_relay",
    "HttpEventSink",
    "InMemoryEventSink",
    "LoggingEventSink",
    "UnitOfWork",
    "unit_of_work",
    "DeadLetterManager",
    "DLQEntry",
    "RetentionJanitor",
]
