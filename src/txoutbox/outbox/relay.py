"""
Outbox Relay

Background worker that claims outbox entries, delivers them to an
EventSink, and records the outcome with retry and exponential backoff.

Claiming is one atomic UPDATE over a "skip locked" subselect, so any
number of relays can share the table without double-claiming a row.
A claim is a lease: a row left in processing longer than lease_timeout
(the worker crashed) becomes claimable again. Delivery is therefore
at-least-once and consumers must deduplicate on event_id.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import OutboxConfig
from ..database.adapter import DatabaseAdapter, DatabaseBackend, Transaction, get_database
from ..database.schema import OUTBOX_TABLE
from ..errors import DeliveryError, EntityNotFound, ExhaustedRetries, StorageError
from ..observability import create_span, extract_trace_context, record_counter, record_histogram
from .models import EventSink, OutboxEvent, OutboxStatus

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500
LEASE_EXPIRED_MESSAGE = "Lease expired after final delivery attempt"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def calculate_next_attempt(attempts: int, now: datetime, intervals: Sequence[float]) -> datetime:
    """Calculate next attempt time with exponential backoff."""
    if not intervals:
        return now
    interval_idx = min(max(attempts - 1, 0), len(intervals) - 1)
    return now + timedelta(seconds=intervals[interval_idx])


class OutboxRelay:
    """
    Claims and delivers outbox entries.

    Features:
    - Claims pending, failed and lease-expired entries, oldest first
    - Never blocks on rows another relay holds (SKIP LOCKED)
    - Delivers with a per-publish timeout
    - Marks entries published, failed (with backoff) or dead_letter
    - Fences outcome writes on the claimed attempt number

    run_batch() can be driven by an external scheduler, or start()/stop()
    run the built-in polling loop.
    """

    def __init__(
        self,
        sink: EventSink,
        db: Optional[DatabaseAdapter] = None,
        config: Optional[OutboxConfig] = None,
        batch_size: Optional[int] = None,
        poll_interval: Optional[float] = None,
        lease_timeout: Optional[timedelta] = None,
        publish_timeout: Optional[float] = None,
        retry_intervals: Optional[Sequence[float]] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        config = config or OutboxConfig()
        self.sink = sink
        self.batch_size = batch_size if batch_size is not None else config.batch_size
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {self.batch_size}")
        self.poll_interval = poll_interval if poll_interval is not None else config.poll_interval
        self.lease_timeout = lease_timeout if lease_timeout is not None else config.lease_timeout
        self.publish_timeout = publish_timeout if publish_timeout is not None else config.publish_timeout
        self.retry_intervals = list(retry_intervals if retry_intervals is not None else config.retry_intervals)
        self._clock = clock or _utcnow
        self._db = db
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self):
        """Start the polling loop."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run())
        logger.info("OutboxRelay started")

    async def stop(self):
        """Stop the polling loop. An in-flight delivery is abandoned to its lease."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("OutboxRelay stopped")

    async def _run(self):
        """Main processing loop."""
        while self._running:
            try:
                processed = await self.run_batch()
                if processed == 0:
                    # No entries, wait before polling again
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"OutboxRelay error: {e}", exc_info=True)
                await asyncio.sleep(self.poll_interval)

    async def run_batch(self, batch_size: Optional[int] = None) -> int:
        """
        Claim up to ``batch_size`` entries and deliver them.

        Returns:
            Number of entries claimed and processed in this pass
        """
        limit = batch_size if batch_size is not None else self.batch_size
        if limit < 1:
            raise ValueError(f"batch_size must be at least 1, got {limit}")
        started = time.monotonic()

        with create_span("outbox.relay.batch", {"outbox.batch_size": limit}) as span:
            claimed = await self._claim(limit)
            span.set_attribute("outbox.claimed", len(claimed))

            current = 0
            try:
                for current, entry in enumerate(claimed):
                    try:
                        await self._deliver(entry)
                    except StorageError as e:
                        # The sink was called; the row keeps its lease and is retried once it expires
                        logger.error(f"Could not record outcome of outbox entry {entry.id}: {e}")
            except BaseException:
                # The entry in flight stays leased, the ones after it were never attempted
                await self._release(claimed[current + 1:])
                raise

        if claimed:
            logger.debug(f"Relay batch processed {len(claimed)} entries")
        record_histogram("outbox_batch_duration_seconds", time.monotonic() - started)
        return len(claimed)

    def _lock_clause(self, txn: Transaction) -> str:
        # SQLite has no row locks; BEGIN IMMEDIATE already makes the claim exclusive
        return "FOR UPDATE SKIP LOCKED" if txn.backend == DatabaseBackend.POSTGRESQL else ""

    async def _claim(self, limit: int) -> List[OutboxEvent]:
        """Atomically move claimable rows to processing and return them oldest first."""
        db = await self._get_db()
        now = self._clock()
        lease_cutoff = now - self.lease_timeout

        async with db.transaction() as txn:
            lock = self._lock_clause(txn)

            # A crashed worker may have spent the last attempt; those rows can't be reclaimed
            expired = await txn.fetch(
                f"""
                UPDATE {OUTBOX_TABLE}
                SET status = $1, error_message = $2, updated_at = $3
                WHERE id IN (
                    SELECT id FROM {OUTBOX_TABLE}
                    WHERE status = $4 AND last_attempt_at < $5 AND attempts >= max_attempts
                    {lock}
                )
                RETURNING id
                """,
                OutboxStatus.DEAD_LETTER.value,
                LEASE_EXPIRED_MESSAGE,
                now,
                OutboxStatus.PROCESSING.value,
                lease_cutoff
            )

            rows = await txn.fetch(
                f"""
                UPDATE {OUTBOX_TABLE}
                SET status = $1, attempts = attempts + 1, last_attempt_at = $2,
                    next_attempt_at = NULL, updated_at = $2
                WHERE id IN (
                    SELECT id FROM {OUTBOX_TABLE}
                    WHERE attempts < max_attempts
                      AND (
                        (status IN ($3, $4) AND (next_attempt_at IS NULL OR next_attempt_at <= $2))
                        OR (status = $1 AND last_attempt_at < $5)
                      )
                    ORDER BY created_at ASC, sequence ASC
                    LIMIT $6
                    {lock}
                )
                RETURNING *
                """,
                OutboxStatus.PROCESSING.value,
                now,
                OutboxStatus.PENDING.value,
                OutboxStatus.FAILED.value,
                lease_cutoff,
                limit
            )

        for row in expired:
            record_counter("outbox_dead_letter_total", attributes={"reason": "lease_expired"})
            logger.error(f"Outbox entry {row['id']} dead-lettered: {LEASE_EXPIRED_MESSAGE}")

        entries = [OutboxEvent.from_row(row) for row in rows]
        # RETURNING order is unspecified
        entries.sort(key=lambda e: (e.created_at, e.sequence or 0))
        return entries

    async def _deliver(self, entry: OutboxEvent) -> None:
        """Deliver a single claimed entry and record the outcome."""
        attributes = {
            "outbox.entry_id": entry.id,
            "outbox.event_id": entry.event_id,
            "outbox.event_type": entry.event_type,
            "outbox.attempt": entry.attempts,
        }
        parent = extract_trace_context(entry.metadata)
        started = time.monotonic()
        error: Optional[DeliveryError] = None

        with create_span("outbox.deliver", attributes, context=parent):
            try:
                delivered = await asyncio.wait_for(
                    self.sink.publish(entry),
                    timeout=self.publish_timeout
                )
                if delivered is False:
                    error = DeliveryError("Event sink rejected the event")
            except asyncio.TimeoutError:
                error = DeliveryError(f"Event sink timed out after {self.publish_timeout}s")
            except DeliveryError as e:
                error = e
            except Exception as e:
                # Any sink failure counts as a delivery failure
                error = DeliveryError(f"{type(e).__name__}: {e}")

        record_histogram(
            "outbox_delivery_duration_seconds",
            time.monotonic() - started,
            {"event_type": entry.event_type}
        )

        if error is None:
            await self._mark_published(entry)
        else:
            await self._mark_failed(entry, error)

    async def _mark_published(self, entry: OutboxEvent) -> bool:
        db = await self._get_db()
        now = self._clock()

        row = await db.fetchrow(
            f"""
            UPDATE {OUTBOX_TABLE}
            SET status = $1, published_at = $2, error_message = NULL, updated_at = $2
            WHERE id = $3 AND status = $4 AND attempts = $5
            RETURNING id
            """,
            OutboxStatus.PUBLISHED.value,
            now,
            entry.id,
            OutboxStatus.PROCESSING.value,
            entry.attempts
        )

        if row is None:
            logger.warning(f"Outbox entry {entry.id} lease lost before publish was recorded")
            return False

        record_counter("outbox_published_total", attributes={"event_type": entry.event_type})
        logger.debug(f"Published outbox entry {entry.id} (attempt {entry.attempts})")
        return True

    async def _mark_failed(self, entry: OutboxEvent, error: DeliveryError) -> bool:
        db = await self._get_db()
        now = self._clock()
        message = str(error)[:MAX_ERROR_LENGTH]

        if entry.attempts >= entry.max_attempts:
            status = OutboxStatus.DEAD_LETTER
            next_attempt = None
        else:
            status = OutboxStatus.FAILED
            next_attempt = calculate_next_attempt(entry.attempts, now, self.retry_intervals)

        row = await db.fetchrow(
            f"""
            UPDATE {OUTBOX_TABLE}
            SET status = $1, error_message = $2, next_attempt_at = $3, updated_at = $4
            WHERE id = $5 AND status = $6 AND attempts = $7
            RETURNING id
            """,
            status.value,
            message,
            next_attempt,
            now,
            entry.id,
            OutboxStatus.PROCESSING.value,
            entry.attempts
        )

        if row is None:
            logger.warning(f"Outbox entry {entry.id} lease lost before failure was recorded")
            return False

        record_counter("outbox_failed_total", attributes={"event_type": entry.event_type})

        if status == OutboxStatus.DEAD_LETTER:
            exhausted = ExhaustedRetries(entry.id, entry.attempts, message)
            record_counter("outbox_dead_letter_total", attributes={"reason": "exhausted"})
            logger.error(
                str(exhausted),
                extra={"entry_id": entry.id, "event_type": entry.event_type}
            )
        else:
            logger.warning(
                f"Outbox entry {entry.id} failed (attempt {entry.attempts}/{entry.max_attempts}), "
                f"retry at {next_attempt.isoformat()}: {message}"
            )
        return True

    async def _release(self, entries: Sequence[OutboxEvent]) -> None:
        """Return claimed entries that never reached the sink, refunding the attempt."""
        if not entries:
            return
        db = await self._get_db()
        now = self._clock()

        try:
            async with db.transaction() as txn:
                for entry in entries:
                    await txn.execute(
                        f"""
                        UPDATE {OUTBOX_TABLE}
                        SET status = $1, attempts = attempts - 1, next_attempt_at = $2, updated_at = $2
                        WHERE id = $3 AND status = $4 AND attempts = $5
                        """,
                        OutboxStatus.FAILED.value,
                        now,
                        entry.id,
                        OutboxStatus.PROCESSING.value,
                        entry.attempts
                    )
        except StorageError as e:
            logger.error(f"Could not release {len(entries)} claimed outbox entries: {e}")
            return

        logger.info(f"Released {len(entries)} undelivered outbox entries")

    async def cancel(self, entry_id: str) -> bool:
        """
        Cancel an entry that has not been delivered.

        Only pending and failed entries can be cancelled.

        Returns:
            True if cancelled, False if the entry is processing or terminal

        Raises:
            EntityNotFound: No such entry
        """
        db = await self._get_db()
        now = self._clock()

        async with db.transaction() as txn:
            row = await txn.fetchrow(
                f"""
                UPDATE {OUTBOX_TABLE}
                SET status = $1, next_attempt_at = NULL, updated_at = $2
                WHERE id = $3 AND status IN ($4, $5)
                RETURNING id
                """,
                OutboxStatus.CANCELLED.value,
                now,
                entry_id,
                OutboxStatus.PENDING.value,
                OutboxStatus.FAILED.value
            )
            if row is None:
                exists = await txn.fetchrow(f"SELECT id FROM {OUTBOX_TABLE} WHERE id = $1", entry_id)
                if exists is None:
                    raise EntityNotFound("OutboxEvent", entry_id)
                return False

        logger.info(f"Cancelled outbox entry {entry_id}")
        return True

    async def get(self, entry_id: str) -> OutboxEvent:
        """Fetch one entry by id."""
        db = await self._get_db()
        row = await db.fetchrow(f"SELECT * FROM {OUTBOX_TABLE} WHERE id = $1", entry_id)
        if row is None:
            raise EntityNotFound("OutboxEvent", entry_id)
        return OutboxEvent.from_row(row)

    async def get_stats(self) -> Dict[str, int]:
        """Get outbox statistics."""
        db = await self._get_db()

        rows = await db.fetch(
            f"""
            SELECT status, COUNT(*) AS count
            FROM {OUTBOX_TABLE}
            GROUP BY status
            """
        )

        stats = {status.value: 0 for status in OutboxStatus}
        for row in rows:
            stats[row["status"]] = int(row["count"])

        return stats


# Global relay instance
_relay: Optional[OutboxRelay] = None


async def start_outbox_relay(sink: EventSink, **kwargs: Any) -> OutboxRelay:
    """Start the global outbox relay."""
    global _relay

    if _relay is None:
        _relay = OutboxRelay(sink, **kwargs)

    await _relay.start()
    return _relay


async def stop_outbox_relay():
    """Stop the global outbox relay."""
    global _relay
    if _relay:
        await _relay.stop()
        _relay = None


def get_outbox_relay() -> Optional[OutboxRelay]:
    """Get the global outbox relay instance."""
    return _relay
