"""
Integration tests for the outbox relay.
"""

import asyncio
from datetime import timedelta

import pytest

from txoutbox.database import OUTBOX_TABLE, DatabaseAdapter, DatabaseBackend, DatabaseConfig
from txoutbox.errors import DeliveryError, EntityNotFound, StorageError
from txoutbox.outbox import InMemoryEventSink, OutboxRelay, OutboxStatus, OutboxWriter
from txoutbox.outbox.relay import LEASE_EXPIRED_MESSAGE, MAX_ERROR_LENGTH

pytestmark = pytest.mark.integration

LEASE = timedelta(seconds=300)


class RejectingSink:
    """Returns False instead of raising."""

    async def publish(self, event):
        return False


class StallingSink:
    """Blocks inside publish until released, then fails."""

    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def publish(self, event):
        self.entered.set()
        await self.release.wait()
        raise DeliveryError("late failure")


class LongErrorSink:
    async def publish(self, event):
        raise RuntimeError("x" * 2000)


@pytest.fixture
def writer(db):
    return OutboxWriter(db)


def make_relay(db, sink, clock, **kwargs):
    kwargs.setdefault("retry_intervals", [0])
    kwargs.setdefault("lease_timeout", LEASE)
    kwargs.setdefault("publish_timeout", 5.0)
    kwargs.setdefault("batch_size", 100)
    return OutboxRelay(sink, db=db, clock=clock, **kwargs)


class TestDelivery:

    async def test_publishes_pending_events(self, db, writer, clock):
        sink = InMemoryEventSink()
        relay = make_relay(db, sink, clock)
        event = await writer.enqueue("board.renamed", "b1", {"name": "Q3"})

        assert await relay.run_batch() == 1

        stored = await relay.get(event.id)
        assert stored.status == OutboxStatus.PUBLISHED
        assert stored.attempts == 1
        assert stored.published_at == clock.now
        assert stored.error_message is None
        assert sink.event_ids == [event.event_id]

    async def test_second_batch_is_idempotent(self, db, writer, clock):
        """Already-published events are never re-delivered."""
        sink = InMemoryEventSink()
        relay = make_relay(db, sink, clock)
        await writer.enqueue("board.renamed", "b1", {})

        assert await relay.run_batch() == 1
        assert await relay.run_batch() == 0
        assert len(sink.events) == 1

    async def test_fifo_within_batch(self, db, writer, clock):
        sink = InMemoryEventSink()
        relay = make_relay(db, sink, clock)
        events = [await writer.enqueue("board.updated", "b1", {"n": n}) for n in range(5)]

        assert await relay.run_batch(batch_size=2) == 2
        assert sink.event_ids == [e.event_id for e in events[:2]]

        assert await relay.run_batch() == 3
        assert sink.event_ids == [e.event_id for e in events]

    async def test_empty_outbox(self, db, clock):
        assert await make_relay(db, InMemoryEventSink(), clock).run_batch() == 0


class TestFailures:

    async def test_failure_then_success(self, db, writer, clock):
        sink = InMemoryEventSink(fail_times=1)
        relay = make_relay(db, sink, clock)
        event = await writer.enqueue("board.renamed", "b1", {})

        await relay.run_batch()
        failed = await relay.get(event.id)
        assert failed.status == OutboxStatus.FAILED
        assert failed.attempts == 1
        assert "Injected failure" in failed.error_message

        await relay.run_batch()
        published = await relay.get(event.id)
        assert published.status == OutboxStatus.PUBLISHED
        assert published.attempts == 2
        assert published.error_message is None

    async def test_dead_letter_after_max_attempts(self, db, writer, clock):
        """max_attempts=3 and a sink that always fails: exactly three attempts."""
        sink = InMemoryEventSink(fail_times=100)
        relay = make_relay(db, sink, clock)
        event = await writer.enqueue("board.renamed", "b1", {}, max_attempts=3)

        for expected_attempts in (1, 2):
            assert await relay.run_batch() == 1
            stored = await relay.get(event.id)
            assert stored.status == OutboxStatus.FAILED
            assert stored.attempts == expected_attempts

        assert await relay.run_batch() == 1
        dead = await relay.get(event.id)
        assert dead.status == OutboxStatus.DEAD_LETTER
        assert dead.attempts == 3
        assert dead.error_message

        # Terminal: never claimed again
        assert await relay.run_batch() == 0
        assert sink.attempts == 3

    async def test_false_return_is_failure(self, db, writer, clock):
        relay = make_relay(db, RejectingSink(), clock)
        event = await writer.enqueue("board.renamed", "b1", {})

        await relay.run_batch()

        stored = await relay.get(event.id)
        assert stored.status == OutboxStatus.FAILED
        assert "rejected" in stored.error_message

    async def test_publish_timeout_is_failure(self, db, writer, clock):
        relay = make_relay(db, InMemoryEventSink(delay=1.0), clock, publish_timeout=0.05)
        event = await writer.enqueue("board.renamed", "b1", {})

        await relay.run_batch()

        stored = await relay.get(event.id)
        assert stored.status == OutboxStatus.FAILED
        assert "timed out" in stored.error_message

    async def test_error_message_truncated(self, db, writer, clock):
        relay = make_relay(db, LongErrorSink(), clock)
        event = await writer.enqueue("board.renamed", "b1", {})

        await relay.run_batch()

        stored = await relay.get(event.id)
        assert len(stored.error_message) == MAX_ERROR_LENGTH

    async def test_backoff_gates_retry(self, db, writer, clock):
        sink = InMemoryEventSink(fail_times=1)
        relay = make_relay(db, sink, clock, retry_intervals=[60])
        event = await writer.enqueue("board.renamed", "b1", {})

        await relay.run_batch()
        stored = await relay.get(event.id)
        assert stored.next_attempt_at == clock.now + timedelta(seconds=60)

        clock.advance(seconds=30)
        assert await relay.run_batch() == 0

        clock.advance(seconds=31)
        assert await relay.run_batch() == 1
        assert (await relay.get(event.id)).status == OutboxStatus.PUBLISHED

    async def test_failure_does_not_block_other_events(self, db, writer, clock):
        sink = InMemoryEventSink(fail_times=1)
        relay = make_relay(db, sink, clock)
        first = await writer.enqueue("board.renamed", "b1", {})
        second = await writer.enqueue("board.renamed", "b2", {})

        assert await relay.run_batch() == 2

        assert (await relay.get(first.id)).status == OutboxStatus.FAILED
        assert (await relay.get(second.id)).status == OutboxStatus.PUBLISHED


class TestLeases:

    async def _abandon_claim(self, db, entry_id, clock, attempts=1):
        """Leave a row as a crashed worker would: processing, never finished."""
        await db.execute(
            f"UPDATE {OUTBOX_TABLE} SET status = $1, attempts = $2, last_attempt_at = $3 WHERE id = $4",
            OutboxStatus.PROCESSING.value, attempts, clock.now, entry_id
        )

    async def test_expired_lease_is_reclaimed(self, db, writer, clock):
        sink = InMemoryEventSink()
        relay = make_relay(db, sink, clock)
        event = await writer.enqueue("board.renamed", "b1", {})
        await self._abandon_claim(db, event.id, clock)

        # Lease still held
        assert await relay.run_batch() == 0

        clock.advance(seconds=301)
        assert await relay.run_batch() == 1

        stored = await relay.get(event.id)
        assert stored.status == OutboxStatus.PUBLISHED
        assert stored.attempts == 2
        assert sink.event_ids == [event.event_id]

    async def test_expired_lease_with_exhausted_attempts(self, db, writer, clock):
        relay = make_relay(db, InMemoryEventSink(), clock)
        event = await writer.enqueue("board.renamed", "b1", {}, max_attempts=2)
        await self._abandon_claim(db, event.id, clock, attempts=2)

        clock.advance(seconds=301)
        assert await relay.run_batch() == 0

        stored = await relay.get(event.id)
        assert stored.status == OutboxStatus.DEAD_LETTER
        assert stored.error_message == LEASE_EXPIRED_MESSAGE

    async def test_outcome_write_is_fenced(self, db, writer, clock):
        """A worker whose lease was taken over cannot overwrite the newer outcome."""
        stalled = StallingSink()
        slow_relay = make_relay(db, stalled, clock)
        fast_sink = InMemoryEventSink()
        fast_relay = make_relay(db, fast_sink, clock)
        event = await writer.enqueue("board.renamed", "b1", {})

        slow_batch = asyncio.create_task(slow_relay.run_batch())
        await stalled.entered.wait()

        clock.advance(seconds=301)
        assert await fast_relay.run_batch() == 1

        stalled.release.set()
        assert await slow_batch == 1

        stored = await fast_relay.get(event.id)
        assert stored.status == OutboxStatus.PUBLISHED
        assert stored.attempts == 2
        assert stored.error_message is None


class TestBatchInterruptions:

    async def test_storage_error_on_outcome_does_not_strand_batch(self, db, writer, clock):
        sink = InMemoryEventSink()
        relay = make_relay(db, sink, clock)
        for n in range(5):
            await writer.enqueue("board.updated", f"b{n}", {"n": n})

        record_published = relay._mark_published
        calls = []

        async def flaky_mark_published(entry):
            calls.append(entry.id)
            if len(calls) == 1:
                raise StorageError("connection reset")
            return await record_published(entry)

        relay._mark_published = flaky_mark_published

        assert await relay.run_batch() == 5
        assert len(sink.events) == 5

        stats = await relay.get_stats()
        assert stats["published"] == 4
        # Only the entry whose outcome was lost waits for its lease
        assert stats["processing"] == 1

    async def test_cancelled_batch_releases_unattempted_claims(self, db, writer, clock):
        stalled = StallingSink()
        relay = make_relay(db, stalled, clock)
        first = await writer.enqueue("board.updated", "b1", {})
        await writer.enqueue("board.updated", "b2", {})
        await writer.enqueue("board.updated", "b3", {})

        batch = asyncio.create_task(relay.run_batch())
        await stalled.entered.wait()
        batch.cancel()
        with pytest.raises(asyncio.CancelledError):
            await batch

        stored = await relay.get(first.id)
        assert stored.status == OutboxStatus.PROCESSING
        assert stored.attempts == 1

        sink = InMemoryEventSink()
        assert await make_relay(db, sink, clock).run_batch() == 2
        assert [e.aggregate_id for e in sink.events] == ["b2", "b3"]
        assert [e.attempts for e in sink.events] == [1, 1]

    async def test_zero_batch_size_rejected(self, db, clock):
        relay = make_relay(db, InMemoryEventSink(), clock)

        with pytest.raises(ValueError):
            await relay.run_batch(0)
        with pytest.raises(ValueError):
            make_relay(db, InMemoryEventSink(), clock, batch_size=0)


class TimingSink:
    """Records when each publish started and finished."""

    def __init__(self, delay: float = 0.005):
        self.delay = delay
        self.calls = []

    async def publish(self, event):
        loop = asyncio.get_running_loop()
        started = loop.time()
        await asyncio.sleep(self.delay)
        self.calls.append((event.event_id, started, loop.time()))
        return True


class TestConcurrentRelays:

    async def test_no_double_claim(self, db, writer, clock):
        """Relays on separate connections never deliver the same row concurrently."""
        events = [await writer.enqueue("board.updated", f"b{n}", {"n": n}) for n in range(20)]
        sink = TimingSink()
        adapters = [
            DatabaseAdapter(DatabaseConfig(backend=DatabaseBackend.SQLITE, sqlite_path=db.config.sqlite_path))
            for _ in range(3)
        ]
        for adapter in adapters:
            await adapter.connect()
        try:
            relays = [make_relay(adapter, sink, clock, batch_size=3) for adapter in adapters]
            while True:
                claimed = await asyncio.gather(*[r.run_batch() for r in relays])
                if sum(claimed) == 0:
                    break
        finally:
            for adapter in adapters:
                await adapter.disconnect()

        delivered = [event_id for event_id, _, _ in sink.calls]
        assert sorted(delivered) == sorted(e.event_id for e in events)
        assert len(delivered) == len(set(delivered))

        by_event = {}
        for event_id, started, finished in sink.calls:
            by_event.setdefault(event_id, []).append((started, finished))
        for intervals in by_event.values():
            intervals.sort()
            for (_, earlier_end), (later_start, _) in zip(intervals, intervals[1:]):
                assert later_start >= earlier_end

        stats = await make_relay(db, sink, clock).get_stats()
        assert stats["published"] == 20


class TestCancellation:

    async def test_cancel_pending(self, db, writer, clock):
        sink = InMemoryEventSink()
        relay = make_relay(db, sink, clock)
        event = await writer.enqueue("board.renamed", "b1", {})

        assert await relay.cancel(event.id) is True
        assert await relay.run_batch() == 0

        assert (await relay.get(event.id)).status == OutboxStatus.CANCELLED
        assert sink.events == []

    async def test_cancel_failed(self, db, writer, clock):
        relay = make_relay(db, InMemoryEventSink(fail_times=1), clock)
        event = await writer.enqueue("board.renamed", "b1", {})
        await relay.run_batch()

        assert await relay.cancel(event.id) is True

    async def test_cannot_cancel_terminal(self, db, writer, clock):
        relay = make_relay(db, InMemoryEventSink(), clock)
        event = await writer.enqueue("board.renamed", "b1", {})
        await relay.run_batch()

        assert await relay.cancel(event.id) is False
        assert (await relay.get(event.id)).status == OutboxStatus.PUBLISHED

    async def test_cancel_missing(self, db, clock):
        relay = make_relay(db, InMemoryEventSink(), clock)

        with pytest.raises(EntityNotFound):
            await relay.cancel("missing")


class TestStatsAndLoop:

    async def test_stats(self, db, writer, clock):
        relay = make_relay(db, InMemoryEventSink(fail_times=1), clock)
        await writer.enqueue("a", "b1", {})
        await writer.enqueue("b", "b2", {})
        await relay.run_batch()
        await writer.enqueue("c", "b3", {})

        stats = await relay.get_stats()

        assert stats["failed"] == 1
        assert stats["published"] == 1
        assert stats["pending"] == 1
        assert stats["dead_letter"] == 0

    async def test_polling_loop(self, db, writer):
        sink = InMemoryEventSink()
        relay = OutboxRelay(sink, db=db, poll_interval=0.01)
        event = await writer.enqueue("board.renamed", "b1", {})

        await relay.start()
        assert relay.is_running
        try:
            for _ in range(200):
                if sink.events:
                    break
                await asyncio.sleep(0.01)
        finally:
            await relay.stop()

        assert not relay.is_running
        assert sink.event_ids == [event.event_id]
