"""
Retention Janitor

Deletes aged terminal outbox rows. Published rows age out by
published_at, dead letters and cancellations by updated_at. Pending,
processing and failed rows are never touched.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..config import OutboxConfig
from ..database.adapter import DatabaseAdapter, get_database
from ..database.schema import OUTBOX_TABLE
from ..observability import create_span, record_counter
from .models import OutboxStatus

logger = logging.getLogger(__name__)


class RetentionJanitor:
    """Periodic deletion of published, dead-lettered and cancelled entries."""

    def __init__(
        self,
        db: Optional[DatabaseAdapter] = None,
        published_retention: Optional[timedelta] = None,
        dead_letter_retention: Optional[timedelta] = None,
        interval: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        config = OutboxConfig()
        self.published_retention = (
            published_retention if published_retention is not None else config.published_retention
        )
        self.dead_letter_retention = (
            dead_letter_retention if dead_letter_retention is not None else config.dead_letter_retention
        )
        self.interval = interval if interval is not None else config.janitor_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._db = db
        self._task: Optional[asyncio.Task] = None

    async def _get_db(self) -> DatabaseAdapter:
        if self._db is None:
            self._db = await get_database()
        return self._db

    async def sweep(self) -> int:
        """
        Delete terminal rows past their retention window.

        Returns:
            Number of rows deleted
        """
        db = await self._get_db()
        now = self._clock()

        with create_span("outbox.janitor.sweep") as span:
            async with db.transaction() as txn:
                published = await txn.fetch(
                    f"""
                    DELETE FROM {OUTBOX_TABLE}
                    WHERE status = $1 AND published_at < $2
                    RETURNING id
                    """,
                    OutboxStatus.PUBLISHED.value,
                    now - self.published_retention
                )
                expired = await txn.fetch(
                    f"""
                    DELETE FROM {OUTBOX_TABLE}
                    WHERE status IN ($1, $2) AND updated_at < $3
                    RETURNING id
                    """,
                    OutboxStatus.DEAD_LETTER.value,
                    OutboxStatus.CANCELLED.value,
                    now - self.dead_letter_retention
                )
            span.set_attribute("outbox.deleted", len(published) + len(expired))

        if published:
            record_counter("janitor_deleted_total", len(published), {"status": "published"})
        if expired:
            record_counter("janitor_deleted_total", len(expired), {"status": "dead_letter"})

        deleted = len(published) + len(expired)
        if deleted:
            logger.info(
                f"Retention sweep deleted {len(published)} published and "
                f"{len(expired)} dead-lettered/cancelled entries"
            )
        return deleted

    async def start(self):
        """Run sweep() every ``interval`` seconds in the background."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        while True:
            try:
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Retention sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval)
