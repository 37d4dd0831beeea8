"""
Analytics aggregation — batches analytics events into counter rows.

Events from the analytics queue are folded into an AnalyticsBuffer keyed
by (entity_type, entity_id, event_type). The worker creates one buffer at
startup, binds it to the analytics handler and hands the same instance to
its flush timer. The buffer is flushed into the `analytics_counters` table
when it reaches settings.analytics_batch_size distinct keys, on the timer
every settings.analytics_flush_seconds, and once more on shutdown.

Counting is at-least-once: a job retried after a failed flush may count
its own event twice.
"""
import logging
from collections import Counter
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import AnalyticsCounter
from services.queue_service import AnalyticsEventPayload

logger = logging.getLogger(__name__)

CounterKey = tuple[str, str, str]


class AnalyticsBuffer:
    """Event buffer owned by one worker and passed explicitly to its users."""

    def __init__(self, batch_size: Optional[int] = None):
        self.batch_size = batch_size or settings.analytics_batch_size
        self._counts: Counter[CounterKey] = Counter()
        self.flushed_events = 0

    def __len__(self) -> int:
        return len(self._counts)

    @property
    def pending_events(self) -> int:
        return sum(self._counts.values())

    def add(self, event: AnalyticsEventPayload) -> bool:
        """Buffer one event. Returns True when the buffer should be flushed."""
        self._counts[(event.entity_type, event.entity_id, event.event_type)] += 1
        return len(self._counts) >= self.batch_size

    def drain(self) -> Counter[CounterKey]:
        counts, self._counts = self._counts, Counter()
        return counts

    def restore(self, counts: Counter[CounterKey]) -> None:
        self._counts.update(counts)

    async def flush(self, db: AsyncSession) -> int:
        """
        Write buffered counts into analytics_counters. Returns rows touched.

        The buffer is swapped out before the first await, so concurrent
        flushes never write the same counts twice. On failure the counts
        are put back and the error propagates.
        """
        counts = self.drain()
        if not counts:
            return 0

        try:
            for (entity_type, entity_id, event_type), n in counts.items():
                res = await db.execute(
                    update(AnalyticsCounter)
                    .where(
                        AnalyticsCounter.entity_type == entity_type,
                        AnalyticsCounter.entity_id == entity_id,
                        AnalyticsCounter.event_type == event_type,
                    )
                    .values(count=AnalyticsCounter.count + n)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 0:
                    db.add(AnalyticsCounter(
                        entity_type=entity_type,
                        entity_id=entity_id,
                        event_type=event_type,
                        count=n,
                    ))
            await db.flush()
        except Exception:
            self.restore(counts)
            raise

        total = sum(counts.values())
        self.flushed_events += total
        logger.info(f"Analytics flushed: {total} event(s) into {len(counts)} counter(s)")
        return len(counts)


async def handle_analytics_event(
    db: AsyncSession, payload: AnalyticsEventPayload, *, buffer: AnalyticsBuffer
) -> dict:
    """Fold one event into the worker's buffer, flushing when the batch is full."""
    if buffer.add(payload):
        await buffer.flush(db)
    return {"buffered": len(buffer)}
