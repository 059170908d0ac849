import asyncio
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy import and_, or_, select, update
from backend.background_workers.constants import (
    MAX_REDRIVE_ATTEMPTS, PUBLISH_BATCH, REDRIVE_BACKOFF_BASE, STALE_AFTER_SECONDS, logger,
)
from backend.common.utils import now
from backend.db.connection import async_session
from backend.schema.full_schema import OutboxEvent, OutboxEventStatus


def compute_backoff(attempt: int, base: float = REDRIVE_BACKOFF_BASE, cap: float = 3600.0) -> float:
    sec = base * (2 ** (attempt - 1))
    return min(sec, cap)


class OutboxPublisher:
    """Re-drives outbox rows the fast path never completed (crash between commit and publish, full queue)."""

    def __init__(
        self,
        publish: Callable[[str, Dict[str, Any]], Any],
        session_factory: Optional[Callable[[], Any]] = None,
        *,
        batch_size: int = PUBLISH_BATCH,
        poll_interval: float = 2.0,
        stale_after: float = STALE_AFTER_SECONDS,
        max_attempts: int = MAX_REDRIVE_ATTEMPTS,
    ):
        self.publish = publish
        self.session_factory = session_factory or async_session
        self.batch_size = batch_size
        self.poll_interval = poll_interval
        self.stale_after = stale_after
        self.max_attempts = max_attempts
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self.run())

    async def shutdown(self, timeout: float = 10.0):
        self._stop.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None

    async def run(self):
        logger.info("outbox_publisher.starting")
        while not self._stop.is_set():
            try:
                await self.process_batch()
            except Exception:
                logger.exception("outbox_publisher.loop_error")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("outbox_publisher.stopped")

    async def process_batch(self) -> int:
        """Claim stale PENDING rows, push their retry window forward, then publish them. Returns the count."""
        cur = now()
        cutoff = cur - timedelta(seconds=self.stale_after)

        async with self.session_factory() as session:
            async with session.begin():
                stmt = (
                    select(OutboxEvent.id, OutboxEvent.topic, OutboxEvent.payload, OutboxEvent.attempts)
                    .where(and_(
                        OutboxEvent.status == OutboxEventStatus.PENDING.value,
                        OutboxEvent.created_at <= cutoff,
                        or_(OutboxEvent.next_retry_at.is_(None), OutboxEvent.next_retry_at <= cur),
                    ))
                    .order_by(OutboxEvent.id)
                    .limit(self.batch_size)
                    .with_for_update(skip_locked=True)
                )
                rows = (await session.execute(stmt)).all()
                if not rows:
                    return 0

                messages: List[Dict[str, Any]] = []
                for outbox_id, topic, payload, attempts in rows:
                    attempts = int(attempts or 0) + 1
                    if attempts > self.max_attempts:
                        await session.execute(
                            update(OutboxEvent).where(OutboxEvent.id == outbox_id)
                            .values(status=OutboxEventStatus.FAILED.value, next_retry_at=None, updated_at=cur)
                        )
                        logger.error("outbox_publisher.gave_up", extra={"outbox_event_id": outbox_id, "topic": topic})
                        continue
                    await session.execute(
                        update(OutboxEvent).where(OutboxEvent.id == outbox_id)
                        .values(attempts=attempts,
                                next_retry_at=cur + timedelta(seconds=compute_backoff(attempts)),
                                updated_at=cur)
                    )
                    messages.append({"outbox_event_id": outbox_id, "topic": topic, "payload": payload})

        for message in messages:
            self.publish(message["topic"], message)
        if messages:
            logger.info("outbox_publisher.redriven", extra={"count": len(messages)})
        return len(messages)
