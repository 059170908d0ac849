from typing import Any, Dict, List, Optional
from sqlalchemy import and_, select, update
from backend.common.utils import now
from backend.db.utils import insert_ignore
from backend.schema.full_schema import OutboxEvent, OutboxEventStatus


async def emit_outbox_event(session, *, topic: str, payload: Dict[str, Any], dedupe_key: str,
                            aggregate_type: Optional[str] = None, aggregate_id: Optional[int] = None) -> Optional[int]:
    """Insert an outbox row inside the caller's transaction; None if the dedupe key already exists."""
    stmt = insert_ignore(
        session, OutboxEvent,
        {
            "topic": topic,
            "payload": payload,
            "aggregate_type": aggregate_type,
            "aggregate_id": aggregate_id,
            "dedupe_key": dedupe_key,
            "status": OutboxEventStatus.PENDING.value,
            "attempts": 0,
            "created_at": now(),
            "updated_at": now(),
        },
        index_elements=["dedupe_key"],
        returning=[OutboxEvent.id],
    )
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def mark_outbox_done(session, outbox_id: int) -> bool:
    stmt = (
        update(OutboxEvent)
        .where(and_(OutboxEvent.id == outbox_id, OutboxEvent.status == OutboxEventStatus.PENDING.value))
        .values(status=OutboxEventStatus.DONE.value, locked_until=None, last_error=None, updated_at=now())
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def list_outbox_for_aggregate(session, aggregate_id: int, aggregate_type: str = "order") -> List[OutboxEvent]:
    stmt = (
        select(OutboxEvent)
        .where(and_(OutboxEvent.aggregate_id == aggregate_id, OutboxEvent.aggregate_type == aggregate_type))
        .order_by(OutboxEvent.id)
    )
    res = await session.execute(stmt)
    return list(res.scalars().all())
