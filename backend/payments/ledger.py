"""Webhook idempotency ledger.

Every inbound gateway call leaves a `WebhookEvent` row, keyed by the gateway's
event id. Redeliveries hit the same row (attempts is bumped) and are
short-circuited once `processed` is set.
"""
from typing import Any, Dict, List, Optional
from sqlalchemy import and_, select, update
from backend.common.errors import DuplicateEvent
from backend.common.utils import now
from backend.db.utils import insert_ignore
from backend.payments.constants import PROVIDER
from backend.schema.full_schema import WebhookEvent


async def record_webhook_receipt(session, *, external_id: Optional[str], event_type: Optional[str], raw_body: str,
                                 payload: Optional[dict], signature: Optional[str], verified: bool,
                                 needs_review: bool = False, last_error: Optional[str] = None) -> WebhookEvent:
    values = {
        "provider": PROVIDER,
        "external_id": external_id,
        "event_type": event_type,
        "raw_body": raw_body,
        "payload": payload,
        "signature": signature,
        "verified": verified,
        "processed": False,
        "needs_review": needs_review,
        "last_error": last_error,
        "attempts": 1,
        "created_at": now(),
    }

    if external_id is None:
        event = WebhookEvent(**values)
        session.add(event)
        await session.flush()
        return event

    stmt = insert_ignore(session, WebhookEvent, values, index_elements=["external_id"], returning=[WebhookEvent.id])
    res = await session.execute(stmt)
    inserted_id = res.scalar_one_or_none()

    if inserted_id is None:
        # redelivery: keep the first body, count the attempt, upgrade verification if this copy verified
        bump = {"attempts": WebhookEvent.attempts + 1}
        if verified:
            bump["verified"] = True
        await session.execute(update(WebhookEvent).where(WebhookEvent.external_id == external_id).values(**bump))

    res = await session.execute(
        select(WebhookEvent).where(WebhookEvent.external_id == external_id).execution_options(populate_existing=True)
    )
    return res.scalar_one()


async def is_processed(session, external_id: str) -> bool:
    stmt = select(WebhookEvent.processed).where(WebhookEvent.external_id == external_id)
    res = await session.execute(stmt)
    return bool(res.scalar_one_or_none())


async def mark_processed(session, event_id: int, result: Dict[str, Any], order_id: Optional[int] = None,
                         needs_review: Optional[bool] = None) -> bool:
    """Processed is set once; a second caller sees rowcount 0."""
    values = {"processed": True, "processed_at": now(), "result": result, "last_error": None}
    if order_id is not None:
        values["order_id"] = order_id
    if needs_review is not None:
        values["needs_review"] = needs_review
    stmt = (
        update(WebhookEvent)
        .where(and_(WebhookEvent.id == event_id, WebhookEvent.processed.is_(False)))
        .values(**values)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1


async def mark_needs_review(session, event_id: int, reason: str):
    await session.execute(
        update(WebhookEvent).where(WebhookEvent.id == event_id).values(needs_review=True, last_error=reason)
    )


async def record_error(session, event_id: int, error: str):
    await session.execute(
        update(WebhookEvent).where(WebhookEvent.id == event_id).values(last_error=error[:2000])
    )


async def list_events(session, verified: Optional[bool] = None, processed: Optional[bool] = None,
                      needs_review: Optional[bool] = None, limit: int = 100, offset: int = 0) -> List[WebhookEvent]:
    stmt = select(WebhookEvent)
    if verified is not None:
        stmt = stmt.where(WebhookEvent.verified.is_(verified))
    if processed is not None:
        stmt = stmt.where(WebhookEvent.processed.is_(processed))
    if needs_review is not None:
        stmt = stmt.where(WebhookEvent.needs_review.is_(needs_review))
    stmt = stmt.order_by(WebhookEvent.id.desc()).limit(limit).offset(offset)
    res = await session.execute(stmt)
    return list(res.scalars().all())


async def ensure_unprocessed(session, external_id: str):
    if await is_processed(session, external_id):
        raise DuplicateEvent("duplicate", note="duplicate", external_id=external_id)
