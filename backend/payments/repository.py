from decimal import Decimal
from typing import Optional
from sqlalchemy import and_, select, update
from uuid6 import uuid7
from backend.common.utils import now
from backend.db.utils import insert_ignore
from backend.payments.constants import PROVIDER
from backend.schema.full_schema import Payment, PaymentStatus

CREDITABLE = (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value)


async def create_payment(session, *, order_id: int, provider_session_id: str, purpose: str, amount: Decimal,
                         checkout_url: Optional[str]) -> Payment:
    payment = Payment(
        order_id=order_id,
        provider=PROVIDER,
        provider_session_id=provider_session_id,
        purpose=purpose,
        amount=amount,
        checkout_url=checkout_url,
    )
    session.add(payment)
    await session.flush()
    return payment


async def get_payment_by_session(session, provider_session_id: str) -> Optional[Payment]:
    stmt = select(Payment).where(Payment.provider_session_id == provider_session_id).execution_options(populate_existing=True)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def open_payment_for_order(session, order_id: int, purpose: str) -> Optional[Payment]:
    """The still PENDING checkout for this order and purpose, if any."""
    stmt = (
        select(Payment)
        .where(and_(Payment.order_id == order_id, Payment.purpose == purpose,
                    Payment.status == PaymentStatus.PENDING.value))
        .order_by(Payment.id.desc()).limit(1)
    )
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def latest_payment_for_order(session, order_id: int) -> Optional[Payment]:
    stmt = select(Payment).where(Payment.order_id == order_id).order_by(Payment.id.desc()).limit(1)
    res = await session.execute(stmt)
    return res.scalar_one_or_none()


async def credit_payment(session, *, order_id: int, provider_session_id: str, amount_paid: Decimal,
                         purpose: str, provider_payment_id: Optional[str] = None) -> Optional[int]:
    """PENDING/FAILED -> RECEIVED for one gateway session; returns the payment id, or None if already credited.

    Sessions created outside this service (or lost before the row was written) get a row on the fly.
    """
    paid_at = now()
    stmt = (
        update(Payment)
        .where(and_(Payment.provider_session_id == provider_session_id, Payment.status.in_(CREDITABLE)))
        .values(status=PaymentStatus.RECEIVED.value, amount_paid=amount_paid,
                provider_payment_id=provider_payment_id, paid_at=paid_at)
        .returning(Payment.id)
    )
    res = await session.execute(stmt)
    payment_id = res.scalar_one_or_none()
    if payment_id is not None:
        return payment_id

    if await get_payment_by_session(session, provider_session_id) is not None:
        return None

    ins = insert_ignore(
        session, Payment,
        {
            "public_id": uuid7(),
            "order_id": order_id,
            "provider": PROVIDER,
            "provider_session_id": provider_session_id,
            "provider_payment_id": provider_payment_id,
            "purpose": purpose,
            "amount": amount_paid,
            "amount_paid": amount_paid,
            "status": PaymentStatus.RECEIVED.value,
            "paid_at": paid_at,
        },
        index_elements=["provider_session_id"],
        returning=[Payment.id],
    )
    res = await session.execute(ins)
    return res.scalar_one_or_none()


async def mark_payment_failed(session, provider_session_id: str) -> bool:
    stmt = (
        update(Payment)
        .where(and_(Payment.provider_session_id == provider_session_id,
                    Payment.status == PaymentStatus.PENDING.value))
        .values(status=PaymentStatus.FAILED.value)
    )
    res = await session.execute(stmt)
    return res.rowcount == 1
