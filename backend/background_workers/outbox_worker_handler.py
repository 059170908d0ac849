from typing import Any, Callable, Dict, Optional
from sqlalchemy import and_, select, update
from backend.background_workers.constants import logger
from backend.background_workers.repository import mark_outbox_done
from backend.common.utils import money, now
from backend.db.connection import async_session
from backend.db.utils import insert_ignore
from backend.orders.repository import consume_voucher, prune_cart_lines
from backend.payments.constants import TOPIC_CART_PRUNE, TOPIC_NOTIFY, TOPIC_RECEIPT, TOPIC_VOUCHER_CONSUME
from backend.schema.full_schema import OutboxEvent, OutboxEventStatus, Orders, Receipt


def receipt_number(reference: str, payment_id: int) -> str:
    return f"RCPT-{reference}-{payment_id}"


class SideEffectHandler:
    """Executes one outbox message.

    The outbox row is flipped PENDING -> DONE in the same transaction as the
    effect, so a message delivered twice (fast path plus re-drive) runs once.
    """

    def __init__(self, session_factory: Optional[Callable[[], Any]] = None):
        self.session_factory = session_factory or async_session
        self._topics = {
            TOPIC_RECEIPT: self.issue_receipt,
            TOPIC_CART_PRUNE: self.prune_cart,
            TOPIC_VOUCHER_CONSUME: self.consume_voucher,
            TOPIC_NOTIFY: self.notify_customer,
        }

    async def handle(self, message: Dict[str, Any], w_name: str = "inline") -> bool:
        outbox_event_id = message.get("outbox_event_id")
        topic = message.get("topic")
        payload = message.get("payload") or {}
        handler = self._topics.get(topic)
        if handler is None:
            logger.warning("[%s] no handler for topic=%s", w_name, topic)
            return False

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    if not await mark_outbox_done(session, outbox_event_id):
                        logger.info("[%s] outbox_event=%s already done; skipping", w_name, outbox_event_id)
                        return False
                    await handler(session, payload)
        except Exception as exc:
            await self._record_failure(outbox_event_id, f"{type(exc).__name__}: {exc}")
            raise

        logger.info("[%s] outbox_event=%s topic=%s done", w_name, outbox_event_id, topic)
        return True

    async def _record_failure(self, outbox_event_id: int, error: str):
        async with self.session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(OutboxEvent)
                    .where(and_(OutboxEvent.id == outbox_event_id,
                                OutboxEvent.status == OutboxEventStatus.PENDING.value))
                    .values(last_error=error[:2000], updated_at=now())
                )

    async def issue_receipt(self, session, payload: Dict[str, Any]):
        order_id = int(payload["order_id"])
        payment_id = int(payload["payment_id"])
        reference = (await session.execute(select(Orders.reference).where(Orders.id == order_id))).scalar_one()
        stmt = insert_ignore(
            session, Receipt,
            {
                "receipt_number": receipt_number(reference, payment_id),
                "order_id": order_id,
                "payment_id": payment_id,
                "amount": money(payload.get("amount")),
                "payment_type": payload.get("payment_type"),
                "issued_at": now(),
            },
            index_elements=["payment_id"],
            returning=[Receipt.id],
        )
        receipt_id = (await session.execute(stmt)).scalar_one_or_none()
        if receipt_id is None:
            logger.info("receipt.exists", extra={"order_id": order_id, "payment_id": payment_id})

    async def prune_cart(self, session, payload: Dict[str, Any]):
        removed = await prune_cart_lines(session, int(payload["user_id"]), payload.get("lines") or [])
        logger.info("cart.pruned", extra={"order_id": payload.get("order_id"), "removed": removed})

    async def consume_voucher(self, session, payload: Dict[str, Any]):
        if not await consume_voucher(session, payload["voucher_code"]):
            # the order already carries the discount; an exhausted voucher is only reported
            logger.warning("voucher.consume_skipped", extra={"order_id": payload.get("order_id"),
                                                             "voucher_code": payload["voucher_code"]})

    async def notify_customer(self, session, payload: Dict[str, Any]):
        logger.info("notify.payment_received", extra={
            "order_id": payload.get("order_id"),
            "user_id": payload.get("user_id"),
            "classification": payload.get("classification"),
        })
