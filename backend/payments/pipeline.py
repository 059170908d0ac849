"""Payment reconciliation pipeline.

One credited gateway payment goes through here exactly once, whichever path
reported it (webhook or sync). Everything runs in the caller's transaction;
the caller commits and then publishes `outcome.side_effects`.

Order of operations:
  lock order row -> credit the Payment row (PENDING -> RECEIVED, at most once)
  -> classify -> apply to the order -> allocate stock when the order is fully paid
  -> outbox rows for side effects (only when stock is settled).
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional
from backend.background_workers.repository import emit_outbox_event
from backend.common.errors import AmountUnclassifiable, InsufficientStockError, OrderNotFound
from backend.common.utils import money, now
from backend.inventory import services as inventory_services
from backend.inventory.repository import lock_order_row
from backend.orders.repository import flag_inventory, get_order, get_order_items
from backend.orders.variants import order_variant
from backend.payments import repository as pay_repo
from backend.payments.classifier import Classification, is_credited
from backend.payments.constants import TOPIC_CART_PRUNE, TOPIC_NOTIFY, TOPIC_RECEIPT, TOPIC_VOUCHER_CONSUME, logger
from backend.schema.full_schema import AllocationMode, OrderKind, PaymentStatus


@dataclass
class ReconcileOutcome:
    order_id: int
    note: str
    classification: Optional[str] = None
    credited: bool = False
    payment_id: Optional[int] = None
    allocation: Optional[Dict[str, Any]] = None
    inventory_flagged: bool = False
    side_effects: List[Dict[str, Any]] = field(default_factory=list)

    def as_result(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "note": self.note,
            "classification": self.classification,
            "credited": self.credited,
            "payment_id": self.payment_id,
            "allocation": self.allocation,
            "inventory_flagged": self.inventory_flagged,
            "side_effects": [s["topic"] for s in self.side_effects],
        }


async def _settle_stock(session, order, variant) -> Dict[str, Any]:
    """Allocate (or consume a hold) for a fully paid order. Raises InsufficientStockError."""
    if order.allocation_mode == AllocationMode.HOLD.value:
        await inventory_services.commit_hold(session, order.id)
        return {"allocated": True, "mode": AllocationMode.CONSUME.value, "from_hold": True}

    result = await inventory_services.allocate(
        session, order.id, variant.line_items_for_allocation(), AllocationMode.CONSUME)
    return result.as_dict()


async def emit_side_effects(session, order, items, payment_id: int, classification: Classification,
                             paid: Decimal) -> List[Dict[str, Any]]:
    base = {"order_id": order.id, "user_id": order.user_id, "payment_id": payment_id}
    planned = [
        (TOPIC_RECEIPT, f"{TOPIC_RECEIPT}:{payment_id}",
         {**base, "amount": str(money(paid)), "payment_type": classification.value}),
        (TOPIC_NOTIFY, f"{TOPIC_NOTIFY}:{payment_id}",
         {**base, "classification": classification.value, "status": order.status}),
    ]
    if order.kind == OrderKind.PRODUCT.value:
        lines = [{"product_id": it.product_id, "size": it.size} for it in items if it.product_id is not None]
        planned.append((TOPIC_CART_PRUNE, f"{TOPIC_CART_PRUNE}:{order.id}", {**base, "lines": lines}))
    if order.voucher_code:
        planned.append((TOPIC_VOUCHER_CONSUME, f"{TOPIC_VOUCHER_CONSUME}:{order.id}",
                        {**base, "voucher_code": order.voucher_code}))

    messages = []
    for topic, dedupe_key, payload in planned:
        outbox_id = await emit_outbox_event(
            session, topic=topic, payload=payload, dedupe_key=dedupe_key,
            aggregate_type="order", aggregate_id=order.id)
        if outbox_id is not None:
            messages.append({"outbox_event_id": outbox_id, "topic": topic, "payload": payload})
    return messages


async def reconcile_payment(session, *, order_id: int, provider_session_id: str, paid: Decimal,
                            provider_payment_id: Optional[str] = None, source: str = "webhook") -> ReconcileOutcome:
    order = await lock_order_row(session, order_id)
    if order is None:
        raise OrderNotFound("order not found", order_id=order_id)
    items = await get_order_items(session, order_id)
    variant = order_variant(order, items)
    paid = money(paid)

    existing = await pay_repo.get_payment_by_session(session, provider_session_id)
    purpose = existing.purpose if existing is not None else variant.amount_due()[1].value
    payment_id = await pay_repo.credit_payment(
        session, order_id=order_id, provider_session_id=provider_session_id, amount_paid=paid,
        purpose=purpose, provider_payment_id=provider_payment_id)
    if payment_id is None:
        logger.info("reconcile.payment_already_credited",
                    extra={"order_id": order_id, "session_id": provider_session_id, "source": source})
        return ReconcileOutcome(order_id=order_id, note="payment already credited")

    if order.status == variant.status_enum.CANCELLED:
        variant.flag_for_reconciliation(paid, f"payment of {paid} received after cancellation")
        await session.flush()
        logger.error("reconcile.payment_on_cancelled_order", extra={"order_id": order_id, "amount": str(paid)})
        return ReconcileOutcome(order_id=order_id, note="order cancelled; flagged for reconciliation",
                                payment_id=payment_id)

    if variant.is_fully_paid():
        # a second session paid for an order that owes nothing
        variant.flag_for_reconciliation(paid, f"overpayment of {paid} on an order already paid in full")
        order.updated_at = now()
        await session.flush()
        logger.error("reconcile.overpayment", extra={"order_id": order_id, "amount": str(paid), "source": source})
        return ReconcileOutcome(order_id=order_id, note="overpayment; flagged for reconciliation",
                                classification=Classification.UNCLASSIFIABLE.value, payment_id=payment_id)

    classification = variant.classify(paid)
    outcome = ReconcileOutcome(order_id=order_id, note="processed", classification=classification.value,
                               credited=is_credited(classification), payment_id=payment_id)
    try:
        variant.apply_classification(classification, paid)
    except AmountUnclassifiable as exc:
        logger.error("reconcile.unclassifiable_amount", extra={
            "order_id": order_id, "amount": exc.context.get("amount"), "total": str(variant.compute_expected_total()),
        })
        outcome.note = "unclassifiable amount; flagged for reconciliation"
    order.updated_at = now()
    await session.flush()

    if not outcome.credited:
        return outcome

    stock_settled = True
    if variant.requires_allocation(classification):
        try:
            outcome.allocation = await _settle_stock(session, order, variant)
        except InsufficientStockError as exc:
            stock_settled = False
            await session.refresh(order)
            await flag_inventory(session, order_id, exc.message)
            outcome.inventory_flagged = True
            outcome.note = "payment recorded; insufficient stock"
            logger.error("allocation.insufficient_stock", extra={
                "order_id": order_id, "inventory_id": exc.inventory_id, "size": exc.size, "requested": exc.requested,
            })

    if stock_settled:
        order = await get_order(session, order_id)
        outcome.side_effects = await emit_side_effects(session, order, items, payment_id, classification, paid)

    logger.info("reconcile.done", extra={
        "order_id": order_id, "classification": classification.value, "source": source,
        "flagged": outcome.inventory_flagged,
    })
    return outcome


async def reconcile_failure(session, *, order_id: int, provider_session_id: Optional[str]) -> ReconcileOutcome:
    order = await lock_order_row(session, order_id)
    if order is None:
        raise OrderNotFound("order not found", order_id=order_id)

    if provider_session_id:
        await pay_repo.mark_payment_failed(session, provider_session_id)

    # a late failure never overrides a received payment
    if order.payment_status == PaymentStatus.PENDING:
        order.payment_status = PaymentStatus.FAILED.value
        order.updated_at = now()
        await session.flush()
        logger.info("reconcile.payment_failed", extra={"order_id": order_id})
        return ReconcileOutcome(order_id=order_id, note="payment failed")
    return ReconcileOutcome(order_id=order_id, note="failure ignored; payment not pending")


def publish_side_effects(app, outcome: ReconcileOutcome):
    """After commit: hand outbox messages to the in-process workers. The outbox publisher covers misses."""
    publish = getattr(app.state, "pubsub_pub", None)
    if publish is None:
        return
    for message in outcome.side_effects:
        publish(message["topic"], message)
