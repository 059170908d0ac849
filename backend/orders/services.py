from decimal import Decimal
from typing import Any, Dict, List, Optional
from fastapi import HTTPException, status
from backend.auth.dependencies import Principal
from backend.common.errors import InsufficientStockError, InvalidStateTransition, OrderNotFound
from backend.common.utils import money, now
from backend.config.settings import config_settings
from backend.inventory import services as inventory_services
from backend.inventory.repository import lock_order_row
from backend.inventory.utils import normalize_size_label
from backend.orders import repository as order_repo
from backend.orders.constants import logger
from backend.orders.state_machine import admin_transition, check_cancellable, mark_cancelled
from backend.orders.utils import compute_totals
from backend.orders.variants import PurchasableOrder, order_variant
from backend.payments.pipeline import ReconcileOutcome, emit_side_effects
from backend.payments.classifier import Classification
from backend.payments.repository import latest_payment_for_order
from backend.schema.full_schema import (
    AllocationMode, OrderKind, PaymentOption, PaymentStatus, ServiceOrderStatus,
)


def ensure_can_view(order, principal: Principal):
    # other users' orders look like missing ones
    if order.user_id != principal.user_id and not principal.is_admin:
        raise OrderNotFound("order not found", order_id=order.id)


async def load_variant(session, order_id: int, lock: bool = False) -> PurchasableOrder:
    if lock:
        order = await lock_order_row(session, order_id)
        if order is None:
            raise OrderNotFound("order not found", order_id=order_id)
    else:
        order = await order_repo.get_order(session, order_id)
    items = await order_repo.get_order_items(session, order_id)
    return order_variant(order, items)


async def _price_lines(session, items) -> List[Dict[str, Any]]:
    product_ids = sorted({int(it.product_id) for it in items})
    catalog = await order_repo.products_with_inventory(session, product_ids)
    missing = [pid for pid in product_ids if pid not in catalog]
    if missing:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail={"message": "unknown products", "product_ids": missing})

    lines = []
    for it in items:
        product = catalog[int(it.product_id)]
        lines.append({
            "product_id": int(it.product_id),
            "inventory_id": product["inventory_id"],
            "name": product["name"],
            "size": normalize_size_label(it.size),
            "quantity": int(it.quantity),
            "unit_price": money(product["price"]),
        })
    return lines


async def place_product_order(session, principal: Principal, items, voucher_code: Optional[str] = None):
    lines = await _price_lines(session, items)

    discount = Decimal("0")
    if voucher_code:
        voucher = await order_repo.get_active_voucher(session, voucher_code)
        if voucher is None:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="voucher is not valid")
        discount = money(voucher.discount_amount)

    totals = compute_totals(lines, discount=discount)
    order = await order_repo.create_order(
        session, user_id=principal.user_id, kind=OrderKind.PRODUCT, lines=lines, totals=totals,
        currency=config_settings.CURRENCY, payment_option=PaymentOption.FULL.value, voucher_code=voucher_code)

    logger.info("order.created", extra={"order_id": order.id, "kind": order.kind, "total": str(order.total_amount)})
    return order, await order_repo.get_order_items(session, order.id)


async def place_service_order(session, principal: Principal, description: str, items, payment_option: PaymentOption):
    lines = await _price_lines(session, items) if items else []
    # quoted later by an admin; until then only the description and reference lines exist
    order = await order_repo.create_order(
        session, user_id=principal.user_id, kind=OrderKind.SERVICE, lines=lines,
        totals={"subtotal": Decimal("0.00"), "discount": Decimal("0.00"), "delivery_fee": Decimal("0.00"),
                "vat_amount": Decimal("0.00"), "total_amount": Decimal("0.00")},
        currency=config_settings.CURRENCY, payment_option=PaymentOption(payment_option).value,
        service_description=description, status=ServiceOrderStatus.PENDING_QUOTE.value)

    logger.info("order.created", extra={"order_id": order.id, "kind": order.kind})
    return order, await order_repo.get_order_items(session, order.id)


async def quote_service_order(session, order_id: int, subtotal: Decimal, delivery_fee: Optional[Decimal] = None):
    variant = await load_variant(session, order_id, lock=True)
    order = variant.order
    if order.kind != OrderKind.SERVICE.value:
        raise InvalidStateTransition("only service orders are quoted", order_id=order_id)
    if order.status not in (ServiceOrderStatus.PENDING_QUOTE, ServiceOrderStatus.QUOTE_SENT):
        raise InvalidStateTransition("order can no longer be quoted", order_id=order_id)

    totals = compute_totals([{"unit_price": subtotal, "quantity": 1}],
                            delivery_fee=Decimal("0") if delivery_fee is None else delivery_fee)
    for key, value in totals.items():
        setattr(order, key, value)
    order.status = ServiceOrderStatus.QUOTE_SENT.value
    order.updated_at = now()
    await session.flush()
    logger.info("order.quoted", extra={"order_id": order_id, "total": str(order.total_amount)})
    return order


async def cancel_order(session, order_id: int, principal: Principal, reason: Optional[str] = None):
    """Cancel an order; a held allocation is released in the same transaction."""
    variant = await load_variant(session, order_id, lock=True)
    ensure_can_view(variant.order, principal)
    by_admin = principal.is_admin
    check_cancellable(variant, by_admin)

    if variant.order.allocation_mode == AllocationMode.HOLD.value:
        await inventory_services.release(session, order_id, note="order cancelled", actor_id=principal.user_id)
        variant = await load_variant(session, order_id, lock=True)

    mark_cancelled(variant, by_admin, reason)
    await session.flush()
    logger.info("order.cancelled", extra={"order_id": order_id, "by": variant.order.cancelled_by})
    return variant.order


async def transition_order(session, order_id: int, target: int):
    variant = await load_variant(session, order_id, lock=True)
    admin_transition(variant, target)
    await session.flush()
    return variant.order


async def retry_allocation(session, order_id: int) -> ReconcileOutcome:
    """Admin retry for an order flagged with insufficient stock after payment."""
    variant = await load_variant(session, order_id, lock=True)
    order = variant.order

    paid_in_full = order.down_payment_paid and order.balance_paid
    if not paid_in_full:
        raise InvalidStateTransition("order is not fully paid", order_id=order_id)
    if order.inventory_allocated:
        raise InvalidStateTransition("order is already allocated", order_id=order_id)

    try:
        result = await inventory_services.allocate(
            session, order_id, variant.line_items_for_allocation(), AllocationMode.CONSUME)
    except InsufficientStockError as exc:
        await session.refresh(order)
        await order_repo.flag_inventory(session, order_id, exc.message)
        raise

    order = await order_repo.get_order(session, order_id)
    messages = []
    payment = await latest_payment_for_order(session, order_id)
    if payment is not None and payment.status == PaymentStatus.RECEIVED:
        classification = Classification(order.payment_type) if order.payment_type else Classification.FULL
        messages = await emit_side_effects(session, order, variant.items, payment.id, classification,
                                            money(payment.amount_paid))
    logger.info("allocation.retry_succeeded", extra={"order_id": order_id})
    return ReconcileOutcome(order_id=order_id, note="allocated", credited=True, allocation=result.as_dict(),
                            side_effects=messages)


async def resolve_discrepancy(session, order_id: int, note: Optional[str], principal: Principal):
    order = await lock_order_row(session, order_id)
    if order is None:
        raise OrderNotFound("order not found", order_id=order_id)
    if order.inventory_flagged and not order.inventory_allocated:
        raise InvalidStateTransition("stock still missing; restock and retry allocation first", order_id=order_id)

    order.inventory_flagged = False
    order.needs_reconciliation = False
    order.reconciliation_note = f"resolved by {principal.user_id}: {note or ''}".strip()
    order.updated_at = now()
    await session.flush()
    logger.info("order.discrepancy_resolved", extra={"order_id": order_id, "by": principal.user_id})
    return order
