from decimal import Decimal
from typing import Any, Dict, Iterable, Optional
from uuid import UUID
from backend.common.utils import money
from backend.config.settings import config_settings
from backend.orders.constants import ORDER_REFERENCE_LEN


def compute_totals(lines: Iterable[Dict[str, Any]], delivery_fee: Optional[Decimal] = None,
                   discount: Decimal = Decimal("0")) -> Dict[str, Decimal]:
    """Server side pricing: subtotal from unit prices, flat delivery, VAT on (subtotal - discount + delivery)."""
    subtotal = money(sum((money(it["unit_price"]) * int(it["quantity"]) for it in lines), Decimal("0")))
    delivery = money(config_settings.DELIVERY_FEE if delivery_fee is None else delivery_fee)
    discount = min(money(discount), subtotal)
    taxable = subtotal - discount + delivery
    vat = money(taxable * money(config_settings.VAT_PERCENT) / 100)
    return {
        "subtotal": subtotal,
        "discount": discount,
        "delivery_fee": delivery,
        "vat_amount": vat,
        "total_amount": money(taxable + vat),
    }


def order_reference(public_id) -> str:
    hex_id = public_id.hex if isinstance(public_id, UUID) else str(public_id).replace("-", "")
    return hex_id[-ORDER_REFERENCE_LEN:].upper()


def order_view(order, items=None) -> Dict[str, Any]:
    data = {
        "id": order.id,
        "public_id": str(order.public_id),
        "reference": order_reference(order.public_id),
        "kind": order.kind,
        "user_id": order.user_id,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_option": order.payment_option,
        "currency": order.currency,
        "subtotal": order.subtotal,
        "discount": order.discount,
        "delivery_fee": order.delivery_fee,
        "vat_amount": order.vat_amount,
        "total_amount": order.total_amount,
        "amount_paid": order.amount_paid,
        "down_payment_paid": order.down_payment_paid,
        "balance_paid": order.balance_paid,
        "payment_type": order.payment_type,
        "payment_session_id": order.payment_session_id,
        "inventory_allocated": order.inventory_allocated,
        "allocation_mode": order.allocation_mode,
        "allocated_items": order.allocated_items,
        "inventory_flagged": order.inventory_flagged,
        "inventory_flag_reason": order.inventory_flag_reason,
        "needs_reconciliation": order.needs_reconciliation,
        "reconciliation_note": order.reconciliation_note,
        "cancelled_by": order.cancelled_by,
        "cancelled_at": order.cancelled_at,
    }
    if items is not None:
        data["items"] = [
            {
                "product_id": it.product_id,
                "inventory_id": it.inventory_id,
                "name": it.name,
                "size": it.size,
                "quantity": it.quantity,
                "unit_price": it.unit_price,
            }
            for it in items
        ]
    return data
