from typing import Optional
from backend.common.errors import InvalidStateTransition
from backend.common.utils import money, now
from backend.orders.constants import logger
from backend.orders.variants import PurchasableOrder, ProductOrder, ServiceOrder
from backend.schema.full_schema import AllocationMode, PaymentStatus, ProductOrderStatus, ServiceOrderStatus

CANCELLED_BY_USER = "user"
CANCELLED_BY_ADMIN = "admin"


def _service_guard(variant: ServiceOrder, target: ServiceOrderStatus) -> Optional[str]:
    order = variant.order
    if target in (ServiceOrderStatus.QUOTE_SENT, ServiceOrderStatus.PENDING_DOWNPAYMENT):
        if money(order.total_amount) <= 0:
            return "order has not been quoted"
    if target in (ServiceOrderStatus.IN_PRODUCTION, ServiceOrderStatus.PENDING_BALANCE):
        if not order.down_payment_paid:
            return "down payment not received"
    if target in (ServiceOrderStatus.PENDING_FINAL_VERIFICATION, ServiceOrderStatus.COMPLETED):
        if not (order.down_payment_paid and order.balance_paid):
            return "order is not fully paid"
    return None


def _product_guard(variant: ProductOrder, target: ProductOrderStatus) -> Optional[str]:
    if target >= ProductOrderStatus.ACCEPTED and variant.order.payment_status != PaymentStatus.RECEIVED:
        return "payment not received"
    return None


def admin_transition(variant: PurchasableOrder, target: int) -> int:
    """Move an order forward (never backward). Cancellation goes through `cancel`."""
    status_enum = variant.status_enum
    try:
        target = status_enum(int(target))
    except ValueError:
        raise InvalidStateTransition("unknown status", order_id=variant.id, target=target)

    current = status_enum(int(variant.order.status))
    if target == status_enum.CANCELLED:
        raise InvalidStateTransition("use the cancel operation", order_id=variant.id)
    if variant.is_terminal():
        raise InvalidStateTransition(f"order is {current.name}", order_id=variant.id, target=target.name)
    if target <= current:
        raise InvalidStateTransition(
            f"cannot move from {current.name} to {target.name}", order_id=variant.id, target=target.name)

    if isinstance(variant, ServiceOrder):
        reason = _service_guard(variant, target)
    else:
        reason = _product_guard(variant, target)
    if reason:
        raise InvalidStateTransition(reason, order_id=variant.id, current=current.name, target=target.name)

    variant.order.status = int(target)
    variant.order.updated_at = now()
    logger.info("order.transition", extra={"order_id": variant.id, "from": current.name, "to": target.name})
    return int(target)


def check_cancellable(variant: PurchasableOrder, by_admin: bool):
    order = variant.order
    if variant.is_terminal():
        raise InvalidStateTransition(f"order is {variant.status_name()}", order_id=variant.id)

    if order.allocation_mode == AllocationMode.CONSUME.value:
        raise InvalidStateTransition("stock already consumed for this order", order_id=variant.id)

    if by_admin:
        return

    if isinstance(variant, ProductOrder):
        if order.status != ProductOrderStatus.PROCESSING or order.payment_status != PaymentStatus.PENDING:
            raise InvalidStateTransition("order can no longer be cancelled", order_id=variant.id)
    elif order.status >= ServiceOrderStatus.IN_PRODUCTION:
        raise InvalidStateTransition("order is already in production", order_id=variant.id)


def mark_cancelled(variant: PurchasableOrder, by_admin: bool, reason: Optional[str] = None):
    order = variant.order
    order.status = int(variant.status_enum.CANCELLED)
    order.cancelled_by = CANCELLED_BY_ADMIN if by_admin else CANCELLED_BY_USER
    order.cancellation_reason = reason
    order.cancelled_at = now()
    order.updated_at = now()
