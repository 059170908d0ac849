from decimal import Decimal
from typing import Any, Dict, Optional
from backend.auth.dependencies import Principal
from backend.common.errors import GatewayUnavailable, InvalidStateTransition, OrderNotFound
from backend.common.retries import retry_with_db_circuit
from backend.common.utils import from_centavos, money
from backend.config.settings import config_settings
from backend.inventory import services as inventory_services
from backend.orders import repository as order_repo
from backend.orders.services import ensure_can_view, load_variant
from backend.orders.utils import order_reference, order_view
from backend.orders.variants import ProductOrder, PurchasableOrder
from backend.payments import gateway
from backend.payments import repository as pay_repo
from backend.payments.constants import logger
from backend.payments.gateway import PayMongoClient
from backend.payments.pipeline import ReconcileOutcome, reconcile_failure, reconcile_payment
from backend.schema.full_schema import (
    AllocationMode, PaymentOption, PaymentStatus, ServiceOrderStatus,
)


def _ensure_payable(variant: PurchasableOrder):
    order = variant.order
    if variant.is_terminal():
        raise InvalidStateTransition(f"order is {variant.status_name()}", order_id=order.id)

    if isinstance(variant, ProductOrder):
        if order.payment_status == PaymentStatus.RECEIVED:
            raise InvalidStateTransition("order is already paid", order_id=order.id)
        return

    status = ServiceOrderStatus(order.status)
    if order.balance_paid or money(order.total_amount) <= 0:
        raise InvalidStateTransition("nothing is due on this order", order_id=order.id)
    if order.payment_option == PaymentOption.FULL.value or not order.down_payment_paid:
        if status not in (ServiceOrderStatus.QUOTE_SENT, ServiceOrderStatus.PENDING_DOWNPAYMENT):
            raise InvalidStateTransition(f"payment not expected in {status.name}", order_id=order.id)
    elif status != ServiceOrderStatus.PENDING_BALANCE:
        raise InvalidStateTransition(f"balance not due in {status.name}", order_id=order.id)


async def _return_hold(session, order_id: int):
    # the checkout never opened; the stock goes back and the order may hold again
    try:
        await inventory_services.release(session, order_id, note="checkout session not opened", reopen=True)
        await session.commit()
        logger.warning("paymongo.checkout_hold_returned", extra={"order_id": order_id})
    except Exception as exc:
        await session.rollback()
        logger.error("paymongo.checkout_hold_return_failed", extra={"order_id": order_id},
                     exc_info=(type(exc), exc, exc.__traceback__))


async def create_checkout(session, order_id: int, principal: Principal, client: PayMongoClient) -> Dict[str, Any]:
    """Open a gateway checkout session for whatever the order currently owes.

    Database work happens before and after the gateway call, never across it. An
    order with an open checkout for the same amount gets that session back, so one
    payment purpose never has two live sessions. A hold taken here is returned if
    the gateway call fails.
    """
    variant = await load_variant(session, order_id, lock=True)
    ensure_can_view(variant.order, principal)
    _ensure_payable(variant)
    amount, purpose = variant.amount_due()
    order = variant.order
    reference = order_reference(order.public_id)

    open_payment = await pay_repo.open_payment_for_order(session, order_id, purpose.value)
    if open_payment is not None and money(open_payment.amount) == amount:
        session_id = open_payment.provider_session_id
        checkout_url = open_payment.checkout_url
        await session.commit()
        logger.info("paymongo.checkout_reused", extra={"order_id": order_id, "session_id": session_id})
        return {
            "order_id": order_id,
            "reference": reference,
            "session_id": session_id,
            "checkout_url": checkout_url,
            "amount": amount,
            "purpose": purpose.value,
        }

    held = False
    if (config_settings.CHECKOUT_HOLD_INVENTORY and isinstance(variant, ProductOrder)
            and not order.inventory_allocated):
        await inventory_services.allocate(session, order.id, variant.line_items_for_allocation(), AllocationMode.HOLD)
        held = True

    description = f"Order {reference} ({purpose.value})"
    currency = order.currency
    await session.commit()

    success_url = f"{config_settings.SERVER_URL}/checkout/success?ref={reference}"
    cancel_url = f"{config_settings.SERVER_URL}/checkout/cancel?ref={reference}"
    try:
        resp = await client.create_checkout_session(
            line_items=[gateway.line_item(description, amount, currency=currency)],
            reference_number=reference,
            description=description,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"order_id": str(order_id), "order_reference": reference, "purpose": purpose.value},
        )
        data = resp.get("data") or {}
        session_id = data.get("id")
        checkout_url = (data.get("attributes") or {}).get("checkout_url")
        if not session_id:
            logger.error("paymongo.checkout_missing_id", extra={"order_id": order_id})
            raise GatewayUnavailable("gateway returned no checkout session", order_id=order_id)
    except GatewayUnavailable:
        if held:
            await _return_hold(session, order_id)
        raise

    await order_repo.set_payment_session(session, order_id, session_id)
    await pay_repo.create_payment(session, order_id=order_id, provider_session_id=session_id,
                                  purpose=purpose.value, amount=amount, checkout_url=checkout_url)
    await session.commit()

    logger.info("paymongo.checkout_created", extra={"order_id": order_id, "purpose": purpose.value, "amount": str(amount)})
    return {
        "order_id": order_id,
        "reference": reference,
        "session_id": session_id,
        "checkout_url": checkout_url,
        "amount": amount,
        "purpose": purpose.value,
    }


@retry_with_db_circuit()
async def _reconcile_session(session, order_id: int, session_id: str, paid: Decimal,
                             provider_payment_id: Optional[str], failed: bool) -> ReconcileOutcome:
    try:
        if failed:
            outcome = await reconcile_failure(session, order_id=order_id, provider_session_id=session_id)
        else:
            outcome = await reconcile_payment(session, order_id=order_id, provider_session_id=session_id, paid=paid,
                                              provider_payment_id=provider_payment_id, source="sync")
        await session.commit()
        return outcome
    except Exception:
        await session.rollback()
        raise


async def sync_order(session, order_id: int, principal: Principal, client: PayMongoClient):
    """Poll the gateway for the order's checkout session and feed the result through the same pipeline."""
    order = await order_repo.get_order(session, order_id)
    ensure_can_view(order, principal)
    session_id = order.payment_session_id
    # no transaction stays open across the gateway call
    await session.commit()

    if not session_id:
        return None, order_view(order)

    resp = await client.retrieve_checkout_session(session_id)
    resource = resp.get("data") or {}
    try:
        paid = gateway.paid_amount(resource)
    except ValueError as exc:
        logger.error("paymongo.malformed_session", extra={"order_id": order_id, "session_id": session_id})
        raise GatewayUnavailable("gateway returned a malformed checkout session", session_id=session_id) from exc
    payments = gateway.session_payments(resource)
    any_failed = any((p.get("attributes") or {}).get("status") == "failed" for p in payments)

    outcome = None
    if paid > 0:
        outcome = await _reconcile_session(session, order_id, session_id, paid,
                                           gateway.first_paid_payment_id(resource), failed=False)
    elif any_failed:
        outcome = await _reconcile_session(session, order_id, session_id, Decimal("0"), None, failed=True)

    order = await order_repo.get_order(session, order_id)
    items = await order_repo.get_order_items(session, order_id)
    await session.commit()
    logger.info("paymongo.sync", extra={"order_id": order_id, "paid": str(paid),
                                        "note": outcome.note if outcome else "nothing to apply"})
    return outcome, order_view(order, items)


async def verify_session(session, session_id: str, principal: Principal, client: PayMongoClient) -> Dict[str, Any]:
    order = await order_repo.find_order_for_session(session, session_id)
    if order is None:
        raise OrderNotFound("no order for this checkout session", session_id=session_id)
    ensure_can_view(order, principal)
    await session.commit()

    resp = await client.retrieve_checkout_session(session_id)
    resource = resp.get("data") or {}
    attrs = gateway.session_attributes(resource)
    try:
        paid = gateway.paid_amount(resource)
        payments = [
            {
                "id": p.get("id"),
                "status": (p.get("attributes") or {}).get("status"),
                "amount": from_centavos((p.get("attributes") or {}).get("amount")),
            }
            for p in gateway.session_payments(resource)
        ]
    except ValueError as exc:
        raise GatewayUnavailable("gateway returned a malformed checkout session", session_id=session_id) from exc
    return {
        "session_id": session_id,
        "order_id": order.id,
        "gateway_status": attrs.get("status"),
        "paid_amount": paid,
        "payments": payments,
    }
