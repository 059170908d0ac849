from decimal import Decimal
import pytest
from backend.common.errors import InvalidStateTransition
from backend.orders.services import cancel_order, resolve_discrepancy, transition_order
from backend.schema.full_schema import ProductOrderStatus, ServiceOrderStatus, Voucher
from helpers import (
    admin, auth_headers, customer, fetch_order, make_product, make_product_order, make_service_order,
    OTHER_CUSTOMER_ID, url_prefix,
)


async def test_place_product_order_prices_server_side(ac_client, db_session, customer_headers):
    product_id, inv_id = await make_product(db_session, price="450.00", sizes={"M": 5, "L": 1})

    resp = await ac_client.post(f"{url_prefix}/orders", headers=customer_headers,
                                json={"items": [{"product_id": product_id, "size": " m ", "quantity": 2}]})
    assert resp.status_code == 201, resp.text
    data = resp.json()["data"]
    assert data["status"] == ProductOrderStatus.PROCESSING
    assert data["items"][0]["size"] == "M"
    assert data["items"][0]["inventory_id"] == inv_id
    assert Decimal(data["subtotal"]) == Decimal("900.00")
    # (900 + 100 delivery) * 1.12
    assert Decimal(data["total_amount"]) == Decimal("1120.00")
    assert len(data["reference"]) == 8


async def test_place_order_validation(ac_client, db_session, customer_headers):
    product_id, _ = await make_product(db_session, sizes={"M": 5})

    resp = await ac_client.post(f"{url_prefix}/orders", headers=customer_headers, json={"items": []})
    assert resp.status_code == 422

    resp = await ac_client.post(f"{url_prefix}/orders", headers=customer_headers,
                                json={"items": [{"product_id": 9999, "quantity": 1}]})
    assert resp.status_code == 404

    resp = await ac_client.post(f"{url_prefix}/orders", headers=customer_headers,
                                json={"items": [{"product_id": product_id, "size": "M"}], "voucher_code": "NOPE"})
    assert resp.status_code == 422

    resp = await ac_client.post(f"{url_prefix}/orders", json={"items": [{"product_id": product_id}]})
    assert resp.status_code in (401, 403)


async def test_voucher_discount_is_capped_at_subtotal(db_session):
    db_session.add(Voucher(code="BIG", discount_amount=Decimal("5000")))
    await db_session.commit()
    product_id, _ = await make_product(db_session, sizes={"M": 5})

    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}],
                                        voucher_code="BIG")
    order = await fetch_order(db_session, order_id)
    assert order.discount == Decimal("500.00")
    assert order.total_amount == Decimal("112.00")


async def test_orders_are_private(ac_client, db_session, customer_headers, admin_headers):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])

    resp = await ac_client.get(f"{url_prefix}/orders/{order_id}", headers=customer_headers)
    assert resp.status_code == 200

    resp = await ac_client.get(f"{url_prefix}/orders/{order_id}", headers=auth_headers(OTHER_CUSTOMER_ID))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "ORDER_NOT_FOUND"

    resp = await ac_client.get(f"{url_prefix}/orders/{order_id}", headers=admin_headers)
    assert resp.status_code == 200

    resp = await ac_client.post(f"{url_prefix}/orders/{order_id}/cancel", headers=auth_headers(OTHER_CUSTOMER_ID),
                                json={})
    assert resp.status_code == 404


async def test_customer_cancel_rules(db_session):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])

    order = await cancel_order(db_session, order_id, customer, "changed my mind")
    await db_session.commit()
    assert order.status == ProductOrderStatus.CANCELLED
    assert order.cancelled_by == "user"

    with pytest.raises(InvalidStateTransition):
        await cancel_order(db_session, order_id, customer)
    await db_session.rollback()


async def test_service_order_in_production_needs_admin_to_cancel(db_session):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_service_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])
    order = await fetch_order(db_session, order_id)
    order.status = ServiceOrderStatus.IN_PRODUCTION.value
    order.down_payment_paid = True
    await db_session.commit()

    with pytest.raises(InvalidStateTransition):
        await cancel_order(db_session, order_id, customer)
    await db_session.rollback()

    order = await cancel_order(db_session, order_id, admin, "customer called")
    await db_session.commit()
    assert order.status == ServiceOrderStatus.CANCELLED
    assert order.cancelled_by == "admin"


async def test_admin_transitions_only_move_forward(db_session):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_service_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])

    # guard: no down payment yet
    with pytest.raises(InvalidStateTransition):
        await transition_order(db_session, order_id, ServiceOrderStatus.IN_PRODUCTION)
    await db_session.rollback()

    order = await transition_order(db_session, order_id, ServiceOrderStatus.PENDING_DOWNPAYMENT)
    await db_session.commit()
    assert order.status == ServiceOrderStatus.PENDING_DOWNPAYMENT

    for target in (ServiceOrderStatus.QUOTE_SENT, ServiceOrderStatus.PENDING_DOWNPAYMENT,
                   ServiceOrderStatus.CANCELLED, 999):
        with pytest.raises(InvalidStateTransition):
            await transition_order(db_session, order_id, target)
        await db_session.rollback()


async def test_product_order_cannot_ship_unpaid(ac_client, db_session, admin_headers):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])

    resp = await ac_client.post(f"{url_prefix}/admin/orders/{order_id}/transition", headers=admin_headers,
                                json={"status": int(ProductOrderStatus.SHIPPED)})
    assert resp.status_code == 409
    assert resp.json()["error"]["details"]["message"] == "payment not received"


async def test_quote_service_order(ac_client, db_session, customer_headers, admin_headers):
    resp = await ac_client.post(f"{url_prefix}/orders/service", headers=customer_headers,
                                json={"description": "wedding barong, hand embroidered",
                                      "payment_option": "downpayment"})
    assert resp.status_code == 201, resp.text
    order_id = resp.json()["data"]["id"]
    assert resp.json()["data"]["status"] == ServiceOrderStatus.PENDING_QUOTE

    resp = await ac_client.post(f"{url_prefix}/admin/orders/{order_id}/quote", headers=customer_headers,
                                json={"subtotal": "2000"})
    assert resp.status_code == 403

    resp = await ac_client.post(f"{url_prefix}/admin/orders/{order_id}/quote", headers=admin_headers,
                                json={"subtotal": "2000", "delivery_fee": "0"})
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["status"] == ServiceOrderStatus.QUOTE_SENT
    assert Decimal(data["total_amount"]) == Decimal("2240.00")

    await transition_order(db_session, order_id, ServiceOrderStatus.PENDING_DOWNPAYMENT)
    await db_session.commit()
    resp = await ac_client.post(f"{url_prefix}/admin/orders/{order_id}/quote", headers=admin_headers,
                                json={"subtotal": "2500"})
    assert resp.status_code == 409


async def test_resolve_reconciliation_flag(db_session):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])
    order = await fetch_order(db_session, order_id)
    order.needs_reconciliation = True
    order.reconciliation_note = "unclassifiable payment"
    await db_session.commit()

    order = await resolve_discrepancy(db_session, order_id, "refunded by hand", admin)
    await db_session.commit()
    assert order.needs_reconciliation is False
    assert order.reconciliation_note == "resolved by 1: refunded by hand"


async def test_allocate_requires_full_payment(ac_client, db_session, admin_headers):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])

    resp = await ac_client.post(f"{url_prefix}/admin/orders/{order_id}/allocate", headers=admin_headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "INVALID_STATE_TRANSITION"

    resp = await ac_client.post(f"{url_prefix}/admin/orders/424242/allocate", headers=admin_headers)
    assert resp.status_code == 404
