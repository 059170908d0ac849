from decimal import Decimal
from sqlalchemy import select
from backend.background_workers.repository import list_outbox_for_aggregate
from backend.config.settings import config_settings
from backend.inventory import repository as inv_repo
from backend.payments import ledger
from backend.payments.constants import TOPIC_CART_PRUNE, TOPIC_NOTIFY, TOPIC_RECEIPT, TOPIC_VOUCHER_CONSUME
from backend.schema.full_schema import (
    InventoryTxnKind, Payment, PaymentOption, PaymentStatus, ProductOrderStatus, ServiceOrderStatus, Voucher,
)
from helpers import (
    fetch_order, make_product, make_product_order, make_service_order, open_session, session_resource, signed,
    size_map, webhook_event, webhook_path,
)


async def post_event(ac_client, payload, secret=None):
    raw, headers = signed(payload) if secret is None else signed(payload, secret)
    return await ac_client.post(webhook_path, content=raw, headers=headers)


async def outbox_topics(session, order_id):
    rows = await list_outbox_for_aggregate(session, order_id)
    await session.commit()
    return sorted(r.topic for r in rows)


async def allocation_txns(session, order_id):
    rows = await inv_repo.list_transactions(session, order_id=order_id, kind=InventoryTxnKind.ALLOCATE.value)
    await session.commit()
    return rows


async def event_row(session, external_id):
    events = [e for e in await ledger.list_events(session) if e.external_id == external_id]
    await session.commit()
    return events[0] if events else None


async def test_full_payment_on_quoted_service_order(ac_client, db_session):
    product_id, inv_id = await make_product(db_session, sizes={"M": 5})
    order_id = await make_service_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])
    order = await fetch_order(db_session, order_id)
    assert order.total_amount == Decimal("1232.00")
    await open_session(db_session, order_id, "cs_full_1", "1232.00")

    resp = await post_event(ac_client, webhook_event("evt_full_1", session_resource("cs_full_1", 123200)))
    assert resp.status_code == 200, resp.text
    body = resp.json()["data"]
    assert body["note"] == "processed"
    assert body["result"]["classification"] == "full"

    order = await fetch_order(db_session, order_id)
    assert order.down_payment_paid and order.balance_paid
    assert order.status == ServiceOrderStatus.PENDING_FINAL_VERIFICATION
    assert order.payment_status == PaymentStatus.RECEIVED
    assert order.inventory_allocated is True
    assert order.amount_paid == Decimal("1232.00")

    txns = await allocation_txns(db_session, order_id)
    assert [(t.signed_qty, t.size_breakdown) for t in txns] == [(-1, {"M": 1})]
    assert await size_map(db_session, inv_id) == {"M": 4}
    assert await outbox_topics(db_session, order_id) == sorted([TOPIC_RECEIPT, TOPIC_NOTIFY])

    event = await event_row(db_session, "evt_full_1")
    assert event.processed and event.verified and not event.needs_review
    assert event.order_id == order_id


async def test_duplicate_delivery_moves_stock_once(ac_client, db_session):
    product_id, inv_id = await make_product(db_session, sizes={"M": 5})
    order_id = await make_service_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 2}])
    await open_session(db_session, order_id, "cs_dup", "1232.00")
    payload = webhook_event("evt_dup", session_resource("cs_dup", 123200))

    first = await post_event(ac_client, payload)
    second = await post_event(ac_client, payload)

    assert first.status_code == 200 and second.status_code == 200
    assert second.json()["data"]["note"] == "duplicate"
    assert len(await allocation_txns(db_session, order_id)) == 1
    assert await size_map(db_session, inv_id) == {"M": 3}
    event = await event_row(db_session, "evt_dup")
    assert event.attempts == 2


async def test_same_payment_under_new_event_id_is_credited_once(ac_client, db_session):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_service_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])
    await open_session(db_session, order_id, "cs_twice", "1232.00")

    await post_event(ac_client, webhook_event("evt_a", session_resource("cs_twice", 123200)))
    resp = await post_event(ac_client, webhook_event("evt_b", session_resource("cs_twice", 123200)))

    assert resp.json()["data"]["note"] == "payment already credited"
    order = await fetch_order(db_session, order_id)
    assert order.amount_paid == Decimal("1232.00")
    assert len(await allocation_txns(db_session, order_id)) == 1


async def test_bad_signature_is_acknowledged_and_flagged(ac_client, db_session):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_service_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])
    await open_session(db_session, order_id, "cs_forged", "1232.00")

    resp = await post_event(ac_client, webhook_event("evt_forged", session_resource("cs_forged", 123200)),
                            secret="not-the-secret")

    assert resp.status_code == 200
    assert resp.json()["error"]["code"] == "SIGNATURE_VERIFICATION_FAILED"
    event = await event_row(db_session, "evt_forged")
    assert event.needs_review and not event.processed and not event.verified
    order = await fetch_order(db_session, order_id)
    assert order.payment_status == PaymentStatus.PENDING
    assert order.inventory_allocated is False


async def test_missing_secret_processes_unverified(ac_client, db_session, monkeypatch):
    monkeypatch.setattr(config_settings, "PAYMONGO_WEBHOOK_SECRET", None)
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_service_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])
    await open_session(db_session, order_id, "cs_nosecret", "1232.00")

    resp = await post_event(ac_client, webhook_event("evt_nosecret", session_resource("cs_nosecret", 123200)))

    assert resp.status_code == 200
    event = await event_row(db_session, "evt_nosecret")
    assert event.processed and not event.verified
    assert event.result["signature"] == "unverified"
    assert event.needs_review
    queue = await ledger.list_events(db_session, needs_review=True)
    await db_session.commit()
    assert [e.external_id for e in queue] == ["evt_nosecret"]
    order = await fetch_order(db_session, order_id)
    assert order.status == ServiceOrderStatus.PENDING_FINAL_VERIFICATION


async def test_unparseable_body_and_missing_event_id(ac_client, db_session):
    resp = await ac_client.post(webhook_path, content=b"{not json", headers={"Content-Type": "application/json"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "UNPARSEABLE_BODY"

    # parseable but without an id: kept for review and acknowledged
    raw, headers = signed({"data": {"attributes": {"type": "checkout_session.payment.paid"}}})
    resp = await ac_client.post(webhook_path, content=raw, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["note"] == "missing event id"

    events = await ledger.list_events(db_session, needs_review=True)
    await db_session.commit()
    assert len(events) == 2
    assert all(e.external_id is None and not e.processed for e in events)


async def test_down_payment_then_balance(ac_client, db_session, admin_headers):
    product_id, inv_id = await make_product(db_session, sizes={"L": 3})
    order_id = await make_service_order(db_session, [{"product_id": product_id, "size": "L", "quantity": 1}],
                                        payment_option=PaymentOption.DOWNPAYMENT)
    await open_session(db_session, order_id, "cs_dp", "616.00", purpose="downpayment")

    resp = await post_event(ac_client, webhook_event("evt_dp", session_resource("cs_dp", 61600)))
    assert resp.json()["data"]["result"]["classification"] == "downpayment"
    order = await fetch_order(db_session, order_id)
    assert order.down_payment_paid and not order.balance_paid
    assert order.status == ServiceOrderStatus.QUOTE_SENT
    assert order.inventory_allocated is False

    resp = await ac_client.post(f"/api/v1/admin/orders/{order_id}/transition", headers=admin_headers,
                                json={"status": int(ServiceOrderStatus.PENDING_BALANCE)})
    assert resp.status_code == 200, resp.text

    await open_session(db_session, order_id, "cs_bal", "616.00", purpose="balance")
    resp = await post_event(ac_client, webhook_event("evt_bal", session_resource("cs_bal", 61600, payment_id="pay_2")))
    assert resp.json()["data"]["result"]["classification"] == "remaining_balance"

    order = await fetch_order(db_session, order_id)
    assert order.balance_paid
    assert order.status == ServiceOrderStatus.PENDING_FINAL_VERIFICATION
    assert order.amount_paid == Decimal("1232.00")
    assert order.inventory_allocated is True
    assert await size_map(db_session, inv_id) == {"L": 2}


async def test_insufficient_stock_flags_paid_order(ac_client, db_session, admin_headers):
    product_id, inv_id = await make_product(db_session, sizes={"M": 0, "S": 4})
    order_id = await make_service_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])
    await open_session(db_session, order_id, "cs_short", "1232.00")

    resp = await post_event(ac_client, webhook_event("evt_short", session_resource("cs_short", 123200)))
    assert resp.status_code == 200
    assert resp.json()["data"]["result"]["inventory_flagged"] is True

    order = await fetch_order(db_session, order_id)
    assert order.status == ServiceOrderStatus.PENDING_FINAL_VERIFICATION
    assert order.down_payment_paid and order.balance_paid
    assert order.inventory_allocated is False
    assert order.inventory_flagged is True
    assert await allocation_txns(db_session, order_id) == []
    # no side effects until stock is settled
    assert await outbox_topics(db_session, order_id) == []

    resp = await ac_client.get("/api/v1/admin/orders/discrepancies", headers=admin_headers)
    assert [o["id"] for o in resp.json()["data"]["orders"]] == [order_id]

    resp = await ac_client.post(f"/api/v1/admin/orders/{order_id}/resolve", headers=admin_headers, json={"note": "x"})
    assert resp.status_code == 409

    resp = await ac_client.post(f"/api/v1/admin/orders/{order_id}/allocate", headers=admin_headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "INSUFFICIENT_STOCK"

    resp = await ac_client.post(f"/api/v1/admin/inventory/{inv_id}/restock", headers=admin_headers,
                                json={"sizes": {"M": 2}})
    assert resp.status_code == 200, resp.text

    resp = await ac_client.post(f"/api/v1/admin/orders/{order_id}/allocate", headers=admin_headers)
    assert resp.status_code == 200, resp.text
    assert sorted(resp.json()["data"]["side_effects"]) == sorted([TOPIC_RECEIPT, TOPIC_NOTIFY])

    order = await fetch_order(db_session, order_id)
    assert order.inventory_allocated is True and order.inventory_flagged is False
    assert await size_map(db_session, inv_id) == {"M": 1, "S": 4}

    resp = await ac_client.get("/api/v1/admin/orders/discrepancies", headers=admin_headers)
    assert resp.json()["data"]["orders"] == []


async def test_product_order_payment_emits_cart_and_voucher_effects(ac_client, db_session):
    db_session.add(Voucher(code="SAVE100", discount_amount=Decimal("100"), max_uses=1))
    await db_session.commit()
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 2}],
                                        voucher_code="SAVE100")
    order = await fetch_order(db_session, order_id)
    assert order.total_amount == Decimal("1120.00")
    await open_session(db_session, order_id, "cs_prod", "1120.00")

    resp = await post_event(ac_client, webhook_event("evt_prod", session_resource("cs_prod", 112000)))
    assert resp.status_code == 200, resp.text

    order = await fetch_order(db_session, order_id)
    assert order.status == ProductOrderStatus.ACCEPTED
    assert order.payment_status == PaymentStatus.RECEIVED
    assert order.inventory_allocated is True
    assert await outbox_topics(db_session, order_id) == sorted(
        [TOPIC_RECEIPT, TOPIC_NOTIFY, TOPIC_CART_PRUNE, TOPIC_VOUCHER_CONSUME])


async def test_underpaid_product_order_needs_reconciliation(ac_client, db_session):
    product_id, inv_id = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 2}])
    await open_session(db_session, order_id, "cs_under", "1232.00")

    resp = await post_event(ac_client, webhook_event("evt_under", session_resource("cs_under", 50000)))
    assert resp.json()["data"]["result"]["classification"] == "unclassifiable"
    assert resp.json()["data"]["note"] == "unclassifiable amount; flagged for reconciliation"

    order = await fetch_order(db_session, order_id)
    assert order.needs_reconciliation is True
    assert order.status == ProductOrderStatus.PROCESSING
    assert order.inventory_allocated is False
    assert await size_map(db_session, inv_id) == {"M": 5}


async def test_failed_then_paid(ac_client, db_session):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 2}])
    await open_session(db_session, order_id, "cs_retry", "1232.00")

    failed = session_resource("cs_retry", 123200, status="failed")
    resp = await post_event(ac_client, webhook_event("evt_fail", failed, "checkout_session.payment.failed"))
    assert resp.json()["data"]["note"] == "payment failed"
    order = await fetch_order(db_session, order_id)
    assert order.payment_status == PaymentStatus.FAILED

    await post_event(ac_client, webhook_event("evt_paid", session_resource("cs_retry", 123200)))
    order = await fetch_order(db_session, order_id)
    assert order.payment_status == PaymentStatus.RECEIVED
    assert order.status == ProductOrderStatus.ACCEPTED

    # a late failure never overrides the received payment
    await post_event(ac_client, webhook_event("evt_fail_late", failed, "checkout_session.payment.failed"))
    order = await fetch_order(db_session, order_id)
    assert order.payment_status == PaymentStatus.RECEIVED


async def test_payment_after_cancellation_is_flagged(ac_client, db_session, customer_headers):
    product_id, inv_id = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])
    await open_session(db_session, order_id, "cs_late", "1232.00")

    resp = await ac_client.post(f"/api/v1/orders/{order_id}/cancel", headers=customer_headers, json={"reason": "oops"})
    assert resp.status_code == 200, resp.text

    await post_event(ac_client, webhook_event("evt_late", session_resource("cs_late", 123200)))

    order = await fetch_order(db_session, order_id)
    assert order.status == ProductOrderStatus.CANCELLED
    assert order.needs_reconciliation is True
    assert order.amount_paid == Decimal("1232.00")
    assert order.inventory_allocated is False
    assert await size_map(db_session, inv_id) == {"M": 5}
    payment = (await db_session.execute(select(Payment).where(Payment.provider_session_id == "cs_late"))).scalar_one()
    assert payment.status == PaymentStatus.RECEIVED
    await db_session.commit()


async def test_unknown_order_and_ignored_types(ac_client, db_session):
    resp = await post_event(ac_client, webhook_event("evt_nobody", session_resource("cs_nobody", 1000)))
    assert resp.status_code == 200
    event = await event_row(db_session, "evt_nobody")
    assert event.processed and event.needs_review

    resp = await post_event(ac_client, webhook_event("evt_src", {"id": "src_1", "type": "source"}, "source.chargeable"))
    assert resp.status_code == 200
    event = await event_row(db_session, "evt_src")
    assert event.processed and event.result["note"] == "ignored"
    assert not event.needs_review


async def test_webhook_events_admin_listing(ac_client, db_session, admin_headers, customer_headers):
    await post_event(ac_client, webhook_event("evt_nobody", session_resource("cs_nobody", 1000)))

    resp = await ac_client.get("/api/v1/admin/webhook-events/", headers=customer_headers)
    assert resp.status_code == 403

    resp = await ac_client.get("/api/v1/admin/webhook-events/", headers=admin_headers, params={"needs_review": True})
    events = resp.json()["data"]["events"]
    assert [e["external_id"] for e in events] == ["evt_nobody"]
    assert "raw_body" not in events[0]


async def test_second_paid_session_is_flagged_not_credited(ac_client, db_session):
    product_id, inv_id = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 1}])
    await open_session(db_session, order_id, "cs_first", "672.00")
    resp = await post_event(ac_client, webhook_event("evt_first", session_resource("cs_first", 67200)))
    assert resp.json()["data"]["result"]["classification"] == "full"
    topics_after_first = await outbox_topics(db_session, order_id)

    await open_session(db_session, order_id, "cs_second", "672.00")
    resp = await post_event(ac_client, webhook_event(
        "evt_second", session_resource("cs_second", 67200, payment_id="pay_second")))

    assert resp.status_code == 200
    assert resp.json()["data"]["note"] == "overpayment; flagged for reconciliation"
    order = await fetch_order(db_session, order_id)
    assert order.amount_paid == Decimal("1344.00")
    assert order.needs_reconciliation is True
    assert order.status == ProductOrderStatus.ACCEPTED
    assert await outbox_topics(db_session, order_id) == topics_after_first
    assert len(await allocation_txns(db_session, order_id)) == 1
    assert await size_map(db_session, inv_id) == {"M": 4}


async def test_malformed_amount_is_acknowledged_for_review(ac_client, db_session):
    product_id, _ = await make_product(db_session, sizes={"M": 5})
    order_id = await make_product_order(db_session, [{"product_id": product_id, "size": "M", "quantity": 2}])
    await open_session(db_session, order_id, "cs_bad_amount", "1232.00")

    resp = await post_event(ac_client, webhook_event("evt_bad_amount", session_resource("cs_bad_amount", "1232.00")))

    assert resp.status_code == 200
    event = await event_row(db_session, "evt_bad_amount")
    assert event.processed and event.needs_review
    assert event.result["note"] == "malformed amount"
    order = await fetch_order(db_session, order_id)
    assert order.payment_status == PaymentStatus.PENDING
    assert order.amount_paid == Decimal("0.00")
