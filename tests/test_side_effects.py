from decimal import Decimal
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import NoResultFound
from backend.background_workers.base_worker import SideEffectWorker
from backend.background_workers.events_publisher_loop import OutboxPublisher, compute_backoff
from backend.background_workers.outbox_worker_handler import SideEffectHandler, receipt_number
from backend.background_workers.repository import emit_outbox_event, list_outbox_for_aggregate
from backend.db.connection import async_session
from backend.payments.constants import TOPIC_NOTIFY, TOPIC_RECEIPT
from backend.payments.pipeline import reconcile_payment
from backend.schema.full_schema import Cart, CartItem, OutboxEvent, OutboxEventStatus, Receipt, Voucher
from helpers import CUSTOMER_ID, fetch_order, make_product, make_product_order, open_session


async def paid_product_order(session):
    """A paid product order with a voucher and a cart holding the bought line plus one other."""
    session.add(Voucher(code="ONCE", discount_amount=Decimal("100"), max_uses=1))
    product_id, _ = await make_product(session, sizes={"M": 5, "L": 5})
    cart = Cart(user_id=CUSTOMER_ID)
    session.add(cart)
    await session.flush()
    session.add(CartItem(cart_id=cart.id, product_id=product_id, size="M", quantity=2))
    session.add(CartItem(cart_id=cart.id, product_id=product_id, size="L", quantity=1))
    await session.commit()

    order_id = await make_product_order(session, [{"product_id": product_id, "size": "M", "quantity": 2}],
                                        voucher_code="ONCE")
    await open_session(session, order_id, "cs_side", "1120.00")
    outcome = await reconcile_payment(session, order_id=order_id, provider_session_id="cs_side",
                                      paid=Decimal("1120.00"))
    await session.commit()
    return order_id, outcome


async def counts(session):
    receipts = (await session.execute(select(func.count()).select_from(Receipt))).scalar_one()
    cart_lines = (await session.execute(select(CartItem.size).order_by(CartItem.size))).scalars().all()
    used = (await session.execute(select(Voucher.used_count).where(Voucher.code == "ONCE"))).scalar_one()
    await session.commit()
    return receipts, list(cart_lines), used


async def test_handler_runs_each_message_once(db_session):
    order_id, outcome = await paid_product_order(db_session)
    assert len(outcome.side_effects) == 4
    handler = SideEffectHandler(async_session)

    results = [await handler.handle(m) for m in outcome.side_effects]
    assert results == [True] * 4
    assert await counts(db_session) == (1, ["L"], 1)

    # redelivery of the same messages
    results = [await handler.handle(m) for m in outcome.side_effects]
    assert results == [False] * 4
    assert await counts(db_session) == (1, ["L"], 1)

    rows = await list_outbox_for_aggregate(db_session, order_id)
    await db_session.commit()
    assert {r.status for r in rows} == {OutboxEventStatus.DONE}

    order = await fetch_order(db_session, order_id)
    receipt = (await db_session.execute(select(Receipt))).scalar_one()
    await db_session.commit()
    assert receipt.receipt_number == receipt_number(order.reference, outcome.payment_id)
    assert receipt.amount == Decimal("1120.00")


async def test_handler_failure_keeps_row_pending(db_session):
    outbox_id = await emit_outbox_event(
        db_session, topic=TOPIC_RECEIPT, payload={"order_id": 4242, "payment_id": 1, "amount": "1.00"},
        dedupe_key=f"{TOPIC_RECEIPT}:test")
    await db_session.commit()

    handler = SideEffectHandler(async_session)
    with pytest.raises(NoResultFound):
        await handler.handle({"outbox_event_id": outbox_id, "topic": TOPIC_RECEIPT,
                              "payload": {"order_id": 4242, "payment_id": 1, "amount": "1.00"}})

    row = (await db_session.execute(
        select(OutboxEvent).where(OutboxEvent.id == outbox_id).execution_options(populate_existing=True))).scalar_one()
    await db_session.commit()
    assert row.status == OutboxEventStatus.PENDING
    assert row.last_error.startswith("NoResultFound")

    assert await handler.handle({"outbox_event_id": outbox_id, "topic": "unknown", "payload": {}}) is False


async def test_publisher_redrives_stale_rows(db_session):
    order_id, outcome = await paid_product_order(db_session)
    published = []
    publisher = OutboxPublisher(lambda topic, message: published.append(message), async_session, stale_after=0)

    assert await publisher.process_batch() == 4
    assert sorted(m["outbox_event_id"] for m in published) == sorted(m["outbox_event_id"] for m in outcome.side_effects)

    # the retry window moved forward; nothing is due yet
    assert await publisher.process_batch() == 0

    handler = SideEffectHandler(async_session)
    for message in published:
        assert await handler.handle(message) is True
    assert await counts(db_session) == (1, ["L"], 1)


async def test_publisher_gives_up_after_max_attempts(db_session):
    order_id, _ = await paid_product_order(db_session)
    publisher = OutboxPublisher(lambda topic, message: None, async_session, stale_after=0, max_attempts=0)

    assert await publisher.process_batch() == 0
    rows = await list_outbox_for_aggregate(db_session, order_id)
    await db_session.commit()
    assert {r.status for r in rows} == {OutboxEventStatus.FAILED}


async def test_fresh_rows_are_left_to_the_fast_path(db_session):
    await paid_product_order(db_session)
    publisher = OutboxPublisher(lambda topic, message: None, async_session, stale_after=3600)
    assert await publisher.process_batch() == 0


def test_compute_backoff():
    assert compute_backoff(1, base=5) == 5
    assert compute_backoff(3, base=5) == 20
    assert compute_backoff(20, base=5, cap=60) == 60


async def test_worker_drains_queue_on_shutdown(db_session):
    _, outcome = await paid_product_order(db_session)
    # one loop: the in-memory test database is a single shared connection
    worker = SideEffectWorker(workers_count=1, handler=SideEffectHandler(async_session))
    worker.start()
    for message in outcome.side_effects:
        assert worker.publish(message["topic"], message) is True
    # a duplicate publish is harmless
    worker.publish(outcome.side_effects[0]["topic"], outcome.side_effects[0])

    await worker.shutdown(drain_first=True, drain_timeout=5, wait_timeout=5)
    assert worker.worker_loops == {}
    assert await counts(db_session) == (1, ["L"], 1)


async def test_worker_publish_drops_when_queue_is_full():
    worker = SideEffectWorker(workers_count=1, max_queue_size=1, handler=SideEffectHandler(async_session))
    assert worker.publish(TOPIC_NOTIFY, {"outbox_event_id": 1, "payload": {}}) is True
    assert worker.publish(TOPIC_NOTIFY, {"outbox_event_id": 2, "payload": {}}) is False
