"""Races that only a real row-locking database exercises. Set TEST_POSTGRES_URL to run them."""
import asyncio
import os
from decimal import Decimal
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from backend.common.errors import InsufficientStockError
from backend.db.utils import _normalize_db_url
from backend.inventory import services as inventory_services
from backend.payments.pipeline import reconcile_payment
from backend.schema.full_schema import AllocationMode
from helpers import fetch_order, make_product, make_product_order, open_session, size_map

PG_URL = os.environ.get("TEST_POSTGRES_URL")

pytestmark = pytest.mark.skipif(not PG_URL, reason="TEST_POSTGRES_URL not set")


@pytest.fixture
async def pg_sessions():
    engine = create_async_engine(_normalize_db_url(PG_URL))
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


async def test_last_unit_goes_to_exactly_one_order(pg_sessions):
    async with pg_sessions() as session:
        product_id, inv_id = await make_product(session, sizes={"M": 1})
        first = await make_product_order(session, [{"product_id": product_id, "size": "M", "quantity": 1}])
        second = await make_product_order(session, [{"product_id": product_id, "size": "M", "quantity": 1}])

    async def allocate(order_id):
        async with pg_sessions() as session:
            try:
                await inventory_services.allocate(session, order_id, {inv_id: {"M": 1}}, AllocationMode.CONSUME)
                await session.commit()
                return True
            except InsufficientStockError:
                await session.rollback()
                return False

    results = await asyncio.gather(allocate(first), allocate(second))
    assert sorted(results) == [False, True]

    async with pg_sessions() as session:
        assert await size_map(session, inv_id) == {"M": 0}


async def test_concurrent_reports_of_one_payment_credit_once(pg_sessions):
    async with pg_sessions() as session:
        product_id, inv_id = await make_product(session, sizes={"M": 5})
        order_id = await make_product_order(session, [{"product_id": product_id, "size": "M", "quantity": 2}])
        await open_session(session, order_id, "cs_race", "1232.00")

    async def report():
        async with pg_sessions() as session:
            outcome = await reconcile_payment(session, order_id=order_id, provider_session_id="cs_race",
                                              paid=Decimal("1232.00"))
            await session.commit()
            return outcome.note

    notes = await asyncio.gather(*(report() for _ in range(4)))
    assert notes.count("processed") == 1

    async with pg_sessions() as session:
        order = await fetch_order(session, order_id)
        assert order.amount_paid == Decimal("1232.00")
        assert await size_map(session, inv_id) == {"M": 3}
