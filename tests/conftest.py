import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("PAYMONGO_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("PAYMONGO_WEBHOOK_SECRET", "whsk_test_secret")
os.environ.setdefault("SIDE_EFFECT_WORKERS", "0")
os.environ.setdefault("ENV", "dev")

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient
from sqlmodel import SQLModel
from backend.common.circuit_breaker import db_circuit, gateway_circuit
from backend.db.connection import async_engine, async_session
from backend.main import app
from backend.payments.dependencies import get_gateway_client
from helpers import ADMIN_ID, CUSTOMER_ID, FakeGateway, auth_headers


@pytest.fixture(autouse=True)
async def db_schema():
    db_circuit.reset()
    gateway_circuit.reset()
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
    yield
    app.dependency_overrides.clear()
    # the in-memory database lives on one pooled connection; drop it with the test's event loop
    await async_engine.dispose()


@pytest.fixture
async def db_session():
    async with async_session() as session:
        yield session


@pytest.fixture
async def ac_client():
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


@pytest.fixture
def customer_headers():
    return auth_headers(CUSTOMER_ID)


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN_ID, ["admin"])


@pytest.fixture
def fake_gateway():
    fake = FakeGateway()
    client = fake.client()
    app.dependency_overrides[get_gateway_client] = lambda: client
    return fake
