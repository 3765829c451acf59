from datetime import datetime
from decimal import Decimal

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from shared.utils import Settings, create_access_token
from shared.security_config import limiter
from app.delhivery import DelhiveryClient
from app.ledger import OrderLedger
from app.models import PendingOrderDB
from app.phonepe import PhonePeClient
from app.pipeline import PaymentConfirmationPipeline
from factories import (
    OTHER_USER_ID,
    USER_ID,
    DelhiveryStub,
    PhonePeStub,
    sample_address,
    sample_customer,
    sample_items,
)


@pytest.fixture
def test_settings():
    return Settings(
        ENVIRONMENT="test",
        PHONEPE_CLIENT_ID="TEST-CLIENT",
        PHONEPE_CLIENT_SECRET="test-secret",
        PHONEPE_BASE_URL="https://phonepe.test/apis/pg",
        PHONEPE_AUTH_URL="https://phonepe.test/apis/identity-manager",
        PAYMENT_REDIRECT_BASE_URL="https://shop.test",
        DELHIVERY_TOKEN="delhivery-token",
        DELHIVERY_BASE_URL="https://delhivery.test",
        DELHIVERY_TRACKING_URL="https://delhivery.test",
        DELHIVERY_PUBLIC_TRACKING_URL="https://www.delhivery.test/track/package",
    )


@pytest.fixture
def db():
    return AsyncMongoMockClient()["checkout_test"]


@pytest.fixture
def ledger(db):
    return OrderLedger(db)


@pytest.fixture
def phonepe_stub():
    return PhonePeStub()


@pytest.fixture
def delhivery_stub():
    return DelhiveryStub()


@pytest.fixture
async def phonepe(test_settings, phonepe_stub):
    client = PhonePeClient(test_settings, http=httpx.AsyncClient(transport=httpx.MockTransport(phonepe_stub)))
    yield client
    await client.aclose()


@pytest.fixture
async def delhivery(test_settings, delhivery_stub):
    client = DelhiveryClient(test_settings, http=httpx.AsyncClient(transport=httpx.MockTransport(delhivery_stub)))
    yield client
    await client.aclose()


@pytest.fixture
def pipeline(ledger, phonepe, delhivery, test_settings):
    return PaymentConfirmationPipeline(ledger, phonepe, delhivery, test_settings)


@pytest.fixture
def seed_pending(ledger):
    async def seed(order_id="ORD1001", user_id=USER_ID, **overrides):
        fields = {
            "user_id": user_id,
            "items": sample_items(),
            "total": Decimal("500"),
            "shipping_address": sample_address(),
            "customer_details": sample_customer(),
        }
        fields.update(overrides)
        await ledger.create_pending_order(PendingOrderDB(_id=order_id, **fields))
        return order_id

    return seed


@pytest.fixture
def seed_payment_request(ledger):
    async def seed(order_id="ORD1001", status="payment_initiated"):
        await ledger.db.payment_requests.insert_one(
            {
                "_id": order_id,
                "user_id": USER_ID,
                "order_id": order_id,
                "amount": 500.0,
                "amount_minor": 50000,
                "status": status,
                "created_at": datetime.utcnow(),
            }
        )
        return order_id

    return seed


@pytest.fixture
def auth_headers():
    token = create_access_token({"sub": USER_ID})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_auth_headers():
    token = create_access_token({"sub": OTHER_USER_ID})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(ledger, phonepe, delhivery, pipeline):
    from app.main import app, get_delhivery, get_ledger, get_phonepe, get_pipeline

    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_phonepe] = lambda: phonepe
    app.dependency_overrides[get_delhivery] = lambda: delhivery
    app.dependency_overrides[get_pipeline] = lambda: pipeline
    limiter.enabled = False

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http

    app.dependency_overrides.clear()
    limiter.enabled = True
