import os

os.environ["DATABASE_URL"] = "sqlite:///./test_temp.db"

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from payflow.config import Settings, get_settings
from payflow.database import Base, get_db
from payflow.main import app as fastapi_app
from payflow.models import Order, OrderItem
from payflow.providers import IntentResult, RefundResult

SQLALCHEMY_DATABASE_URL = os.environ["DATABASE_URL"]
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TEST_ENV = {
    "DATABASE_URL": SQLALCHEMY_DATABASE_URL,
    "JWT_SECRET": "test-jwt-secret",
    "STRIPE_SECRET_KEY": "sk_test_123",
    "STRIPE_WEBHOOK_SECRET": "whsec_test_123",
    "CHECKOUT_SUCCESS_URL": "https://shop.test/success",
    "CHECKOUT_CANCEL_URL": "https://shop.test/cancel",
    "SUMUP_MERCHANT_CODE": "MC123",
    "SUMUP_ACCESS_TOKEN": "sumup-token",
    "SUMUP_WEBHOOK_SECRET": "sumup-webhook-secret",
    "SUMUP_API_URL": "https://sumup.test",
    "EMAIL_FUNCTION_URL": "https://email.test/send",
    "BILLING_COMPANY_NAME": "Hotel Alpenblick AG",
    "BILLING_COMPANY_ADDRESS": "Bahnhofstrasse 1",
    "BILLING_COMPANY_POSTAL_CODE": "8001",
    "BILLING_COMPANY_CITY": "Zurich",
    "BILLING_COMPANY_COUNTRY": "CH",
    "BILLING_IBAN": "CH44 3199 9123 0008 8901 2",
    "REMINDER_CRON_SECRET": "cron-secret",
}


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def settings():
    return Settings(TEST_ENV)


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(settings):
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    fastapi_app.dependency_overrides[get_settings] = lambda: settings
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def make_token():
    def _make(sub="customer-1", role="customer", tenant_id="tenant-1"):
        claims = {"sub": sub, "role": role}
        if tenant_id:
            claims["tenant_id"] = tenant_id
        return jwt.encode(claims, TEST_ENV["JWT_SECRET"], algorithm="HS256")
    return _make


@pytest.fixture
def auth_headers(make_token):
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def make_order(db):
    def _make(order_id="order-1", tenant_id="tenant-1", total_cents=10000, currency="CHF",
              status="draft", customer_id=None, billing=None, items=()):
        db.add(Order(
            id=order_id,
            tenant_id=tenant_id,
            customer_id=customer_id,
            status=status,
            total_cents=total_cents,
            currency=currency,
            billing=billing or {},
        ))
        for position, (description, quantity, unit_price_cents) in enumerate(items):
            db.add(OrderItem(
                order_id=order_id,
                position=position,
                description=description,
                quantity=quantity,
                unit_price_cents=unit_price_cents,
            ))
        db.commit()
        return order_id
    return _make


class FakeProvider:
    """In-memory payment provider recording every call."""

    def __init__(self, name="stripe"):
        self.name = name
        self.intents = []
        self.refunds = []
        self.fail_next = None

    def create_intent(self, request):
        self.intents.append(request)
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error
        return IntentResult(
            provider_id=f"pi_{len(self.intents)}",
            status="requires_payment_method",
            client_secret=f"secret_{len(self.intents)}",
        )

    def refund(self, transaction, amount_cents, reason, idempotency_key=None):
        self.refunds.append((transaction.id, amount_cents, reason, idempotency_key))
        return RefundResult(provider_refund_id=f"re_{len(self.refunds)}", status="succeeded")

    def verify_webhook_signature(self, raw_body, signature_header, secret=None):
        return signature_header == "valid"

    def parse_event(self, raw_body):
        raise NotImplementedError


@pytest.fixture
def fake_provider():
    return FakeProvider()
