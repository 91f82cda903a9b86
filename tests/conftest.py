import os
import re

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("JWT_SECRET", "test-secret")

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import jojopay.providers as providers
from jojopay.config import get_settings
from jojopay.database import Base, get_db
from jojopay.main import app as fastapi_app
from jojopay.models import SubscriptionPlan
from jojopay.providers import PayPalProvider, TapProvider
from jojopay.routes import admin_cache, lookup_limiter
from jojopay.webhooks import tap_limiter

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

JWT_SECRET = "test-secret"
TAP_WEBHOOK_SECRET = "tap-webhook-secret"


def make_token(user_id, role="authenticated"):
    return jwt.encode({"sub": user_id, "role": role, "aud": "authenticated"}, JWT_SECRET, algorithm="HS256")


def auth_header(user_id, role="authenticated"):
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


class FakePayPal:
    """Minimal PayPal REST double for httpx.MockTransport."""

    def __init__(self, capture_status="COMPLETED"):
        self.capture_status = capture_status
        self.orders = {}
        self.captured = set()
        self.calls = []
        self.fail_next = []          # queued status codes to return before behaving normally
        self.capture_issue = None    # PayPal 422 issue code returned by capture

    def order_body(self, order_id):
        captures = []
        order_status = "COMPLETED"
        if self.capture_status == "VOIDED":
            order_status = "VOIDED"
        else:
            captures = [{"id": f"CAP-{order_id}", "status": self.capture_status}]
        return {
            "id": order_id,
            "status": order_status,
            "payer": {"payer_id": "PAYER1", "email_address": "buyer@example.com"},
            "purchase_units": [{"payments": {"captures": captures}}],
        }

    def __call__(self, request):
        path = request.url.path
        self.calls.append((request.method, path))
        if self.fail_next:
            return httpx.Response(self.fail_next.pop(0), text="gateway down")
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})
        if path == "/v1/notifications/verify-webhook-signature":
            return httpx.Response(200, json={"verification_status": "SUCCESS"})
        if path == "/v2/checkout/orders" and request.method == "POST":
            order_id = f"O{len(self.orders) + 1}"
            self.orders[order_id] = request.content
            return httpx.Response(201, json={
                "id": order_id,
                "status": "CREATED",
                "links": [{"rel": "approve", "href": f"https://www.sandbox.paypal.com/checkoutnow?token={order_id}"}],
            })
        match = re.match(r"^/v2/checkout/orders/([^/]+)(/capture)?$", path)
        if match:
            order_id, capture = match.groups()
            if capture:
                if self.capture_issue:
                    return httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY",
                                                     "details": [{"issue": self.capture_issue}]})
                if order_id in self.captured:
                    return httpx.Response(422, json={"name": "UNPROCESSABLE_ENTITY",
                                                     "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]})
                self.captured.add(order_id)
                return httpx.Response(201, json=self.order_body(order_id))
            return httpx.Response(200, json=self.order_body(order_id))
        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})

    def count(self, method, path):
        return sum(1 for call in self.calls if call == (method, path))


class FakeTap:
    def __init__(self, status="CAPTURED"):
        self.status = status
        self.charges = {}
        self.calls = []

    def __call__(self, request):
        path = request.url.path
        self.calls.append((request.method, path))
        if path == "/v2/charges" and request.method == "POST":
            charge_id = f"chg_{len(self.charges) + 1}"
            self.charges[charge_id] = request.content
            return httpx.Response(200, json={
                "id": charge_id,
                "status": "INITIATED",
                "transaction": {"url": f"https://checkout.tap.company/{charge_id}"},
            })
        match = re.match(r"^/v2/charges/([^/]+)$", path)
        if match:
            charge_id = match.group(1)
            return httpx.Response(200, json={
                "id": charge_id, "status": self.status, "amount": 9.99, "currency": "USD",
                "customer": {"id": "cus_1", "email": "buyer@example.com"},
            })
        return httpx.Response(404, json={"errors": [{"code": "1140"}]})


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    db.add(SubscriptionPlan(id="basic", name="Basic", price_usd=9.99, duration_days=365))
    db.add(SubscriptionPlan(id="lifetime", name="Lifetime", price_usd=49.99, is_lifetime=True))
    db.commit()
    db.close()
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(autouse=True)
def provider_env(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("PAYPAL_CLIENT_ID", "paypal-client")
    monkeypatch.setenv("PAYPAL_CLIENT_SECRET", "paypal-secret")
    monkeypatch.setenv("PAYPAL_ENVIRONMENT", "sandbox")
    monkeypatch.setenv("TAP_SECRET_KEY", "sk_test_tap")
    monkeypatch.setenv("TAP_WEBHOOK_SECRET", TAP_WEBHOOK_SECRET)
    monkeypatch.setenv("PUBLIC_SITE_URL", "https://shop.example")
    monkeypatch.delenv("PAYPAL_WEBHOOK_ID", raising=False)
    monkeypatch.delenv("TRUSTED_PROXIES", raising=False)
    providers.reset_providers()
    lookup_limiter.clear()
    tap_limiter.clear()
    admin_cache.clear()
    yield
    providers.reset_providers()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def paypal(monkeypatch):
    fake = FakePayPal()
    provider = PayPalProvider(get_settings(), http=httpx.Client(transport=httpx.MockTransport(fake)),
                              sleep=lambda seconds: None)
    monkeypatch.setitem(providers._instances, "paypal", provider)
    return fake


@pytest.fixture
def tap(monkeypatch):
    fake = FakeTap()
    provider = TapProvider(get_settings(), http=httpx.Client(transport=httpx.MockTransport(fake)))
    monkeypatch.setitem(providers._instances, "tap", provider)
    return fake


@pytest.fixture
def client():
    def override_get_db():
        session = TestingSessionLocal()
        try:
            yield session
        finally:
            session.close()

    fastapi_app.dependency_overrides[get_db] = override_get_db
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()
