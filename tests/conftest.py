"""
Shared fixtures: a file-backed SQLite database per test, a recording
notification sink and an in-memory payment gateway behind httpx.MockTransport.
"""

import json
import os
import re
from typing import List, Optional

os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("RUN_MIGRATIONS_ON_STARTUP", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-0123456789abcdef0123456789")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx
import pytest
from fastapi.testclient import TestClient

from orderflow.application.notifications import Notifier
from orderflow.application.schemas import CustomerInfo, OrderCreate, OrderItemCreate
from orderflow.application.service import OrderService
from orderflow.core_settings import Settings
from orderflow.domain.errors import NotificationError
from orderflow.domain.models import PreloadedAccount, Product
from orderflow.infrastructure import db as database
from orderflow.infrastructure.auth import create_access_token
from orderflow.infrastructure.payment_gateway import PaymentGatewayClient, create_signature

CHECKSUM_KEY = "test-checksum-key"
ADMIN_EMAIL = "ops@example.com"


class RecordingSink:
    """Notification sink that keeps messages in memory."""

    def __init__(self):
        self.sent: List[dict] = []
        self.fail = False

    def send(self, to: str, subject: str, text: str, html: Optional[str] = None):
        if self.fail:
            raise NotificationError("mail transport down")
        self.sent.append({"to": to, "subject": subject, "text": text})
        return {"message_id": f"<test-{len(self.sent)}@example.com>"}

    def matching(self, fragment: str) -> List[dict]:
        return [m for m in self.sent if fragment in m["subject"]]


class FakeGateway:
    """Just enough of the gateway's REST API for the client under test."""

    def __init__(self):
        self.statuses = {}
        self.requests: List[httpx.Request] = []
        self.timeout = False
        self.down = False

    def _ok(self, data: dict) -> httpx.Response:
        return httpx.Response(200, json={"code": "00", "desc": "success", "data": data})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ReadTimeout("timed out", request=request)
        if self.down:
            return httpx.Response(503, json={"code": "99", "desc": "maintenance"})

        path = request.url.path
        if request.method == "POST" and path == "/v2/payment-requests":
            body = json.loads(request.content)
            code = str(body["orderCode"])
            self.statuses[code] = "PENDING"
            return self._ok({
                "orderCode": body["orderCode"],
                "amount": body["amount"],
                "paymentLinkId": f"link-{code}",
                "checkoutUrl": f"https://pay.example.com/web/link-{code}",
                "qrCode": f"qr-{code}",
                "status": "PENDING",
            })

        match = re.match(r"^/v2/payment-requests/([^/]+)(/cancel)?$", path)
        if match is None:
            return httpx.Response(404, json={"code": "404", "desc": "not found"})
        code = match.group(1).replace("link-", "")
        if match.group(2):
            self.statuses[code] = "CANCELLED"
        return self._ok({"id": f"link-{code}", "orderCode": int(code), "status": self.statuses.get(code, "PENDING")})


@pytest.fixture
def settings():
    return Settings(
        GATEWAY_CLIENT_ID="client-id",
        GATEWAY_API_KEY="api-key",
        GATEWAY_CHECKSUM_KEY=CHECKSUM_KEY,
        GATEWAY_BASE_URL="https://gateway.test",
        ADMIN_EMAIL=ADMIN_EMAIL,
        FRONTEND_URL="https://shop.example.com",
        BUSINESS_TIMEZONE="Asia/Ho_Chi_Minh",
    )


@pytest.fixture
def engine(tmp_path):
    engine = database.configure(f"sqlite:///{tmp_path / 'orderflow.db'}")
    database.init_models()
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return database.SessionLocal


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier(sink, settings):
    return Notifier(sink, settings)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def gateway(settings, fake_gateway):
    return PaymentGatewayClient(settings, transport=httpx.MockTransport(fake_gateway.handler))


@pytest.fixture
def make_product(session):
    def factory(name="Netflix Premium 1 tháng", price=100000, stock=10, accounts=None,
                billing_cycle=None, instructions="", is_active=True):
        product = Product(
            name=name,
            price=price,
            currency="VND",
            billing_cycle=billing_cycle,
            stock=len(accounts) if accounts is not None else stock,
            reserved=0,
            is_preloaded_account=accounts is not None,
            completion_instructions=instructions,
            is_active=is_active,
        )
        session.add(product)
        session.flush()
        for account in accounts or []:
            session.add(PreloadedAccount(product_id=product.id, account=account))
        session.commit()
        return product
    return factory


@pytest.fixture
def place_order(session, settings, notifier, gateway):
    def factory(*lines, user_id=None, note=None, email="buyer@example.com"):
        payload = OrderCreate(
            customer=CustomerInfo(name="Nguyen Van A", email=email, phone="0901234567"),
            items=[OrderItemCreate(product_id=product.id, quantity=quantity) for product, quantity in lines],
            note=note,
        )
        return OrderService(session, settings, notifier, gateway).create(payload, user_id=user_id)
    return factory


@pytest.fixture
def webhook_payload():
    def factory(order, status="PAID", code="00", key=CHECKSUM_KEY, **overrides):
        data = {
            "orderCode": order.gateway_order_code,
            "amount": order.order_total,
            "description": f"DH{order.order_code}",
            "accountNumber": "12345678",
            "reference": "FT123",
            "transactionDateTime": "2026-10-17 10:00:00",
            "currency": "VND",
            "paymentLinkId": order.payment_link_id,
            "code": code,
            "desc": "success" if code == "00" else "failed",
            "status": status,
        }
        data.update(overrides)
        return {
            "code": code,
            "desc": data["desc"],
            "success": code == "00",
            "data": data,
            "signature": create_signature(data, key),
        }
    return factory


@pytest.fixture
def user_token():
    return create_access_token("user-1")


@pytest.fixture
def admin_token():
    return create_access_token("admin-1", role="admin")


@pytest.fixture
def client(engine, settings, sink, gateway):
    from orderflow.api.deps import get_gateway, get_notification_sink, get_settings
    from orderflow.main import app

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_notification_sink] = lambda: sink
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()
