import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401  registers tables on Base
from app.database import Base
from app.main import app as fastapi_app
from app.schemas import CheckoutRequest, SepayWebhook

# Setup test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
ORDER = {"id": "gid://shopify/Order/1001", "name": "#1001"}

ADDRESS = {
    "address1": "12 Ly Thuong Kiet",
    "city": "Ha Noi",
    "province": "Ha Noi",
    "country": "VN",
    "zip": "100000",
    "first_name": "An",
    "last_name": "Nguyen",
    "phone_number": "0912345678",
}

GUEST = {
    "email": "buyer@onlyperf.vn",
    "phone": "0912345678",
    "first_name": "An",
    "last_name": "Nguyen",
}


def build_cart(cart_id="gid://shopify/Cart/c1-4821", total="1700000.0", lines=None):
    if lines is None:
        lines = [
            {
                "quantity": 2,
                "merchandise": {
                    "__typename": "ProductVariant",
                    "id": "gid://shopify/ProductVariant/11",
                    "title": "Size M",
                    "sku": "PERF-TEE-M",
                    "price": {"amount": "850000.0", "currencyCode": "VND"},
                    "product": {"title": "Perf Tee", "vendor": "Perf"},
                },
            }
        ]
    return {
        "id": cart_id,
        "buyerIdentity": {"email": "member@onlyperf.vn"},
        "cost": {"totalAmount": {"amount": total, "currencyCode": "VND"}},
        "lines": {"edges": [{"node": line} for line in lines]},
    }


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_request():
    def _make(**overrides):
        data = {
            "cart_id": "C1",
            "payment_method": "bank_transfer",
            "shipping_address": ADDRESS,
            "is_guest": True,
            "guest_customer": GUEST,
        }
        data.update(overrides)
        return CheckoutRequest.model_validate(data)
    return _make


@pytest.fixture
def make_webhook():
    def _make(id=999, amount=1700000, content="", transfer_type="in"):
        return SepayWebhook.model_validate({
            "id": id,
            "gateway": "Vietcombank",
            "transactionDate": "2026-03-01 16:05:00",
            "accountNumber": "0071000888888",
            "subAccount": None,
            "code": None,
            "content": content,
            "transferType": transfer_type,
            "transferAmount": amount,
            "accumulated": 19077000,
            "referenceCode": "FT26060123456",
            "description": "",
        })
    return _make


@pytest.fixture
def shopify(mocker):
    """Commerce platform and fulfillment calls replaced by mocks."""
    return SimpleNamespace(
        fetch_cart=mocker.patch("app.sessions.fetch_cart", return_value=build_cart()),
        create_order=mocker.patch("app.orders.create_order", return_value=dict(ORDER)),
        mark_order_paid=mocker.patch("app.orders.mark_order_paid", return_value={"id": ORDER["id"]}),
        notify=mocker.patch("app.orders.notify_order_paid_safely", return_value=True),
    )


@pytest.fixture
def client(monkeypatch):
    # Mock SessionLocal in routes and main
    monkeypatch.setattr("app.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("app.main.SessionLocal", TestingSessionLocal)
    with TestClient(fastapi_app) as c:
        yield c
