"""Pytest fixtures for storefront tests."""

import hashlib
import hmac
import json
import os

# Configuration is read at import time; pin it before storefront is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENABLE_BACKGROUND_WORKERS"] = "false"
os.environ["NOTIFICATION_TRANSPORT"] = "none"
os.environ["MONNIFY_API_KEY"] = "MK_TEST_KEY"
os.environ["MONNIFY_SECRET_KEY"] = "test-monnify-secret"
os.environ["MONNIFY_CONTRACT_CODE"] = "1234567890"
os.environ["RESERVATION_TTL_MINUTES"] = "30"

import datetime as dt
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront import config, rate_limit
from storefront.database import get_db
from storefront.errors import PaymentGatewayError
from storefront.gateway import InitializedTransaction, MonnifyGateway, PaymentResult, get_gateway
from storefront.models import Base, Order, Product, ProductVariant, ShippingSettings, utcnow
from storefront.notifications import Notifier, get_notifier

WEBHOOK_SECRET = "test-monnify-secret"


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    def send(self, routing_key, payload):
        self.sent.append((routing_key, payload))

    def events(self, name=None):
        return [p for key, p in self.sent if name is None or key == name]


class FakeGateway(MonnifyGateway):
    """Gateway that never leaves the process.

    Signature checks and webhook parsing are the real implementations.
    """

    def __init__(self):
        super().__init__(
            base_url="https://sandbox.monnify.test",
            api_key="MK_TEST_KEY",
            secret_key=WEBHOOK_SECRET,
            contract_code="1234567890",
        )
        self.initialized = []
        self.verify_results = {}
        self.fail_init = False

    def initialize_transaction(self, **kwargs):
        if self.fail_init:
            raise PaymentGatewayError("Payment provider is unavailable: connection refused")
        self.initialized.append(kwargs)
        tx_ref = f"MNFY|TEST|{len(self.initialized):06d}"
        return InitializedTransaction(
            transaction_reference=tx_ref,
            payment_reference=kwargs["payment_reference"],
            redirect_url=f"https://sandbox.sdk.monnify.test/checkout/{tx_ref}",
        )

    def verify_transaction(self, reference):
        if reference not in self.verify_results:
            return PaymentResult(status="pending", reference=reference)
        return self.verify_results[reference]

    def verify_payment_reference(self, payment_reference):
        if payment_reference not in self.verify_results:
            return PaymentResult(status="pending", payment_reference=payment_reference)
        return self.verify_results[payment_reference]


def sign(raw_body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()


def webhook_body(order, status="PAID", amount=None, event_type="SUCCESSFUL_TRANSACTION") -> bytes:
    payload = {
        "eventType": event_type,
        "eventData": {
            "transactionReference": order.transaction_reference,
            "paymentReference": order.payment_reference,
            "amountPaid": str(order.total if amount is None else amount),
            "totalPayable": str(order.total),
            "paidOn": "2026-10-18 10:15:00.0",
            "paymentStatus": status,
            "currency": "NGN",
            "metaData": {"order_number": order.order_number},
        },
    }
    return json.dumps(payload).encode("utf-8")


def make_token(customer_id: int, is_admin: bool = False, email: str = None) -> str:
    claims = {"sub": str(customer_id), "is_admin": is_admin}
    if email:
        claims["email"] = email
    claims["exp"] = dt.datetime.now(dt.timezone.utc) + dt.timedelta(minutes=30)
    return jwt.encode(claims, config.SECRET_KEY, algorithm=config.ALGORITHM)


def auth_header(customer_id: int, is_admin: bool = False) -> dict:
    return {"Authorization": f"Bearer {make_token(customer_id, is_admin)}"}


GUEST_SHIPPING = {
    "first_name": "Ada",
    "last_name": "Obi",
    "email": "ada@example.com",
    "phone": "08031234567",
    "address": "12 Admiralty Way",
    "city": "Lekki",
    "state": "Lagos",
    "zip_code": "106104",
    "country": "Nigeria",
    "shipping_location": "Lagos",
}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture(autouse=True)
def reset_rate_limits():
    for limiter in rate_limit.LIMITERS:
        limiter.clear()
    yield
    for limiter in rate_limit.LIMITERS:
        limiter.clear()


@pytest.fixture
def shipping_settings(db):
    settings = ShippingSettings(
        location_fees=[{"location": "Lagos", "fee": 2500}, {"location": "Abuja", "fee": 4000}],
        free_shipping_threshold=Decimal("100000"),
    )
    db.add(settings)
    db.commit()
    return settings


@pytest.fixture
def make_variant(db):
    """Create a product with one variant and return the variant."""
    counter = {"n": 0}

    def _make(quantity=5, price="10000", discount_price=None, name=None, color="Black", size="M"):
        counter["n"] += 1
        product = Product(
            name=name or f"Agbada Classic {counter['n']}",
            slug=f"agbada-classic-{counter['n']}",
            category="menswear",
        )
        variant = ProductVariant(
            color=color,
            size=size,
            price=Decimal(price),
            discount_price=Decimal(discount_price) if discount_price is not None else None,
            quantity=quantity,
            reserved_quantity=0,
        )
        product.variants.append(variant)
        db.add(product)
        db.commit()
        db.refresh(variant)
        return variant

    return _make


@pytest.fixture
def make_order(db):
    """Insert a bare pending order (no items) for inventory-level tests."""

    def _make(order_number=None, **overrides):
        values = dict(
            order_number=order_number or f"ORD-20261018-T{db.query(Order).count() + 1:05d}",
            customer_id=None,
            is_guest=True,
            first_name="Ada",
            last_name="Obi",
            email="ada@example.com",
            phone="08031234567",
            address="12 Admiralty Way",
            city="Lekki",
            state="Lagos",
            zip_code="106104",
            country="Nigeria",
            subtotal=Decimal("0"),
            shipping=Decimal("0"),
            tax=Decimal("0"),
            total=Decimal("0"),
            order_status="order_placed",
            payment_status="pending",
            reservation_expires_at=utcnow() + dt.timedelta(minutes=30),
        )
        values.update(overrides)
        order = Order(**values)
        db.add(order)
        db.commit()
        db.refresh(order)
        return order

    return _make


@pytest.fixture
def client(db, gateway, notifier):
    from storefront.main import app

    def _get_db():
        yield db

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
