"""
Shared fixtures: a fresh SQLite database per test, a fake payment processor,
a TestClient wired to both, and small factories for users, sellers, catalog
items and schedules.
"""
import json
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("QR_SECRET", "test-qr-secret")

import uuid
from datetime import date, time, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from marketplace.db.base import Base
from marketplace.db.session import get_db
from marketplace.api.deps import get_payment_processor
from marketplace.core.errors import ExternalServiceError, ValidationError
from marketplace.core.security import create_access_token, get_password_hash
from marketplace.main import app
from marketplace.models.user import User
from marketplace.models.seller import Seller, SellerPaymentAccount
from marketplace.models.catalog import Product, Service
from marketplace.models.cart import CartItem, CartServiceItem
from marketplace.models.availability import WeeklySchedule
from marketplace.models.order import Order, OrderStatus
from marketplace.services.payment_processor import (
    CheckoutHandle, IntentHandle, PaymentProcessor, PaymentStatus, PayoutResult,
)

PASSWORD = "password123"
_PASSWORD_HASH = None


def _password_hash():
    global _PASSWORD_HASH
    if _PASSWORD_HASH is None:
        _PASSWORD_HASH = get_password_hash(PASSWORD)
    return _PASSWORD_HASH


class FakeProcessor(PaymentProcessor):
    """In-memory processor: records calls, reports payments as paid on demand."""

    def __init__(self):
        self.calls = []
        self.paid = set()
        self.fail_checkout = False
        self.fail_payout = False
        self.payout_status = "pending"
        self._counter = 0

    def _next(self, prefix):
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def create_seller_account(self, seller_id, email, country):
        self.calls.append(("create_seller_account", seller_id))
        return self._next("acct")

    def create_hosted_checkout(self, order_id, account_id, amount, currency, success_url, cancel_url,
                               application_fee=None, customer_email=None):
        self.calls.append(("create_hosted_checkout", order_id, amount, application_fee))
        if self.fail_checkout:
            raise ExternalServiceError("Processor unavailable")
        session_id = self._next("cs")
        return CheckoutHandle(id=session_id, url=f"https://pay.test/{session_id}")

    def create_payment_intent(self, order_id, account_id, amount, currency,
                              application_fee=None, customer_email=None):
        self.calls.append(("create_payment_intent", order_id, amount, application_fee))
        if self.fail_checkout:
            raise ExternalServiceError("Processor unavailable")
        intent_id = self._next("pi")
        return IntentHandle(id=intent_id, client_secret=f"{intent_id}_secret")

    def retrieve_session_status(self, session_id):
        self.calls.append(("retrieve_session_status", session_id))
        if session_id in self.paid:
            return PaymentStatus(paid=True, status="paid", payment_reference=f"pi_for_{session_id}")
        return PaymentStatus(paid=False, status="unpaid", payment_reference=None)

    def retrieve_payment_intent_status(self, intent_id):
        self.calls.append(("retrieve_payment_intent_status", intent_id))
        if intent_id in self.paid:
            return PaymentStatus(paid=True, status="succeeded", payment_reference=intent_id)
        return PaymentStatus(paid=False, status="requires_payment_method", payment_reference=None)

    def expire_session(self, session_id):
        self.calls.append(("expire_session", session_id))

    def create_payout(self, account_id, amount, currency, metadata=None):
        self.calls.append(("create_payout", account_id, amount, currency))
        if self.fail_payout:
            raise ExternalServiceError("Payouts are disabled for this account")
        return PayoutResult(id=self._next("po"), status=self.payout_status)

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise ValidationError("Invalid webhook signature")
        return json.loads(payload)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def client(session_factory, processor):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(db):
    def _make(role="customer", email=None):
        user = User(
            email=email or f"{role}-{uuid.uuid4().hex[:8]}@example.com",
            password_hash=_password_hash(),
            full_name=f"Test {role.title()}",
            role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make


@pytest.fixture
def make_seller(db, make_user):
    def _make(name="Seller", cutoff_time=None, same_day=True, with_account=True, **fields):
        user = make_user("seller")
        seller = Seller(
            user_id=user.id,
            business_name=name,
            business_address="1 High Street",
            postcode="AB1 2CD",
            city="Testville",
            same_day_pickup_allowed=same_day,
            cutoff_time=cutoff_time,
            **fields,
        )
        db.add(seller)
        db.commit()
        if with_account:
            db.add(SellerPaymentAccount(seller_id=seller.id, processor_account_id=f"acct_{seller.id.hex[:8]}"))
            db.commit()
        db.refresh(seller)
        return seller
    return _make


@pytest.fixture
def make_product(db):
    def _make(seller, price="10.00", stock=10, name="Widget"):
        product = Product(seller_id=seller.id, name=name, price=Decimal(price), stock=stock)
        db.add(product)
        db.commit()
        db.refresh(product)
        return product
    return _make


@pytest.fixture
def make_service(db):
    def _make(seller, price="30.00", duration=60, name="Haircut"):
        service = Service(seller_id=seller.id, name=name, price=Decimal(price), duration_minutes=duration)
        db.add(service)
        db.commit()
        db.refresh(service)
        return service
    return _make


@pytest.fixture
def open_every_day(db):
    """Give a seller a 09:00-17:00 schedule on all seven weekdays."""
    def _open(seller, start=time(9, 0), end=time(17, 0)):
        for dow in range(7):
            db.add(WeeklySchedule(
                seller_id=seller.id, day_of_week=dow, start_time=start, end_time=end, is_available=True,
            ))
        db.commit()
    return _open


@pytest.fixture
def add_to_cart(db):
    def _add(user, item, quantity=1):
        if isinstance(item, Product):
            db.add(CartItem(user_id=user.id, product_id=item.id, quantity=quantity))
        else:
            db.add(CartServiceItem(user_id=user.id, service_id=item.id, quantity=quantity))
        db.commit()
    return _add


@pytest.fixture
def auth():
    """Bearer headers for a user."""
    def _headers(user):
        token = create_access_token(subject=str(user.id), role=user.role)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def booking_day():
    """A date a week out, always in the future and inside an open schedule."""
    return date.today() + timedelta(days=7)


@pytest.fixture
def make_order(db):
    """Insert an order directly in a given status, bypassing checkout."""
    def _make(customer, seller, total="100.00", status=OrderStatus.PROCESSING):
        order = Order(
            user_id=customer.id,
            seller_id=seller.id,
            status=status,
            currency="GBP",
            subtotal=Decimal(total),
            total=Decimal(total),
            pickup_location=seller.pickup_location,
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        return order
    return _make
