"""Pytest fixtures for storefront tests."""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from auth import create_token
from config import RateLimitPolicy, Settings
from main import create_app
from memory_store import MemoryStore
from notifications import Outbox
from orders import OrderService
from schemas import Address, CartItem, Coupon, DiscountType, Product, Role, User, utcnow

JWT_SECRET = "test-secret"


class RecordingNotifier:
    """Notifier that remembers every call; `fail` makes the next N calls raise."""

    def __init__(self):
        self.sent = []
        self.fail = 0

    def _record(self, *event):
        if self.fail:
            self.fail -= 1
            raise RuntimeError("mail provider unavailable")
        self.sent.append(event)

    def notify_order_confirmed(self, order_id):
        self._record("confirmed", order_id)

    def notify_order_shipped(self, order_id, tracking_number):
        self._record("shipped", order_id, tracking_number)

    def notify_order_delivered(self, order_id):
        self._record("delivered", order_id)


@pytest.fixture
def store():
    return MemoryStore(lock_timeout=5.0)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def outbox(notifier):
    return Outbox(notifier, max_attempts=3)


@pytest.fixture
def service(store, outbox):
    # Rs 50.00 threshold, Rs 0.50 flat fee: small numbers keep totals readable.
    return OrderService(store, outbox, free_shipping_threshold=5000, shipping_flat_fee=50)


def make_user(store, email="asha@example.com", role=Role.CUSTOMER):
    with store.transaction() as tx:
        return tx.users.insert(User(name="Asha", email=email, password_hash="x", role=role))


def make_product(store, price=500, stock=10, name="Linen Shirt", category="shirts"):
    with store.transaction() as tx:
        return tx.products.insert(Product(name=name, price=price, stock=stock, category=category))


def make_address(store, user_id):
    with store.transaction() as tx:
        return tx.addresses.insert(Address(
            user_id=user_id,
            full_name="Asha Rao",
            phone="9876543210",
            address_line1="12 MG Road",
            city="Bengaluru",
            state="Karnataka",
            postal_code="560001",
        ))


def make_coupon(store, code="SAVE10", **overrides):
    fields = dict(
        code=code,
        discount_type=DiscountType.PERCENTAGE,
        discount_value=10,
        valid_from=utcnow() - timedelta(days=1),
        valid_to=utcnow() + timedelta(days=30),
    )
    fields.update(overrides)
    with store.transaction() as tx:
        return tx.coupons.insert(Coupon(**fields))


def add_to_cart(store, user_id, product_id, quantity=1, size=None, color=None):
    with store.transaction() as tx:
        tx.carts.add_line(user_id, CartItem(product_id=product_id, quantity=quantity, size=size, color=color))


def stock_of(store, product_id):
    with store.transaction() as tx:
        return tx.products.get_stock_and_price(product_id).stock


def cart_of(store, user_id):
    with store.transaction() as tx:
        return tx.carts.list_lines(user_id)


@pytest.fixture
def user(store):
    return make_user(store)


@pytest.fixture
def admin(store):
    return make_user(store, email="admin@example.com", role=Role.ADMIN)


@pytest.fixture
def product(store):
    return make_product(store)


@pytest.fixture
def address(store, user):
    return make_address(store, user.id)


def auth_headers(user):
    return {"Authorization": f"Bearer {create_token(user, JWT_SECRET, 60)}"}


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=JWT_SECRET,
        free_shipping_threshold=5000,
        shipping_flat_fee=50,
        rate_limit_enabled=False,
    )


@pytest.fixture
def app(settings, store, notifier):
    return create_app(settings=settings, store=store, notifier=notifier)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def limited_client(store, notifier):
    """Client whose API limiter allows two requests per minute."""
    settings = Settings(
        jwt_secret=JWT_SECRET,
        rate_limits={
            "general": RateLimitPolicy(100, 60_000, "general"),
            "auth": RateLimitPolicy(100, 60_000, "Too many login attempts, please try again later"),
            "api": RateLimitPolicy(2, 60_000, "API rate limit exceeded, please slow down"),
        },
    )
    return TestClient(create_app(settings=settings, store=store, notifier=notifier))
