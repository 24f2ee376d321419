from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from auth import create_access_token, hash_password
from database import get_db
from notifications import Notifier
from repositories import Store


class RecordingEmail:
    configured = True

    def __init__(self):
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append((to, subject, html))

    @property
    def subjects(self):
        return [subject for _, subject, _ in self.sent]


class RecordingSms:
    configured = True

    def __init__(self):
        self.sent = []

    def send(self, to, body):
        self.sent.append((to, body))
        return f"SM{len(self.sent)}"


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def store(db):
    return Store(db)


@pytest.fixture
def email():
    return RecordingEmail()


@pytest.fixture
def sms():
    return RecordingSms()


@pytest.fixture
def notifier(email, sms):
    return Notifier(email=email, sms=sms)


@pytest.fixture
def client(db, notifier):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[main.get_notifier] = lambda: notifier
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


@pytest.fixture
def make_user(store):
    def _make(name="Alice", email="alice@example.com", role="customer", phone=None, password="secret1"):
        return store.users.create(
            {"name": name, "email": email, "phone": phone, "role": role, "password_hash": hash_password(password)}
        )

    return _make


@pytest.fixture
def make_product(store):
    def _make(name="Shirt", price=10.0, stock=5, category="apparel", colors=None):
        return store.products.create(
            {
                "name": name,
                "category": category,
                "price": price,
                "stock": stock,
                "image": "https://cdn.example.com/shirt.jpg",
                "colors": colors or [],
            }
        )

    return _make


@pytest.fixture
def make_coupon(store):
    def _make(code="SAVE10", percent=10, days=30, max_uses=None, current_uses=0, min_order_amount=None):
        return store.coupons.create(
            {
                "code": code,
                "discount_percent": percent,
                "expiry_date": datetime.now(timezone.utc) + timedelta(days=days),
                "max_uses": max_uses,
                "current_uses": current_uses,
                "min_order_amount": min_order_amount,
            }
        )

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user):
        return {"Authorization": f"Bearer {create_access_token(user['id'], user.get('role', 'customer'))}"}

    return _headers
