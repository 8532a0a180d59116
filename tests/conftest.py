from datetime import date, datetime, timedelta, timezone

import pytest

from nutriconnect import auth_app, order_app, payment_app
from nutriconnect.database import DBSession, reset_db
from nutriconnect.payment_client import PaymentClient
from nutriconnect.security import generate_token


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def fresh_state(monkeypatch):
    reset_db()
    payment_app.paydpi_client.reset()
    # no payment service unless a test wires one in
    monkeypatch.setattr(order_app.order_service, "payments", PaymentClient(base_url=""))
    yield
    DBSession.remove()


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(payment_app.paydpi_client, "clock", fake)
    return fake


@pytest.fixture
def auth_client():
    return auth_app.app.test_client()


@pytest.fixture
def order_client():
    return order_app.app.test_client()


@pytest.fixture
def payment_client():
    return payment_app.app.test_client()


def token_for(username):
    return generate_token(auth_app.public_user(auth_app.MOCK_USERS[username]))


@pytest.fixture
def headers():
    def make(username="student123"):
        return {"Authorization": f"Bearer {token_for(username)}"}
    return make


@pytest.fixture
def tomorrow():
    return (date.today() + timedelta(days=1)).isoformat()
