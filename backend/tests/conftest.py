"""Pytest configuration and shared fixtures."""

import os
import tempfile
from decimal import Decimal

# Configure the app before any stocksim module reads its environment.
_DB_DIR = tempfile.mkdtemp(prefix="stocksim-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["DEFAULT_ADMIN_EMAILS"] = "root@example.com"
os.environ["PASSWORD_PBKDF2_ITERATIONS"] = "1000"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from stocksim import models  # noqa: E402,F401
from stocksim.db import Base, SessionLocal, engine  # noqa: E402
from stocksim.main import app  # noqa: E402
from stocksim.market import get_market_settings  # noqa: E402
from stocksim.models import Position, User  # noqa: E402
from stocksim.quotes import (  # noqa: E402
    PriceService,
    QuoteCache,
    QuoteNotFoundError,
    get_price_service,
)

PASSWORD = "secret123"


class FakeQuoteClient:
    """Stands in for AlphaVantageClient; prices and failures are set per test."""

    def __init__(self):
        self.prices = {}
        self.matches = []
        self.quote_error = None
        self.search_error = None
        self.quote_calls = 0

    def global_quote(self, symbol):
        self.quote_calls += 1
        if self.quote_error is not None:
            raise self.quote_error
        if symbol not in self.prices:
            raise QuoteNotFoundError(f"No quote data available for {symbol}")
        return {
            "symbol": symbol,
            "price": Decimal(str(self.prices[symbol])),
            "change": Decimal("0"),
            "change_percent": Decimal("0"),
        }

    def search(self, keywords):
        if self.search_error is not None:
            raise self.search_error
        return list(self.matches)


@pytest.fixture(autouse=True)
def fresh_schema():
    """Recreate every table so each test starts from an empty database."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def quote_client():
    return FakeQuoteClient()


@pytest.fixture
def prices(quote_client):
    """Price service with caching disabled and a neutral simulated drift."""
    return PriceService(client=quote_client, cache=QuoteCache(ttl_seconds=0), rng=lambda: 0.48)


@pytest.fixture
def client(prices):
    app.dependency_overrides[get_price_service] = lambda: prices
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def set_market(db):
    """Force the simulated market open (True), closed (False) or back to its schedule (None)."""

    def _set(is_open):
        settings = get_market_settings(db)
        settings.is_market_open_override = is_open
        db.commit()

    return _set


@pytest.fixture
def make_user(db):
    def _make(email="trader@example.com", cash=100000, username=None):
        user = User(email=email, username=username, cash_balance=cash, password_hash=None)
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_position(db):
    def _make(user, symbol, shares, purchase_price, price=None, name=None):
        position = Position(
            user_id=user.id,
            symbol=symbol,
            name=name or symbol,
            shares=shares,
            purchase_price=purchase_price,
            price=price if price is not None else purchase_price,
            change=0,
            change_percent=0,
            total_value=(price if price is not None else purchase_price) * shares,
        )
        db.add(position)
        db.commit()
        return position

    return _make


@pytest.fixture
def register(client):
    """Register through the API and return (token, user payload)."""

    def _register(email="trader@example.com", password=PASSWORD, **extra):
        response = client.post("/auth/register", json={"email": email, "password": password, **extra})
        assert response.status_code == 200, response.text
        body = response.json()
        return body["access_token"], body["user"]

    return _register


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def headers():
    return auth_headers
