"""Shared fixtures: in-memory database, price stubs, authenticated API client."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from backend.database import create_db_and_tables, get_session
from backend.errors import PriceUnavailable
from backend.models.user import User
from backend.services.auth import create_access_token


@pytest.fixture
def db_engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_db_and_tables(test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session(db_engine):
    with Session(db_engine) as s:
        yield s


@pytest.fixture
def user(session) -> User:
    u = User(username="trader")
    session.add(u)
    session.commit()
    session.refresh(u)
    return u


@pytest.fixture
def prices():
    """Mutable symbol -> price map backing the patched price oracle.

    Symbols missing from the map raise PriceUnavailable, like a failed fetch.
    """
    table: dict[str, float] = {}

    async def _fake_latest_price(symbol: str) -> float:
        if symbol not in table:
            raise PriceUnavailable(f"No latest price for {symbol}")
        return table[symbol]

    with patch(
        "backend.services.market_data.fetch_latest_price",
        AsyncMock(side_effect=_fake_latest_price),
    ):
        yield table


@pytest.fixture
def client(db_engine, user, prices):
    """TestClient bound to the in-memory database (scheduler not started)."""
    from backend.main import app

    def _override_session():
        with Session(db_engine) as s:
            yield s

    app.dependency_overrides[get_session] = _override_session
    test_client = TestClient(app)
    test_client.headers.update({"Authorization": f"Bearer {create_access_token(user.username)}"})
    yield test_client
    app.dependency_overrides.clear()
