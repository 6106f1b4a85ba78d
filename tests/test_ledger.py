"""Tests for ledger persistence and the per-user ledger lock."""

import asyncio
from unittest.mock import patch

import pytest
from sqlmodel import Session

from backend.engine import fill_engine, ledger as ledger_store
from backend.engine.ledger import account_lock, load_ledger, save_ledger
from backend.models.user import User


@pytest.fixture(autouse=True)
def _fresh_locks(monkeypatch):
    # asyncio locks bind to the loop they first wait on; each test gets its own loop
    monkeypatch.setattr(ledger_store, "_account_locks", {})


@pytest.fixture
def second_user(session) -> User:
    u = User(username="other")
    session.add(u)
    session.commit()
    session.refresh(u)
    return u


async def _yielding_price(symbol: str) -> float:
    # Suspend like a real quote request so concurrent flows can interleave
    await asyncio.sleep(0.01)
    return 100.0


# ---------------------------------------------------------------------------
# 1. Load / save
# ---------------------------------------------------------------------------

class TestLedgerStore:
    def test_first_load_creates_funded_account(self, session, user):
        ledger = load_ledger(session, user.id)
        assert ledger.cash == 100000.0
        assert ledger.positions == {} and ledger.orders == []

    def test_closed_position_is_deleted_and_can_reopen(self, session, user):
        ledger = load_ledger(session, user.id)
        fill_engine.merge_position(ledger, "AAPL", 5, 10.0)
        save_ledger(session, ledger)

        ledger = load_ledger(session, user.id)
        fill_engine.close_position_qty(ledger, "AAPL", 5, 12.0)
        fill_engine.merge_position(ledger, "AAPL", 2, 13.0)
        save_ledger(session, ledger)

        ledger = load_ledger(session, user.id)
        assert ledger.positions["AAPL"].qty == 2
        assert len(ledger.closed_trades) == 1


# ---------------------------------------------------------------------------
# 2. Per-user lock
# ---------------------------------------------------------------------------

class TestAccountLock:
    @pytest.mark.asyncio
    async def test_same_user_sections_do_not_interleave(self):
        events = []

        async def section(name):
            async with account_lock(9001):
                events.append(f"{name}-start")
                await asyncio.sleep(0.01)
                events.append(f"{name}-end")

        await asyncio.gather(section("a"), section("b"))
        assert events in (
            ["a-start", "a-end", "b-start", "b-end"],
            ["b-start", "b-end", "a-start", "a-end"],
        )

    @pytest.mark.asyncio
    async def test_other_users_are_not_blocked(self):
        release = asyncio.Event()
        other_done = asyncio.Event()

        async def holder():
            async with account_lock(9002):
                await asyncio.wait_for(release.wait(), timeout=1)

        async def other():
            async with account_lock(9003):
                other_done.set()
            release.set()

        await asyncio.gather(holder(), other())
        assert other_done.is_set()

    @pytest.mark.asyncio
    async def test_concurrent_submissions_both_debit_cash(self, db_engine, user):
        async def submit():
            async with account_lock(user.id):
                with Session(db_engine) as s:
                    ledger = load_ledger(s, user.id)
                    await fill_engine.submit_order(ledger, "AAPL", "buy", 10)
                    save_ledger(s, ledger)

        with patch("backend.services.market_data.fetch_latest_price", _yielding_price):
            await asyncio.gather(submit(), submit())

        with Session(db_engine) as s:
            ledger = load_ledger(s, user.id)
            assert ledger.cash == pytest.approx(100000.0 - 2 * 1000.0)
            assert ledger.positions["AAPL"].qty == 20
            assert len(ledger.orders) == 2

    @pytest.mark.asyncio
    async def test_different_users_submit_in_parallel(self, db_engine, user, second_user):
        async def submit(user_id):
            async with account_lock(user_id):
                with Session(db_engine) as s:
                    ledger = load_ledger(s, user_id)
                    await fill_engine.submit_order(ledger, "AAPL", "buy", 1)
                    save_ledger(s, ledger)

        with patch("backend.services.market_data.fetch_latest_price", _yielding_price):
            await asyncio.gather(submit(user.id), submit(second_user.id))

        with Session(db_engine) as s:
            assert load_ledger(s, user.id).cash == pytest.approx(99900.0)
            assert load_ledger(s, second_user.id).cash == pytest.approx(99900.0)
