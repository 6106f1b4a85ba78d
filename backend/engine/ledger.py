"""Per-account ledger: in-memory view, load/save, and per-user locking.

A request loads the user's ledger, mutates it through the fill engine and
saves it back in one session. ``account_lock`` serialises that
load → mutate → save sequence per user so two requests for the same account
never interleave; different users never share a lock.
"""

import asyncio
import logging
import secrets
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlmodel import Session, select

from backend.config import settings
from backend.models.account import PaperAccount
from backend.models.order import PaperOrder
from backend.models.position import Position
from backend.models.trade import ClosedTrade
from backend.utils.constants import ORDER_OPEN

logger = logging.getLogger(__name__)

_account_locks: dict[int, asyncio.Lock] = {}
_account_locks_guard = asyncio.Lock()


def new_entity_id(prefix: str) -> str:
    return f"{prefix}-{secrets.token_hex(5)}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Ledger:
    account: PaperAccount
    positions: dict[str, Position] = field(default_factory=dict)
    orders: list[PaperOrder] = field(default_factory=list)
    closed_trades: list[ClosedTrade] = field(default_factory=list)
    # Positions that reached zero quantity; deleted from the store on save
    removed_positions: list[Position] = field(default_factory=list)

    @property
    def cash(self) -> float:
        return self.account.cash

    def open_orders(self) -> list[PaperOrder]:
        return [o for o in self.orders if o.status == ORDER_OPEN]

    def find_order(self, order_id: str) -> PaperOrder | None:
        for order in self.orders:
            if order.id == order_id:
                return order
        return None

    def touch(self):
        self.account.updated_at = utcnow()


def get_or_create_account(session: Session, user_id: int) -> PaperAccount:
    """Return the user's account, creating it with default cash on first use."""
    account = session.exec(
        select(PaperAccount).where(PaperAccount.user_id == user_id)
    ).first()
    if account is None:
        account = PaperAccount(user_id=user_id, cash=settings.starting_cash)
        session.add(account)
        session.commit()
        session.refresh(account)
        logger.info(f"Created paper account for user {user_id} with ${account.cash:,.2f}")
    return account


def load_ledger(session: Session, user_id: int) -> Ledger:
    account = get_or_create_account(session, user_id)
    positions = session.exec(
        select(Position).where(Position.account_id == account.id)
    ).all()
    orders = session.exec(
        select(PaperOrder)
        .where(PaperOrder.account_id == account.id)
        .order_by(PaperOrder.created_at)
    ).all()
    trades = session.exec(
        select(ClosedTrade)
        .where(ClosedTrade.account_id == account.id)
        .order_by(ClosedTrade.closed_at)
    ).all()
    return Ledger(
        account=account,
        positions={p.symbol: p for p in positions},
        orders=list(orders),
        closed_trades=list(trades),
    )


def save_ledger(session: Session, ledger: Ledger, commit: bool = True):
    """Persist every ledger record. Removed positions are deleted first so a
    symbol closed and reopened in the same pass does not hit the unique index."""
    for pos in ledger.removed_positions:
        if pos.id is not None:
            session.delete(pos)
    if ledger.removed_positions:
        session.flush()
        ledger.removed_positions.clear()

    session.add(ledger.account)
    session.add_all(ledger.positions.values())
    session.add_all(ledger.orders)
    session.add_all(ledger.closed_trades)
    if commit:
        session.commit()


async def _get_account_lock(user_id: int) -> asyncio.Lock:
    async with _account_locks_guard:
        lock = _account_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            _account_locks[user_id] = lock
        return lock


@asynccontextmanager
async def account_lock(user_id: int):
    """Hold the user's ledger lock for the duration of the block."""
    lock = await _get_account_lock(user_id)
    async with lock:
        yield
