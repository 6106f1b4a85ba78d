"""Paper trading API: summary, orders, positions, closed trades."""

import logging

from fastapi import APIRouter, Depends
from sqlmodel import Session

from backend.api.deps import get_current_user
from backend.database import get_session
from backend.engine import fill_engine
from backend.engine.ledger import Ledger, account_lock, load_ledger, save_ledger
from backend.models.user import User
from backend.schemas.paper import (
    ClosedTradeRead,
    OrderCreate,
    OrderRead,
    PositionRead,
    ProtectRequest,
)
from backend.services.portfolio_analytics import compute_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/paper", tags=["paper"])


def position_view(pos, prices: dict[str, float]) -> dict:
    px = prices.get(pos.symbol)
    view = PositionRead.model_validate(pos)
    if px is not None:
        view.market_price = px
        view.market_value = px * pos.qty
        view.unrealized_pnl = (px - pos.avg_price) * pos.qty
    return view.model_dump(by_alias=True)


def order_view(order) -> dict:
    return OrderRead.model_validate(order).model_dump(by_alias=True)


async def _automated_ledger(session: Session, user_id: int) -> tuple[Ledger, dict[str, float]]:
    """Load the ledger, run one automation pass and persist it. Caller holds the lock."""
    ledger = load_ledger(session, user_id)
    prices = await fill_engine.run_automation(ledger)
    save_ledger(session, ledger)
    return ledger, prices


@router.get("/summary")
async def paper_summary(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    async with account_lock(user.id):
        ledger, prices = await _automated_ledger(session, user.id)
        return {
            "summary": compute_summary(ledger, prices),
            "positions": [position_view(p, prices) for p in ledger.positions.values()],
            "openOrders": [order_view(o) for o in ledger.open_orders()],
        }


@router.get("/orders")
async def list_orders(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """All orders, newest first."""
    async with account_lock(user.id):
        ledger, _ = await _automated_ledger(session, user.id)
        return {"orders": [order_view(o) for o in reversed(ledger.orders)]}


@router.get("/positions")
async def list_positions(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    async with account_lock(user.id):
        ledger, prices = await _automated_ledger(session, user.id)
        return {"positions": [position_view(p, prices) for p in ledger.positions.values()]}


@router.get("/trades")
async def list_closed_trades(
    limit: int = 200,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Closed trades, newest first."""
    async with account_lock(user.id):
        ledger = load_ledger(session, user.id)
    trades = list(reversed(ledger.closed_trades))[: max(limit, 0)]
    return {
        "trades": [ClosedTradeRead.model_validate(t).model_dump(by_alias=True) for t in trades]
    }


@router.post("/order")
async def submit_order(
    body: OrderCreate,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    async with account_lock(user.id):
        ledger = load_ledger(session, user.id)
        order, market_price = await fill_engine.submit_order(
            ledger,
            body.symbol,
            body.side,
            body.quantity,
            body.order_type,
            body.limit_price,
            body.stop_loss,
            body.take_profit,
        )
        save_ledger(session, ledger)
        return {
            "order": order_view(order),
            "summary": compute_summary(ledger, {order.symbol: market_price}),
        }


@router.post("/position/protect")
async def protect_position(
    body: ProtectRequest,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    async with account_lock(user.id):
        ledger = load_ledger(session, user.id)
        pos = fill_engine.protect_position(ledger, body.symbol, body.stop_loss, body.take_profit)
        save_ledger(session, ledger)
        return {"position": position_view(pos, {})}


@router.delete("/order/{order_id}")
async def cancel_order(
    order_id: str,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    async with account_lock(user.id):
        ledger = load_ledger(session, user.id)
        order = fill_engine.cancel_order(ledger, order_id)
        save_ledger(session, ledger)
        return {"order": order_view(order)}
