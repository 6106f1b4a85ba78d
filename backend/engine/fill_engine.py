"""Order matching and fill engine.

Works on an in-memory Ledger (see ``backend.engine.ledger``); loading and
saving is the caller's job. Every order moves open → filled | rejected |
canceled exactly once. Insufficient cash or position is a terminal
``rejected`` state, not an exception.
"""

import logging
import math
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from backend.errors import NotFoundError, OrderValidationError
from backend.engine.ledger import Ledger, new_entity_id, utcnow
from backend.models.order import PaperOrder
from backend.models.position import Position
from backend.models.trade import ClosedTrade
from backend.services import market_data
from backend.services.symbols import clean_symbol
from backend.utils.constants import MAX_ORDER_QUANTITY, ORDER_OPEN, ORDER_SIDES, ORDER_TYPES

logger = logging.getLogger(__name__)

PriceFetcher = Callable[[Iterable[str]], Awaitable[dict[str, float]]]

AWAITING_PROVIDER_FILL = "awaiting_provider_fill"


def positive_or_none(value) -> float | None:
    """Finite positive float, else None (blank / NaN / zero / negative)."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


# ---------------------------------------------------------------------------
# Positions
# ---------------------------------------------------------------------------

def merge_position(
    ledger: Ledger,
    symbol: str,
    qty: float,
    fill_price: float,
    stop_loss: float | None = None,
    take_profit: float | None = None,
) -> Position:
    """Open or add to a position using a volume-weighted average cost basis."""
    stop_loss = positive_or_none(stop_loss)
    take_profit = positive_or_none(take_profit)
    existing = ledger.positions.get(symbol)
    if existing is None:
        pos = Position(
            account_id=ledger.account.id,
            symbol=symbol,
            qty=qty,
            avg_price=fill_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            opened_at=utcnow(),
        )
        ledger.positions[symbol] = pos
        return pos

    total_qty = existing.qty + qty
    existing.avg_price = (existing.avg_price * existing.qty + fill_price * qty) / total_qty
    existing.qty = total_qty
    if stop_loss is not None:
        existing.stop_loss = stop_loss
    if take_profit is not None:
        existing.take_profit = take_profit
    return existing


@dataclass
class CloseResult:
    ok: bool
    error: str | None = None
    realized: float = 0.0
    trade: ClosedTrade | None = None


def close_position_qty(
    ledger: Ledger,
    symbol: str,
    qty: float,
    fill_price: float,
    reason: str | None = None,
) -> CloseResult:
    """Reduce a position, credit cash and append one ClosedTrade."""
    position = ledger.positions.get(symbol)
    if position is None or qty <= 0:
        return CloseResult(ok=False, error="No position")
    if position.qty < qty:
        return CloseResult(ok=False, error="Insufficient position quantity")

    realized = (fill_price - position.avg_price) * qty
    ledger.account.cash += fill_price * qty
    position.qty -= qty
    if position.qty <= 0:
        del ledger.positions[symbol]
        ledger.removed_positions.append(position)

    trade = ClosedTrade(
        id=new_entity_id("trade"),
        account_id=ledger.account.id,
        symbol=symbol,
        qty=qty,
        entry_price=position.avg_price,
        exit_price=fill_price,
        realized_pnl=realized,
        reason=reason or "manual",
        closed_at=utcnow(),
    )
    ledger.closed_trades.append(trade)
    logger.info(
        f"Closed {qty:g} {symbol} @ {fill_price:.6g} "
        f"(entry {position.avg_price:.6g}, pnl {realized:+.2f}, {trade.reason})"
    )
    return CloseResult(ok=True, realized=realized, trade=trade)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

def evaluate_limit_fill(order: PaperOrder, price: float) -> bool:
    """True when the order may fill at ``price``. Market orders always may."""
    if order.order_type != "limit":
        return True
    if order.limit_price is None:
        return False
    if order.side == "buy":
        return price <= order.limit_price
    if order.side == "sell":
        return price >= order.limit_price
    return False


def _finalize(order: PaperOrder, status: str, reason: str, fill_price: float | None = None):
    """The single open → terminal transition."""
    now = utcnow()
    order.status = status
    order.reason = reason
    order.updated_at = now
    if status == "filled":
        order.filled_price = fill_price
        order.filled_at = now


def fill_order(ledger: Ledger, order: PaperOrder, fill_price: float, reason: str = "filled") -> PaperOrder:
    """Fill an open order against the ledger. No-op for non-open orders."""
    if order.status != ORDER_OPEN:
        logger.debug(f"Order {order.id} already {order.status}, not filling")
        return order

    if order.side == "buy":
        cost = fill_price * order.quantity
        if ledger.account.cash < cost:
            _finalize(order, "rejected", "insufficient_cash")
            logger.info(f"Order {order.id} rejected: cash {ledger.account.cash:.2f} < cost {cost:.2f}")
            return order
        ledger.account.cash -= cost
        merge_position(ledger, order.symbol, order.quantity, fill_price, order.stop_loss, order.take_profit)
        _finalize(order, "filled", reason, fill_price)
        logger.info(f"Order {order.id} filled: buy {order.quantity} {order.symbol} @ {fill_price:.6g}")
        return order

    closed = close_position_qty(ledger, order.symbol, order.quantity, fill_price, reason)
    if not closed.ok:
        _finalize(order, "rejected", closed.error)
        logger.info(f"Order {order.id} rejected: {closed.error}")
        return order
    _finalize(order, "filled", reason, fill_price)
    logger.info(f"Order {order.id} filled: sell {order.quantity} {order.symbol} @ {fill_price:.6g}")
    return order


def terminate_order(order: PaperOrder, status: str, reason: str) -> bool:
    """Cancel or reject an open order without touching cash or positions."""
    if order.status != ORDER_OPEN:
        return False
    _finalize(order, status, reason)
    return True


def validate_order_request(
    symbol: str | None,
    side: str | None,
    quantity,
    order_type: str | None = "market",
    limit_price=None,
) -> tuple[str, str, int, str, float | None]:
    """Normalize order input or raise OrderValidationError before any state change."""
    symbol = clean_symbol(symbol)
    side = str(side or "").strip().lower()
    order_type = str(order_type or "market").strip().lower()
    try:
        value = float(quantity)
        qty = int(value) if math.isfinite(value) else 0
        if value != qty:  # fractional quantities are not allowed
            qty = 0
    except (TypeError, ValueError):
        qty = 0
    if not symbol or side not in ORDER_SIDES or not 0 < qty <= MAX_ORDER_QUANTITY:
        raise OrderValidationError("Invalid order payload")
    if order_type not in ORDER_TYPES:
        raise OrderValidationError(f"orderType must be one of: {', '.join(ORDER_TYPES)}")
    limit = positive_or_none(limit_price)
    if order_type == "limit" and limit is None:
        raise OrderValidationError("limitPrice is required for limit orders")
    return symbol, side, qty, order_type, limit if order_type == "limit" else None


def create_order(
    ledger: Ledger,
    symbol: str,
    side: str,
    quantity: int,
    order_type: str = "market",
    limit_price: float | None = None,
    stop_loss: float | None = None,
    take_profit: float | None = None,
) -> PaperOrder:
    """Append a new open order to the ledger."""
    now = utcnow()
    order = PaperOrder(
        id=new_entity_id("ord"),
        account_id=ledger.account.id,
        symbol=symbol,
        side=side,
        quantity=quantity,
        order_type=order_type,
        limit_price=limit_price,
        stop_loss=positive_or_none(stop_loss),
        take_profit=positive_or_none(take_profit),
        status=ORDER_OPEN,
        created_at=now,
        updated_at=now,
    )
    ledger.orders.append(order)
    return order


async def submit_order(
    ledger: Ledger,
    symbol: str,
    side: str,
    quantity: int,
    order_type: str = "market",
    limit_price: float | None = None,
    stop_loss: float | None = None,
    take_profit: float | None = None,
) -> tuple[PaperOrder, float]:
    """Validate, price, create and (when marketable) fill an order.

    Raises OrderValidationError before any mutation, and PriceUnavailable
    when the symbol cannot be priced. Returns (order, market_price).
    """
    symbol, side, quantity, order_type, limit_price = validate_order_request(
        symbol, side, quantity, order_type, limit_price
    )
    market_price = await market_data.fetch_latest_price(symbol)

    order = create_order(ledger, symbol, side, quantity, order_type, limit_price, stop_loss, take_profit)
    if order_type == "market":
        fill_order(ledger, order, market_price, "market_fill")
    elif evaluate_limit_fill(order, market_price):
        fill_order(ledger, order, market_price, "limit_hit")
    else:
        logger.info(f"Order {order.id} resting: {side} {quantity} {symbol} limit {limit_price}")

    await run_automation(ledger)
    ledger.touch()
    return order, market_price


def cancel_order(ledger: Ledger, order_id: str) -> PaperOrder:
    order = ledger.find_order(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    if order.status != ORDER_OPEN:
        raise OrderValidationError("Only open orders can be canceled")
    if order.routed_to_provider:
        raise OrderValidationError("Order is awaiting a provider fill and cannot be canceled locally")
    terminate_order(order, "canceled", "user_canceled")
    ledger.touch()
    logger.info(f"Order {order.id} canceled by user")
    return order


def protect_position(
    ledger: Ledger,
    symbol: str,
    stop_loss: float | None = None,
    take_profit: float | None = None,
) -> Position:
    """Set stop-loss / take-profit on an open position; absent values are kept."""
    pos = ledger.positions.get(clean_symbol(symbol))
    if pos is None:
        raise NotFoundError("Position not found")
    stop_loss = positive_or_none(stop_loss)
    take_profit = positive_or_none(take_profit)
    if stop_loss is not None:
        pos.stop_loss = stop_loss
    if take_profit is not None:
        pos.take_profit = take_profit
    ledger.touch()
    return pos


# ---------------------------------------------------------------------------
# Automation pass
# ---------------------------------------------------------------------------

def apply_position_exits(ledger: Ledger, prices: dict[str, float]) -> list[ClosedTrade]:
    """Close positions whose stop-loss or take-profit is hit.

    Stop-loss is checked first; a position closed by it no longer exists, so
    it cannot also trigger take-profit. Unpriced symbols are skipped.
    """
    closed: list[ClosedTrade] = []
    for symbol in list(ledger.positions):
        pos = ledger.positions[symbol]
        px = prices.get(symbol)
        if px is None:
            continue
        if pos.stop_loss is not None and px <= pos.stop_loss:
            result = close_position_qty(ledger, symbol, pos.qty, px, "stop_loss")
        elif pos.take_profit is not None and px >= pos.take_profit:
            result = close_position_qty(ledger, symbol, pos.qty, px, "take_profit")
        else:
            continue
        if result.trade is not None:
            closed.append(result.trade)
    return closed


async def run_automation(ledger: Ledger, fetch_prices: PriceFetcher | None = None) -> dict[str, float]:
    """Evaluate resting limit orders and position exits against fresh prices.

    Prices for every open-order and open-position symbol are fetched in one
    concurrent round; fills are then applied sequentially. Orders routed to
    an external provider are left for reconciliation. Returns the price map
    (partial when some fetches failed).
    """
    fetch_prices = fetch_prices or market_data.fetch_latest_prices
    resting = [o for o in ledger.open_orders() if not o.routed_to_provider]
    symbols = {o.symbol for o in resting} | set(ledger.positions)
    if not symbols:
        return {}

    prices = await fetch_prices(sorted(symbols))

    for order in resting:
        px = prices.get(order.symbol)
        if px is None or order.order_type != "limit":
            continue
        if evaluate_limit_fill(order, px):
            fill_order(ledger, order, px, "limit_hit")

    apply_position_exits(ledger, prices)
    ledger.touch()
    return prices
