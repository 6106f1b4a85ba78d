"""Tests for the order matching and fill engine."""

from unittest.mock import AsyncMock

import pytest

from backend.engine import fill_engine
from backend.errors import NotFoundError, OrderValidationError, PriceUnavailable
from tests.factories import make_ledger


def _fixed_prices(table: dict[str, float]):
    async def _fetch(symbols):
        return {s: table[s] for s in symbols if s in table}
    return _fetch


# ---------------------------------------------------------------------------
# 1. Validation
# ---------------------------------------------------------------------------

class TestValidateOrderRequest:
    def test_normalizes_input(self):
        assert fill_engine.validate_order_request(" aapl ", "BUY", "10") == ("AAPL", "buy", 10, "market", None)

    @pytest.mark.parametrize(
        "symbol, side, qty",
        [("", "buy", 1), ("AAPL", "hold", 1), ("AAPL", "buy", 0), ("AAPL", "buy", -3),
         ("AAPL", "buy", 1.5), ("AAPL", "buy", "abc"), ("AAPL", "buy", None)],
    )
    def test_invalid_payload(self, symbol, side, qty):
        with pytest.raises(OrderValidationError):
            fill_engine.validate_order_request(symbol, side, qty)

    @pytest.mark.parametrize(
        "qty", [float("inf"), float("-inf"), float("nan"), "Infinity", 1e20, 2**64],
    )
    def test_non_finite_or_oversized_quantity(self, qty):
        with pytest.raises(OrderValidationError, match="Invalid order payload"):
            fill_engine.validate_order_request("AAPL", "buy", qty)

    def test_large_whole_quantity_accepted(self):
        assert fill_engine.validate_order_request("AAPL", "buy", 2**53)[2] == 2**53

    def test_limit_requires_limit_price(self):
        with pytest.raises(OrderValidationError, match="limitPrice"):
            fill_engine.validate_order_request("AAPL", "buy", 1, "limit", None)

    def test_unknown_order_type(self):
        with pytest.raises(OrderValidationError):
            fill_engine.validate_order_request("AAPL", "buy", 1, "stop", 10)

    def test_market_order_drops_limit_price(self):
        assert fill_engine.validate_order_request("AAPL", "buy", 1, "market", 10)[4] is None


# ---------------------------------------------------------------------------
# 2. Positions and fills
# ---------------------------------------------------------------------------

class TestFills:
    def test_buy_debits_cash_and_opens_position(self):
        ledger = make_ledger()
        order = fill_engine.create_order(ledger, "AAPL", "buy", 10)
        fill_engine.fill_order(ledger, order, 50.0, "market_fill")
        assert order.status == "filled"
        assert order.filled_price == 50.0
        assert ledger.cash == 99500.0
        assert ledger.positions["AAPL"].qty == 10
        assert ledger.positions["AAPL"].avg_price == 50.0

    def test_buy_with_insufficient_cash_is_rejected_state(self):
        ledger = make_ledger(cash=100.0)
        order = fill_engine.create_order(ledger, "AAPL", "buy", 10)
        fill_engine.fill_order(ledger, order, 50.0)
        assert order.status == "rejected"
        assert order.reason == "insufficient_cash"
        assert ledger.cash == 100.0
        assert ledger.positions == {}

    def test_cost_basis_is_invariant_to_fill_splitting(self):
        one = make_ledger()
        fill_engine.merge_position(one, "AAPL", 10, 100.0)
        split = make_ledger()
        fill_engine.merge_position(split, "AAPL", 5, 100.0)
        fill_engine.merge_position(split, "AAPL", 5, 100.0)
        assert one.positions["AAPL"].avg_price == split.positions["AAPL"].avg_price == 100.0
        assert split.positions["AAPL"].qty == 10

    def test_weighted_average_and_sl_tp_overwrite(self):
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 10, 100.0, stop_loss=90.0)
        fill_engine.merge_position(ledger, "AAPL", 10, 110.0, take_profit=130.0)
        pos = ledger.positions["AAPL"]
        assert pos.avg_price == pytest.approx(105.0)
        assert pos.stop_loss == 90.0
        assert pos.take_profit == 130.0

    def test_full_sell_removes_position_and_appends_one_trade(self):
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 10, 50.0)
        order = fill_engine.create_order(ledger, "AAPL", "sell", 10)
        fill_engine.fill_order(ledger, order, 55.0)
        assert "AAPL" not in ledger.positions
        assert len(ledger.removed_positions) == 1
        assert len(ledger.closed_trades) == 1
        trade = ledger.closed_trades[0]
        assert trade.realized_pnl == pytest.approx(50.0)
        assert ledger.cash == pytest.approx(100000.0 + 550.0)

    def test_partial_sell_keeps_positive_qty(self):
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 10, 50.0)
        order = fill_engine.create_order(ledger, "AAPL", "sell", 4)
        fill_engine.fill_order(ledger, order, 60.0)
        assert ledger.positions["AAPL"].qty == 6
        assert ledger.closed_trades[0].qty == 4

    def test_sell_without_position(self):
        ledger = make_ledger()
        order = fill_engine.create_order(ledger, "AAPL", "sell", 1)
        fill_engine.fill_order(ledger, order, 10.0)
        assert order.status == "rejected"
        assert order.reason == "No position"

    def test_insufficient_position_leaves_ledger_untouched(self):
        """Sell 5 against a position of 3."""
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 3, 50.0)
        cash_before = ledger.cash
        order = fill_engine.create_order(ledger, "AAPL", "sell", 5)
        fill_engine.fill_order(ledger, order, 60.0)
        assert order.status == "rejected"
        assert order.reason == "Insufficient position quantity"
        assert ledger.cash == cash_before
        assert ledger.positions["AAPL"].qty == 3
        assert ledger.closed_trades == []

    def test_terminal_orders_never_change(self):
        ledger = make_ledger()
        order = fill_engine.create_order(ledger, "AAPL", "buy", 1)
        fill_engine.fill_order(ledger, order, 10.0)
        fill_engine.fill_order(ledger, order, 20.0)
        assert fill_engine.terminate_order(order, "canceled", "late") is False
        assert order.status == "filled"
        assert order.filled_price == 10.0
        assert ledger.positions["AAPL"].qty == 1


# ---------------------------------------------------------------------------
# 3. Submission
# ---------------------------------------------------------------------------

class TestSubmitOrder:
    @pytest.mark.asyncio
    async def test_market_buy(self, prices):
        prices["AAPL"] = 50.0
        ledger = make_ledger()
        order, market_price = await fill_engine.submit_order(ledger, "AAPL", "buy", 10)
        assert market_price == 50.0
        assert order.status == "filled"
        assert order.reason == "market_fill"
        assert ledger.cash == 99500.0
        assert ledger.positions["AAPL"].qty == 10
        assert ledger.positions["AAPL"].avg_price == 50.0

    @pytest.mark.asyncio
    async def test_limit_buy_rests_then_fills_at_market(self, prices):
        prices["AAPL"] = 42.0
        ledger = make_ledger()
        order, _ = await fill_engine.submit_order(ledger, "AAPL", "buy", 10, "limit", 40.0)
        assert order.status == "open"

        prices["AAPL"] = 39.0
        await fill_engine.run_automation(ledger)
        assert order.status == "filled"
        assert order.filled_price == 39.0
        assert order.reason == "limit_hit"
        assert ledger.cash == pytest.approx(100000.0 - 390.0)

    @pytest.mark.asyncio
    async def test_marketable_limit_fills_immediately(self, prices):
        prices["AAPL"] = 38.0
        ledger = make_ledger()
        order, _ = await fill_engine.submit_order(ledger, "AAPL", "buy", 1, "limit", 40.0)
        assert order.status == "filled"
        assert order.filled_price == 38.0

    @pytest.mark.asyncio
    async def test_price_failure_is_hard_and_creates_nothing(self, prices):
        ledger = make_ledger()
        with pytest.raises(PriceUnavailable):
            await fill_engine.submit_order(ledger, "NOPE", "buy", 1)
        assert ledger.orders == []

    @pytest.mark.asyncio
    async def test_validation_happens_before_pricing(self, prices):
        ledger = make_ledger()
        with pytest.raises(OrderValidationError):
            await fill_engine.submit_order(ledger, "AAPL", "buy", 0)
        assert ledger.orders == []


# ---------------------------------------------------------------------------
# 4. Cancel / protect
# ---------------------------------------------------------------------------

class TestCancelAndProtect:
    def test_cancel_open_order(self):
        ledger = make_ledger()
        order = fill_engine.create_order(ledger, "AAPL", "buy", 1, "limit", 10.0)
        fill_engine.cancel_order(ledger, order.id)
        assert order.status == "canceled"
        assert order.reason == "user_canceled"

    def test_cancel_unknown_order(self):
        with pytest.raises(NotFoundError):
            fill_engine.cancel_order(make_ledger(), "ord-missing")

    def test_cancel_filled_order_rejected(self):
        ledger = make_ledger()
        order = fill_engine.create_order(ledger, "AAPL", "buy", 1)
        fill_engine.fill_order(ledger, order, 10.0)
        with pytest.raises(OrderValidationError):
            fill_engine.cancel_order(ledger, order.id)

    def test_cancel_provider_routed_order_rejected(self):
        ledger = make_ledger()
        order = fill_engine.create_order(ledger, "AAPL", "buy", 1)
        order.routed_to_provider = True
        with pytest.raises(OrderValidationError):
            fill_engine.cancel_order(ledger, order.id)
        assert order.status == "open"

    def test_protect_keeps_absent_values(self):
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 1, 100.0, stop_loss=90.0, take_profit=120.0)
        pos = fill_engine.protect_position(ledger, "aapl", take_profit=125.0)
        assert pos.stop_loss == 90.0
        assert pos.take_profit == 125.0

    def test_protect_missing_position(self):
        with pytest.raises(NotFoundError):
            fill_engine.protect_position(make_ledger(), "AAPL", stop_loss=1.0)


# ---------------------------------------------------------------------------
# 5. Automation pass
# ---------------------------------------------------------------------------

class TestAutomation:
    @pytest.mark.asyncio
    async def test_stop_loss_closes_position(self):
        ledger = make_ledger(cash=99500.0)
        fill_engine.merge_position(ledger, "AAPL", 10, 50.0, stop_loss=45.0)
        await fill_engine.run_automation(ledger, _fixed_prices({"AAPL": 44.0}))
        assert "AAPL" not in ledger.positions
        trade = ledger.closed_trades[0]
        assert (trade.qty, trade.entry_price, trade.exit_price) == (10, 50.0, 44.0)
        assert trade.realized_pnl == pytest.approx(-60.0)
        assert trade.reason == "stop_loss"
        assert ledger.cash == pytest.approx(99500.0 + 440.0)

    @pytest.mark.asyncio
    async def test_take_profit(self):
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 2, 50.0, take_profit=60.0)
        await fill_engine.run_automation(ledger, _fixed_prices({"AAPL": 61.0}))
        assert ledger.closed_trades[0].reason == "take_profit"

    @pytest.mark.asyncio
    async def test_stop_loss_checked_before_take_profit(self):
        ledger = make_ledger()
        # Degenerate bracket where both trigger at the same price
        fill_engine.merge_position(ledger, "AAPL", 2, 50.0, stop_loss=55.0, take_profit=52.0)
        await fill_engine.run_automation(ledger, _fixed_prices({"AAPL": 53.0}))
        assert len(ledger.closed_trades) == 1
        assert ledger.closed_trades[0].reason == "stop_loss"

    @pytest.mark.asyncio
    async def test_unpriced_symbols_are_skipped(self):
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 2, 50.0, stop_loss=45.0)
        order = fill_engine.create_order(ledger, "MSFT", "buy", 1, "limit", 500.0)
        prices = await fill_engine.run_automation(ledger, _fixed_prices({}))
        assert prices == {}
        assert "AAPL" in ledger.positions
        assert order.status == "open"

    @pytest.mark.asyncio
    async def test_fetches_all_symbols_in_one_round(self):
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 1, 50.0)
        fill_engine.create_order(ledger, "MSFT", "buy", 1, "limit", 1.0)
        fetch = AsyncMock(return_value={})
        await fill_engine.run_automation(ledger, fetch)
        fetch.assert_awaited_once_with(["AAPL", "MSFT"])

    @pytest.mark.asyncio
    async def test_provider_routed_orders_are_left_alone(self):
        ledger = make_ledger()
        order = fill_engine.create_order(ledger, "AAPL", "buy", 1)
        order.routed_to_provider = True
        order.reason = fill_engine.AWAITING_PROVIDER_FILL
        fetch = AsyncMock(return_value={"AAPL": 10.0})
        await fill_engine.run_automation(ledger, fetch)
        assert order.status == "open"
        fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resting_sell_limit(self):
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 5, 50.0)
        order = fill_engine.create_order(ledger, "AAPL", "sell", 5, "limit", 60.0)
        await fill_engine.run_automation(ledger, _fixed_prices({"AAPL": 59.0}))
        assert order.status == "open"
        await fill_engine.run_automation(ledger, _fixed_prices({"AAPL": 61.0}))
        assert order.status == "filled"
        assert order.filled_price == 61.0
        assert "AAPL" not in ledger.positions
