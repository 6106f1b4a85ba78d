"""Tests for portfolio summary and risk analytics."""

import numpy as np
import pytest

from backend.engine import fill_engine
from backend.errors import InsufficientData
from backend.services import portfolio_analytics as pa
from tests.factories import make_ledger


def _history(table: dict[str, list[float]]):
    async def _fetch(symbol, timeframe):
        assert timeframe == "1D"
        if symbol not in table:
            raise InsufficientData(f"no history for {symbol}")
        return table[symbol]
    return _fetch


# ---------------------------------------------------------------------------
# 1. Statistics helpers
# ---------------------------------------------------------------------------

class TestStatistics:
    def test_returns_skip_zero_previous_close(self):
        returns = pa.returns_from_closes([100.0, 110.0, 0.0, 50.0, 55.0])
        assert list(returns) == pytest.approx([0.1, -1.0, 0.1])

    def test_returns_keep_newest_points(self):
        closes = list(range(1, 200))
        assert len(pa.returns_from_closes(closes, 120)) == 120

    def test_population_std_dev(self):
        assert pa.std_dev([2, 4, 4, 4, 5, 5, 7, 9]) == pytest.approx(2.0)
        assert pa.std_dev([]) == 0.0

    def test_correlation_perfect_and_inverse(self):
        a = [0.01, 0.02, -0.01, 0.03]
        assert pa.correlation(a, a) == pytest.approx(1.0)
        assert pa.correlation(a, [-x for x in a]) == pytest.approx(-1.0)

    def test_correlation_uses_aligned_tails(self):
        a = [5.0, 0.01, 0.02, 0.03]
        b = [0.01, 0.02, 0.03]
        assert pa.correlation(a, b) == pytest.approx(1.0)

    def test_correlation_degenerate_is_zero(self):
        assert pa.correlation([0.01], [0.02]) == 0.0
        assert pa.correlation([0.01, 0.01, 0.01], [0.02, 0.03, 0.01]) == 0.0
        assert pa.correlation([], [0.01, 0.02]) == 0.0

    def test_quantile_floor_index(self):
        values = sorted(float(i) for i in range(100))
        assert pa.quantile(values, 0.05) == 5.0
        assert pa.quantile([3.0], 0.05) == 3.0
        assert pa.quantile([], 0.05) == 0.0

    def test_portfolio_returns_ignores_empty_series(self):
        blend = pa.portfolio_returns(
            {"A": np.array([0.01, 0.02, 0.03]), "B": np.array([])},
            {"A": 0.5, "B": 0.5},
        )
        assert list(blend) == pytest.approx([0.005, 0.01, 0.015])

    def test_risk_score_is_clamped(self):
        returns = np.array([-0.5, 0.4, -0.3, 0.2])
        assert pa.risk_metrics(returns, 100.0)["riskScore"] == 100.0


# ---------------------------------------------------------------------------
# 2. Summary
# ---------------------------------------------------------------------------

class TestSummary:
    def test_summary_with_priced_and_unpriced_positions(self):
        ledger = make_ledger(cash=10000.0)
        fill_engine.merge_position(ledger, "AAPL", 10, 100.0)
        fill_engine.merge_position(ledger, "MSFT", 5, 300.0)
        fill_engine.create_order(ledger, "TSLA", "buy", 1, "limit", 10.0)
        fill_engine.close_position_qty(ledger, "AAPL", 2, 110.0)
        summary = pa.compute_summary(ledger, {"AAPL": 120.0})
        assert summary == {
            "cash": 10220.0,
            "marketValue": 960.0,
            "unrealizedPnl": 160.0,
            "realizedPnl": 20.0,
            "equity": 11180.0,
            "positionsCount": 2,
            "openOrders": 1,
        }


# ---------------------------------------------------------------------------
# 3. Portfolio analytics
# ---------------------------------------------------------------------------

class TestPortfolioAnalytics:
    @pytest.mark.asyncio
    async def test_empty_portfolio_shape(self):
        result = await pa.build_portfolio_analytics(make_ledger(), {}, _history({}))
        assert result == pa.empty_analytics()

    @pytest.mark.asyncio
    async def test_allocation_exposure_and_rebalance(self):
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 10, 100.0)            # 1200 at live price
        fill_engine.merge_position(ledger, "BINANCE:BTCUSDT", 1, 600.0)  # unpriced -> cost basis
        fill_engine.merge_position(ledger, "FX:EURUSD", 200, 1.0)        # 200
        result = await pa.build_portfolio_analytics(ledger, {"AAPL": 120.0}, _history({}))

        allocation = {a["symbol"]: a for a in result["allocation"]}
        assert allocation["AAPL"]["value"] == 1200.0
        assert allocation["AAPL"]["weightPct"] == 60.0
        assert allocation["BINANCE:BTCUSDT"]["value"] == 600.0
        assert allocation["FX:EURUSD"]["weightPct"] == 10.0

        exposure = result["exposure"]
        assert exposure["byMarket"] == {"stock": 1200.0, "crypto": 600.0, "forex": 200.0}
        assert exposure["byCountry"] == {"US": 1200.0, "Global": 600.0, "Multi": 200.0}
        assert exposure["bySector"] == {"Equities": 1200.0, "Digital Assets": 600.0, "FX": 200.0}

        assert result["rebalance"] == [
            {
                "symbol": "AAPL",
                "action": "trim",
                "reason": "Position concentration above 45%",
                "targetWeightPct": 30.0,
            }
        ]
        # No history: correlation matrix is all zeros and risk comes from concentration only
        assert result["correlation"]["symbols"] == ["AAPL", "BINANCE:BTCUSDT", "FX:EURUSD"]
        assert result["correlation"]["matrix"] == [[0.0] * 3] * 3
        assert result["risk"] == {
            "var95DailyPct": 0.0,
            "volatilityDailyPct": 0.0,
            "riskScore": 30.0,
            "sampleDays": 0,
        }

    @pytest.mark.asyncio
    async def test_correlation_limited_to_top_weights(self):
        ledger = make_ledger()
        for i, symbol in enumerate(["A", "B", "C", "D", "E", "F", "G"]):
            fill_engine.merge_position(ledger, symbol, 1, 10.0 + i)
        result = await pa.build_portfolio_analytics(ledger, {}, _history({}))
        assert result["correlation"]["symbols"] == ["G", "F", "E", "D", "C", "B"]

    @pytest.mark.asyncio
    async def test_var_and_volatility_from_history(self):
        ledger = make_ledger()
        fill_engine.merge_position(ledger, "AAPL", 1, 100.0)
        # Alternating +1% / -1% daily moves
        closes = [100.0]
        for i in range(60):
            closes.append(closes[-1] * (1.01 if i % 2 == 0 else 0.99))
        result = await pa.build_portfolio_analytics(ledger, {"AAPL": 100.0}, _history({"AAPL": closes}))
        risk = result["risk"]
        assert risk["sampleDays"] == 60
        assert risk["var95DailyPct"] == pytest.approx(1.0)
        assert risk["volatilityDailyPct"] == pytest.approx(1.0)
        # 4 * 1 + 2 * 1 + 0.5 * 100
        assert risk["riskScore"] == pytest.approx(56.0)
        assert result["correlation"]["matrix"] == [[1.0]]
