"""Portfolio summary and risk analytics.

Pure computation over a ledger and a price map, plus one async builder that
pulls daily history for the correlation / VaR section. Nothing here mutates
the ledger.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Iterable

import numpy as np

from backend.engine.ledger import Ledger
from backend.errors import PriceUnavailable
from backend.services import market_data
from backend.services.symbols import resolve_symbol
from backend.utils.constants import (
    CONCENTRATION_LIMIT_PCT,
    CORRELATION_TOP_N,
    REBALANCE_TARGET_PCT,
    RETURN_POINTS,
)

logger = logging.getLogger(__name__)

HistoryFetcher = Callable[[str, str], Awaitable[Iterable[float]]]

COUNTRY_BY_MARKET = {"stock": "US", "crypto": "Global"}
SECTOR_BY_MARKET = {"crypto": "Digital Assets", "forex": "FX", "futures": "Derivatives"}


def compute_summary(ledger: Ledger, prices: dict[str, float]) -> dict:
    """Cash, market value, P&L and counts. Unpriced positions are left out
    of market value and unrealized P&L."""
    market_value = 0.0
    unrealized = 0.0
    for pos in ledger.positions.values():
        px = prices.get(pos.symbol)
        if px is None or pos.qty <= 0:
            continue
        market_value += px * pos.qty
        unrealized += (px - pos.avg_price) * pos.qty
    realized = sum(t.realized_pnl for t in ledger.closed_trades)
    return {
        "cash": round(ledger.cash, 2),
        "marketValue": round(market_value, 2),
        "unrealizedPnl": round(unrealized, 2),
        "realizedPnl": round(realized, 2),
        "equity": round(ledger.cash + market_value, 2),
        "positionsCount": len(ledger.positions),
        "openOrders": len(ledger.open_orders()),
    }


# ---------------------------------------------------------------------------
# Statistics helpers
# ---------------------------------------------------------------------------

def returns_from_closes(closes, max_points: int = RETURN_POINTS) -> np.ndarray:
    """Simple returns between consecutive closes, newest ``max_points`` kept.
    Pairs with a non-finite or zero previous close are skipped."""
    values = np.asarray(list(closes), dtype=float)
    if len(values) < 2:
        return np.array([], dtype=float)
    prev, nxt = values[:-1], values[1:]
    valid = np.isfinite(prev) & np.isfinite(nxt) & (prev != 0)
    out = (nxt[valid] - prev[valid]) / prev[valid]
    return out[-max_points:]


def std_dev(values) -> float:
    """Population standard deviation; 0 for an empty series."""
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return 0.0
    return float(np.std(arr))


def correlation(a, b) -> float:
    """Pearson correlation over the aligned tails of two series.

    Returns 0 when fewer than two points overlap or either side has no variance.
    """
    n = min(len(a), len(b))
    if n < 2:
        return 0.0
    x = np.asarray(a[-n:], dtype=float)
    y = np.asarray(b[-n:], dtype=float)
    dx = x - x.mean()
    dy = y - y.mean()
    denom = float(np.sqrt(np.sum(dx * dx) * np.sum(dy * dy)))
    if not np.isfinite(denom) or denom <= 1e-12:
        return 0.0
    return float(np.sum(dx * dy) / denom)


def quantile(sorted_values, q: float) -> float:
    """Lower empirical quantile: element at floor(q * n), clamped."""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    idx = min(n - 1, max(0, int(np.floor(q * n))))
    return float(sorted_values[idx])


def portfolio_returns(return_map: dict[str, np.ndarray], weights: dict[str, float]) -> np.ndarray:
    """Weighted daily return blend over the common tail of the non-empty series."""
    lengths = [len(r) for r in return_map.values() if len(r) > 0]
    if not lengths:
        return np.array([], dtype=float)
    depth = min(min(lengths), RETURN_POINTS)
    if depth <= 1:
        return np.array([], dtype=float)
    blend = np.zeros(depth)
    for symbol, series in return_map.items():
        if len(series) < depth:
            # Empty series contribute nothing
            continue
        blend += weights.get(symbol, 0.0) * np.asarray(series[-depth:], dtype=float)
    return blend


def risk_metrics(returns: np.ndarray, concentration_pct: float) -> dict:
    sorted_returns = np.sort(returns)
    var95 = 0.0 - quantile(sorted_returns, 0.05) * 100
    volatility = std_dev(returns) * 100
    score = float(np.clip(var95 * 4 + volatility * 2 + concentration_pct * 0.5, 0, 100))
    return {
        "var95DailyPct": round(var95, 2),
        "volatilityDailyPct": round(volatility, 2),
        "riskScore": round(score, 1),
        "sampleDays": int(len(returns)),
    }


def empty_analytics() -> dict:
    return {
        "allocation": [],
        "marketAllocation": [],
        "correlation": {"symbols": [], "matrix": []},
        "risk": {"var95DailyPct": 0, "volatilityDailyPct": 0, "riskScore": 0, "sampleDays": 0},
        "rebalance": [],
        "exposure": {"byMarket": {}, "byCountry": {}, "bySector": {}},
    }


# ---------------------------------------------------------------------------
# Portfolio analytics
# ---------------------------------------------------------------------------

async def _symbol_returns(symbol: str, fetch_history: HistoryFetcher) -> np.ndarray:
    try:
        closes = await fetch_history(symbol, "1D")
    except PriceUnavailable as e:
        logger.warning(f"Analytics: no daily history for {symbol}: {e}")
        return np.array([], dtype=float)
    return returns_from_closes(closes, RETURN_POINTS)


async def build_portfolio_analytics(
    ledger: Ledger,
    prices: dict[str, float],
    fetch_history: HistoryFetcher | None = None,
) -> dict:
    """Allocation, exposure, correlation, VaR, risk score and rebalance hints.

    Args:
        ledger: The account ledger (read only).
        prices: Live prices; positions missing here are valued at cost basis.
        fetch_history: ``(symbol, timeframe) -> close series``; defaults to
            ``market_data.fetch_historical_closes``.
    """
    fetch_history = fetch_history or market_data.fetch_historical_closes
    positions = [p for p in ledger.positions.values() if p.qty > 0]
    if not positions:
        return empty_analytics()

    valuation = []
    for pos in positions:
        px = prices.get(pos.symbol) or pos.avg_price or 0.0
        valuation.append({
            "symbol": pos.symbol,
            "market_type": resolve_symbol(pos.symbol).market_type,
            "value": px * pos.qty,
        })
    total_value = sum(max(0.0, v["value"]) for v in valuation) or 1.0

    weights = {v["symbol"]: v["value"] / total_value for v in valuation}
    allocation = [
        {
            "symbol": v["symbol"],
            "value": round(v["value"], 2),
            "weightPct": round(weights[v["symbol"]] * 100, 2),
        }
        for v in valuation
    ]

    by_market: dict[str, float] = defaultdict(float)
    by_country: dict[str, float] = defaultdict(float)
    by_sector: dict[str, float] = defaultdict(float)
    for v in valuation:
        market = v["market_type"]
        by_market[market] += v["value"]
        by_country[COUNTRY_BY_MARKET.get(market, "Multi")] += v["value"]
        by_sector[SECTOR_BY_MARKET.get(market, "Equities")] += v["value"]

    # Stable sort keeps ledger order among equal weights
    corr_symbols = [
        s for s, _ in sorted(weights.items(), key=lambda kv: kv[1], reverse=True)[:CORRELATION_TOP_N]
    ]
    series = await asyncio.gather(*(_symbol_returns(s, fetch_history) for s in corr_symbols))
    return_map = dict(zip(corr_symbols, series))

    matrix = [
        [round(correlation(return_map[row], return_map[col]), 3) for col in corr_symbols]
        for row in corr_symbols
    ]

    blend = portfolio_returns(return_map, {s: weights[s] for s in corr_symbols})
    concentration = max(weights.values()) * 100
    risk = risk_metrics(blend, concentration)

    rebalance = [
        {
            "symbol": symbol,
            "action": "trim",
            "reason": f"Position concentration above {CONCENTRATION_LIMIT_PCT:g}%",
            "targetWeightPct": REBALANCE_TARGET_PCT,
        }
        for symbol, weight in weights.items()
        if weight * 100 > CONCENTRATION_LIMIT_PCT
    ]

    def _rounded(bucket: dict[str, float]) -> dict[str, float]:
        return {k: round(v, 2) for k, v in bucket.items()}

    return {
        "allocation": allocation,
        "marketAllocation": [
            {"market": m, "value": round(val, 2), "weightPct": round(val / total_value * 100, 2)}
            for m, val in by_market.items()
        ],
        "correlation": {"symbols": corr_symbols, "matrix": matrix},
        "risk": risk,
        "rebalance": rebalance,
        "exposure": {
            "byMarket": _rounded(by_market),
            "byCountry": _rounded(by_country),
            "bySector": _rounded(by_sector),
        },
    }
