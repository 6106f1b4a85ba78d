"""Market data fetching.

Candle data comes from the Yahoo chart API. Every price the fill engine and
analytics use flows through here; callers get either a usable price or a
PriceUnavailable, never a zero.
"""

import asyncio
import logging
from urllib.parse import quote

import pandas as pd
import requests

from backend.config import settings
from backend.errors import InsufficientData, PriceUnavailable
from backend.services.symbols import resolve_symbol, to_quote_ticker
from backend.utils.constants import MIN_BARS, TIMEFRAME_CONFIG

logger = logging.getLogger(__name__)

REQ_TIMEOUT = (5, 12)  # (connect, read) seconds
_HEADERS = {"User-Agent": "Mozilla/5.0 (paper-trading-service)"}


def _get_chart(ticker: str, interval: str, range_: str) -> dict:
    """Blocking chart request. Run via the executor from async code."""
    url = f"{settings.quote_base_url}/v8/finance/chart/{quote(ticker, safe='')}"
    resp = requests.get(
        url,
        params={"interval": interval, "range": range_},
        headers=_HEADERS,
        timeout=REQ_TIMEOUT,
    )
    resp.raise_for_status()
    return resp.json()


async def fetch_candles(ticker: str, timeframe: str = "1D") -> pd.Series:
    """Fetch close price series for a quote-provider ticker.

    Args:
        ticker: Provider ticker (e.g. "AAPL", "BTC-USD", "EURUSD=X").
        timeframe: One of TIMEFRAME_CONFIG keys.

    Returns:
        pd.Series of close prices with a UTC datetime index.

    Raises:
        InsufficientData: request failed, no closes, or fewer than MIN_BARS bars.
    """
    cfg = TIMEFRAME_CONFIG.get(timeframe, TIMEFRAME_CONFIG["1D"])
    try:
        # requests is synchronous, run in executor to avoid blocking
        payload = await asyncio.get_event_loop().run_in_executor(
            None, _get_chart, ticker, cfg["interval"], cfg["range"]
        )
    except (requests.RequestException, ValueError) as e:
        raise InsufficientData(f"Quote request failed for {ticker}: {e}") from e

    closes = _parse_candles(payload)
    if closes.empty:
        raise InsufficientData(f"No candle data for {ticker}")
    if len(closes) < MIN_BARS:
        raise InsufficientData(f"Not enough candle data for {ticker} ({len(closes)} bars)")
    return closes


async def fetch_historical_closes(symbol: str, timeframe: str = "1D") -> pd.Series:
    """Close series for a raw symbol (resolved and mapped to the provider ticker)."""
    ticker = to_quote_ticker(resolve_symbol(symbol))
    if not ticker:
        raise InsufficientData(f"Cannot map symbol {symbol!r} to a quote ticker")
    return await fetch_candles(ticker, timeframe)


async def fetch_latest_price(symbol: str) -> float:
    """Latest trade price (last 1-minute close) for a raw symbol."""
    closes = await fetch_historical_closes(symbol, "1m")
    last = float(closes.iloc[-1])
    if not pd.notna(last) or last <= 0:
        raise PriceUnavailable(f"No latest price for {symbol}")
    return last


async def fetch_latest_prices(symbols) -> dict[str, float]:
    """Fetch latest prices concurrently.

    Returns a partial map: symbols whose fetch failed are logged and omitted,
    so one bad symbol never blocks the rest of a batch.
    """
    symbol_list = list(dict.fromkeys(symbols))
    if not symbol_list:
        return {}

    results = await asyncio.gather(
        *(fetch_latest_price(s) for s in symbol_list),
        return_exceptions=True,
    )
    prices: dict[str, float] = {}
    for symbol, result in zip(symbol_list, results):
        if isinstance(result, PriceUnavailable):
            logger.warning(f"Price unavailable for {symbol}: {result}")
            continue
        if isinstance(result, BaseException):
            logger.error(f"Unexpected price fetch error for {symbol}: {result}")
            continue
        prices[symbol] = result
    return prices


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_candles(payload: dict) -> pd.Series:
    """Parse a chart API response into a close price Series.

    Shape: {"chart": {"result": [{"timestamp": [...],
             "indicators": {"quote": [{"close": [...], ...}]}}]}}
    Rows with missing closes are dropped.
    """
    try:
        result = ((payload or {}).get("chart") or {}).get("result") or []
        if not result:
            return pd.Series(dtype=float)
        result = result[0]
        timestamps = result.get("timestamp") or []
        quotes = (result.get("indicators") or {}).get("quote") or [{}]
        closes = quotes[0].get("close") or []
        if not timestamps or not closes:
            return pd.Series(dtype=float)

        n = min(len(timestamps), len(closes))
        df = pd.DataFrame({"t": timestamps[:n], "close": closes[:n]})
        df["t"] = pd.to_datetime(df["t"], unit="s", utc=True)
        df["close"] = pd.to_numeric(df["close"], errors="coerce")
        df = df.set_index("t").sort_index()
        return df["close"].dropna()
    except (AttributeError, TypeError, ValueError, IndexError) as e:
        logger.error(f"Failed to parse candles: {e}")
        return pd.Series(dtype=float)
