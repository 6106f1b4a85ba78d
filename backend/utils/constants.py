"""Shared constants and defaults."""

ORDER_SIDES = ("buy", "sell")
ORDER_TYPES = ("market", "limit")

# Paper order lifecycle: open -> filled | rejected | canceled
ORDER_OPEN = "open"

# Order quantities are stored in a signed 64-bit INTEGER column
MAX_ORDER_QUANTITY = 2**63 - 1

# Quote provider timeframes: interval and lookback range per chart request
TIMEFRAME_CONFIG: dict[str, dict] = {
    "1m": {"interval": "1m", "range": "5d"},
    "5m": {"interval": "5m", "range": "1mo"},
    "15m": {"interval": "15m", "range": "1mo"},
    "1h": {"interval": "60m", "range": "3mo"},
    "4h": {"interval": "60m", "range": "6mo"},
    "1D": {"interval": "1d", "range": "1y"},
}

MIN_BARS = 40

# Portfolio analytics
CORRELATION_TOP_N = 6
RETURN_POINTS = 120
CONCENTRATION_LIMIT_PCT = 45.0
REBALANCE_TARGET_PCT = 30.0

# Broker sandbox
RECENT_BROKER_ORDERS = 40
SYNC_BATCH = 40
