"""Symbol resolution.

Parses raw tickers such as ``AAPL``, ``BINANCE:BTCUSDT`` or ``CME:ES1!`` into a
normalized descriptor, and maps descriptors to the quote provider's own ticker
convention. All functions are pure: no I/O.
"""

import re
from dataclasses import dataclass
from typing import Callable
from urllib.parse import unquote

CRYPTO_EXCHANGES = {"BINANCE", "COINBASE", "BYBIT", "KRAKEN", "BITFINEX"}
FOREX_EXCHANGES = {"FX", "FOREX", "OANDA", "FX_IDC"}
FUTURES_EXCHANGES = {"CME", "CME_MINI", "CBOT", "CBOT_MINI", "COMEX", "NYMEX", "ICEUS", "NYBOT"}

# ROOT + YYMMDD + C/P + 8-digit strike, e.g. AAPL250117C00150000
OPTION_PATTERN = re.compile(r"^([A-Z]{1,6})\d{6}[CP]\d{8}$")
CONTINUOUS_FUTURES = re.compile(r"1!$")
CRYPTO_PAIR = re.compile(r"^([A-Z0-9]+)(USDT|USDC|BUSD|USD)$")
FOREX_PAIR = re.compile(r"^[A-Z]{6}$")

# Futures root -> Yahoo continuous contract
FUTURES_TO_YAHOO = {
    "ES": "ES=F",
    "NQ": "NQ=F",
    "YM": "YM=F",
    "RTY": "RTY=F",
    "CL": "CL=F",
    "NG": "NG=F",
    "GC": "GC=F",
    "SI": "SI=F",
    "HG": "HG=F",
    "ZN": "ZN=F",
    "ZB": "ZB=F",
}


@dataclass(frozen=True)
class SymbolInfo:
    original: str
    api_symbol: str
    is_crypto: bool
    exchange: str
    symbol_only: str
    market_type: str  # stock, crypto, forex, futures or options

    def to_dict(self) -> dict:
        return {
            "original": self.original,
            "apiSymbol": self.api_symbol,
            "isCrypto": self.is_crypto,
            "exchange": self.exchange,
            "symbolOnly": self.symbol_only,
            "marketType": self.market_type,
        }


def clean_symbol(raw: str | None) -> str:
    return unquote(str(raw or "")).strip().upper()


def resolve_symbol(raw: str | None) -> SymbolInfo:
    """Classify a raw ticker. Exchange-list membership takes priority over patterns."""
    symbol = clean_symbol(raw)
    if not symbol:
        return SymbolInfo("", "", False, "", "", "stock")

    if ":" not in symbol:
        market_type = "options" if OPTION_PATTERN.match(symbol) else "stock"
        return SymbolInfo(symbol, symbol, False, "", symbol, market_type)

    exchange, _, rest = symbol.partition(":")
    exchange = exchange.strip()
    symbol_only = rest.strip()

    is_crypto = exchange in CRYPTO_EXCHANGES
    if is_crypto:
        market_type = "crypto"
    elif exchange in FOREX_EXCHANGES:
        market_type = "forex"
    elif exchange in FUTURES_EXCHANGES or CONTINUOUS_FUTURES.search(symbol_only):
        market_type = "futures"
    elif OPTION_PATTERN.match(symbol_only):
        market_type = "options"
    else:
        market_type = "stock"

    return SymbolInfo(
        original=symbol,
        api_symbol=symbol if is_crypto else symbol_only,
        is_crypto=is_crypto,
        exchange=exchange,
        symbol_only=symbol_only,
        market_type=market_type,
    )


# ---------------------------------------------------------------------------
# Quote provider ticker mapping
# ---------------------------------------------------------------------------

QuoteRule = Callable[[SymbolInfo], str | None]

_quote_rules: list[QuoteRule] = []


def register_quote_rule(rule: QuoteRule, first: bool = False) -> QuoteRule:
    """Add a ticker mapping rule. Rules run in order; the first non-None result wins."""
    if first:
        _quote_rules.insert(0, rule)
    else:
        _quote_rules.append(rule)
    return rule


def _futures_root(symbol_only: str) -> str:
    return re.sub(r"[^A-Z]", "", symbol_only)[:3]


def _futures_ticker(symbol_only: str) -> str | None:
    root = _futures_root(symbol_only)
    # Two-letter roots are the common case ("ES1!" -> "ES")
    return FUTURES_TO_YAHOO.get(root) or FUTURES_TO_YAHOO.get(root[:2])


@register_quote_rule
def _crypto_rule(info: SymbolInfo) -> str | None:
    if info.market_type != "crypto":
        return None
    pair = info.symbol_only or info.api_symbol
    m = CRYPTO_PAIR.match(pair.replace("/", ""))
    if m:
        return f"{m.group(1)}-USD"
    return pair.replace("/", "-")


@register_quote_rule
def _forex_rule(info: SymbolInfo) -> str | None:
    if info.market_type != "forex":
        return None
    pair = info.symbol_only.replace("/", "")
    if FOREX_PAIR.match(pair):
        return f"{pair}=X"
    return None


@register_quote_rule
def _futures_rule(info: SymbolInfo) -> str | None:
    if info.market_type == "futures" or CONTINUOUS_FUTURES.search(info.symbol_only):
        return _futures_ticker(info.symbol_only)
    return None


@register_quote_rule
def _options_rule(info: SymbolInfo) -> str | None:
    m = OPTION_PATTERN.match(info.symbol_only)
    if m:
        return m.group(1)
    return None


def to_quote_ticker(info: SymbolInfo) -> str:
    """Map a resolved symbol to the quote provider's ticker."""
    for rule in _quote_rules:
        ticker = rule(info)
        if ticker:
            return ticker
    return info.symbol_only or info.api_symbol
