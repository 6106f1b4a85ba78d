"""Sandbox broker providers: identities, credentials, symbol syntax, status vocabulary.

Three provider identities exist. ``paper-broker`` is pure local simulation;
``alpaca-sandbox`` and ``oanda-sandbox`` route orders to the providers'
paper/practice REST APIs. Credentials come from settings (a static capability
table), never from the request.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from backend.config import ENV_PREFIX, settings
from backend.errors import ProviderCredentialsMissing, ProviderSymbolUnsupported
from backend.services.symbols import CRYPTO_PAIR, FOREX_PAIR, resolve_symbol

logger = logging.getLogger(__name__)

PAPER_BROKER = "paper-broker"
ALPACA_SANDBOX = "alpaca-sandbox"
OANDA_SANDBOX = "oanda-sandbox"
PROVIDERS = (PAPER_BROKER, ALPACA_SANDBOX, OANDA_SANDBOX)

# Settings fields each provider needs before it may connect or execute
PROVIDER_CREDENTIALS: dict[str, tuple[str, ...]] = {
    PAPER_BROKER: (),
    ALPACA_SANDBOX: ("alpaca_sandbox_key", "alpaca_sandbox_secret"),
    OANDA_SANDBOX: ("oanda_sandbox_token",),
}


@dataclass
class OrderResult:
    """Outcome of a provider call (placement or status query)."""
    success: bool
    order_id: str | None = None
    error: str | None = None
    filled_price: float | None = None
    order_status: str | None = None  # raw provider vocabulary
    reason: str | None = None
    raw_response: str | None = None


@dataclass
class CredentialStatus:
    ok: bool
    missing: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"ok": self.ok, "missing": self.missing}


def normalize_provider(raw: str | None) -> str:
    provider = str(raw or PAPER_BROKER).strip().lower()
    return provider if provider in PROVIDERS else PAPER_BROKER


def credentials_status(provider: str) -> CredentialStatus:
    """Which credential settings are unset for a provider (as env var names)."""
    missing = [
        f"{ENV_PREFIX}{name}".upper()
        for name in PROVIDER_CREDENTIALS.get(provider, ())
        if not getattr(settings, name, "")
    ]
    return CredentialStatus(ok=not missing, missing=missing)


def require_credentials(provider: str):
    status = credentials_status(provider)
    if not status.ok:
        raise ProviderCredentialsMissing(provider, status.missing)


def map_symbol_for_provider(symbol: str, provider: str) -> str:
    """Translate an internal symbol into the provider's syntax.

    Raises ProviderSymbolUnsupported before any network call is attempted.
    """
    info = resolve_symbol(symbol)
    if provider == ALPACA_SANDBOX:
        if info.market_type == "stock":
            return info.symbol_only or info.api_symbol
        if info.market_type == "crypto":
            pair = (info.symbol_only or info.api_symbol).replace("/", "")
            m = CRYPTO_PAIR.match(pair)
            if not m:
                raise ProviderSymbolUnsupported("Unsupported crypto pair for Alpaca sandbox")
            return f"{m.group(1)}/USD"
        raise ProviderSymbolUnsupported("Alpaca sandbox supports stock/crypto symbols only")

    if provider == OANDA_SANDBOX:
        if info.market_type != "forex":
            raise ProviderSymbolUnsupported("OANDA sandbox supports forex pairs only")
        pair = info.symbol_only.replace("/", "")
        if not FOREX_PAIR.match(pair):
            raise ProviderSymbolUnsupported("Invalid forex symbol for OANDA sandbox")
        return f"{pair[:3]}_{pair[3:]}"

    return info.original


# ---------------------------------------------------------------------------
# Provider status vocabulary
# ---------------------------------------------------------------------------

class ProviderStatus(str, Enum):
    PENDING = "pending"
    FILLED = "filled"
    PARTIAL = "partial"
    CANCELED = "canceled"
    REJECTED = "rejected"


# Raw provider status (lower-cased) -> internal status
PROVIDER_STATUS_TABLE: dict[str, ProviderStatus] = {
    "filled": ProviderStatus.FILLED,
    "fill": ProviderStatus.FILLED,
    "done_for_day": ProviderStatus.FILLED,
    "partially_filled": ProviderStatus.PARTIAL,
    "partial_fill": ProviderStatus.PARTIAL,
    "canceled": ProviderStatus.CANCELED,
    "cancelled": ProviderStatus.CANCELED,
    "expired": ProviderStatus.CANCELED,
    "done": ProviderStatus.CANCELED,
    "rejected": ProviderStatus.REJECTED,
    "accepted": ProviderStatus.PENDING,
    "new": ProviderStatus.PENDING,
    "pending_new": ProviderStatus.PENDING,
    "pending": ProviderStatus.PENDING,
    "open": ProviderStatus.PENDING,
}


def translate_provider_status(raw: str | None) -> ProviderStatus:
    """Map a raw provider status; anything unknown stays pending."""
    key = str(raw or "").strip().lower()
    status = PROVIDER_STATUS_TABLE.get(key)
    if status is None:
        logger.info(f"Unknown provider status {raw!r}, treating as pending")
        return ProviderStatus.PENDING
    return status


def get_provider_client(provider: str, account_ref: str = ""):
    """Build the REST client for an external provider; None for the local one."""
    if provider == ALPACA_SANDBOX:
        from backend.services.alpaca_client import AlpacaSandboxClient

        return AlpacaSandboxClient(
            base_url=settings.alpaca_base_url,
            api_key=settings.alpaca_sandbox_key,
            api_secret=settings.alpaca_sandbox_secret,
        )
    if provider == OANDA_SANDBOX:
        from backend.services.oanda_client import OandaSandboxClient

        return OandaSandboxClient(
            base_url=settings.oanda_base_url,
            token=settings.oanda_sandbox_token,
            account_id=account_ref or settings.oanda_sandbox_account_id,
        )
    return None
