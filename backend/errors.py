"""Domain exceptions.

Each error carries the HTTP status it maps to; ``backend.main`` installs a
single handler that turns them into JSON responses. Business rejections
(insufficient cash / position) are NOT exceptions: they are recorded as a
terminal ``rejected`` order state.
"""

from typing import Any


class TradingError(Exception):
    status_code: int = 400

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        return {"detail": self.message, **self.extra}


class OrderValidationError(TradingError):
    """Malformed symbol/side/quantity or missing limit price."""


class NotFoundError(TradingError):
    status_code = 404


class PriceUnavailable(TradingError):
    """No usable latest price for a symbol."""


class InsufficientData(PriceUnavailable):
    """Quote provider returned too few bars or no closes."""


class BrokerNotConnected(TradingError):
    pass


class ProviderCredentialsMissing(TradingError):
    def __init__(self, provider: str, missing: list[str]):
        super().__init__(
            f"Missing provider credentials: {', '.join(missing)}",
            provider=provider,
            missing=missing,
        )
        self.provider = provider
        self.missing = missing


class ProviderSymbolUnsupported(TradingError):
    pass


class RiskCheckFailed(TradingError):
    def __init__(self, preview: dict):
        super().__init__("Risk checks failed", preview=preview)


class ConfirmationRequired(TradingError):
    def __init__(self, preview: dict):
        super().__init__("Confirmation required", preview=preview)


class ExternalProviderFailure(TradingError):
    """Network error or non-2xx response from a sandbox broker."""

    status_code = 502


class WebhookAuthFailure(TradingError):
    status_code = 401


class WebhookNotConfigured(TradingError):
    status_code = 503
