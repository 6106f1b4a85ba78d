"""Pydantic schemas for the paper trading API.

Payloads use camelCase on the wire. Business validation (side, quantity,
limit price) is left to the fill engine so it reports OrderValidationError
consistently for API and internal callers alike.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_serializer
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _round_price(value: float | None) -> float | None:
    return None if value is None else round(value, 6)


class OrderCreate(CamelModel):
    symbol: str = ""
    side: str = ""
    quantity: float = 0
    order_type: str = "market"
    limit_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None


class ProtectRequest(CamelModel):
    symbol: str
    stop_loss: float | None = None
    take_profit: float | None = None


class OrderRead(CamelModel):
    id: str
    symbol: str
    side: str
    quantity: int
    order_type: str
    limit_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    status: str
    filled_price: float | None = None
    reason: str | None = None
    routed_to_provider: bool = False
    created_at: datetime
    filled_at: datetime | None = None
    updated_at: datetime

    @field_serializer("limit_price", "stop_loss", "take_profit", "filled_price")
    def _round_prices(self, value: float | None) -> float | None:
        return _round_price(value)


class PositionRead(CamelModel):
    symbol: str
    qty: float
    avg_price: float
    stop_loss: float | None = None
    take_profit: float | None = None
    opened_at: datetime
    # Filled in from the latest price map; None when the symbol is unpriced
    market_price: float | None = None
    market_value: float | None = None
    unrealized_pnl: float | None = None

    @field_serializer("avg_price", "stop_loss", "take_profit", "market_price")
    def _round_prices(self, value: float | None) -> float | None:
        return _round_price(value)

    @field_serializer("market_value", "unrealized_pnl")
    def _round_money(self, value: float | None) -> float | None:
        return None if value is None else round(value, 2)


class ClosedTradeRead(CamelModel):
    id: str
    symbol: str
    qty: float
    entry_price: float
    exit_price: float
    realized_pnl: float
    reason: str
    closed_at: datetime

    @field_serializer("entry_price", "exit_price")
    def _round_prices(self, value: float) -> float:
        return round(value, 6)

    @field_serializer("realized_pnl")
    def _round_pnl(self, value: float) -> float:
        return round(value, 2)
