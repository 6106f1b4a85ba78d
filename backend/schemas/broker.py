"""Pydantic schemas for the broker sandbox API."""

from datetime import datetime

from pydantic import Field, field_serializer, field_validator

from backend.schemas.paper import CamelModel


class ConnectRequest(CamelModel):
    provider: str = "paper-broker"
    account_id: str | None = Field(default=None, max_length=120)
    buying_power: float | None = None
    max_order_value_pct: float | None = None

    @field_validator("provider")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower()


class SandboxOrderRequest(CamelModel):
    symbol: str = ""
    side: str = ""
    quantity: float = 0
    stop_loss: float | None = None
    take_profit: float | None = None
    confirm: bool = False


class WebhookPayload(CamelModel):
    provider_order_id: str | None = None
    broker_order_id: str | None = None
    status: str = ""
    filled_price: float | None = None
    reason: str | None = None


class BrokerOrderRead(CamelModel):
    id: str
    provider: str
    provider_order_id: str
    provider_status: str
    paper_order_id: str | None = None
    symbol: str
    side: str
    quantity: int
    status: str
    reason: str
    requested_price: float
    filled_price: float | None = None
    price_estimated: bool = False
    order_value: float
    accounting_applied: bool
    created_at: datetime
    updated_at: datetime

    @field_serializer("requested_price", "filled_price")
    def _round_prices(self, value: float | None) -> float | None:
        return None if value is None else round(value, 6)

    @field_serializer("order_value")
    def _round_value(self, value: float) -> float:
        return round(value, 2)


class SandboxRead(CamelModel):
    connected: bool
    provider: str
    account_id: str
    buying_power: float
    max_order_value_pct: float
    status: str
    updated_at: datetime
    orders: list[BrokerOrderRead] = []

    @field_serializer("buying_power")
    def _round_buying_power(self, value: float) -> float:
        return round(value, 2)
