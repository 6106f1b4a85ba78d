"""Broker sandbox models: per-user sandbox connection and routed orders."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class BrokerSandbox(SQLModel, table=True):
    __tablename__ = "broker_sandbox"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True, unique=True)
    connected: bool = False
    provider: str = ""  # "paper-broker", "alpaca-sandbox", "oanda-sandbox"
    account_ref: str = ""
    buying_power: float
    max_order_value_pct: float
    status: str = "disconnected"
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BrokerOrder(SQLModel, table=True):
    __tablename__ = "broker_order"

    id: str = Field(primary_key=True)  # "sbxord-<hex>"
    sandbox_id: int = Field(foreign_key="broker_sandbox.id", index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    provider: str
    provider_order_id: str = Field(default="", index=True)
    provider_status: str = ""  # raw provider vocabulary
    paper_order_id: str | None = None  # non-owning link to PaperOrder.id
    symbol: str
    side: str
    quantity: int
    status: str = Field(default="pending", index=True)  # "pending", "filled", "rejected", "canceled"
    reason: str = ""
    requested_price: float
    filled_price: float | None = None
    price_estimated: bool = False  # filled_price fell back to requested_price
    order_value: float
    accounting_applied: bool = False  # buying power debited/credited exactly once
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
