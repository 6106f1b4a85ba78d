"""PaperOrder model: a simulated order and its one-way lifecycle."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class PaperOrder(SQLModel, table=True):
    __tablename__ = "paper_order"

    id: str = Field(primary_key=True)  # "ord-<hex>"
    account_id: int = Field(foreign_key="paper_account.id", index=True)
    symbol: str
    side: str  # "buy" or "sell"
    quantity: int
    order_type: str = "market"  # "market" or "limit"
    limit_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    status: str = Field(default="open", index=True)  # "open", "filled", "rejected", "canceled"
    filled_price: float | None = None
    reason: str | None = None
    routed_to_provider: bool = False  # waiting on an external sandbox fill
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    filled_at: datetime | None = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
