"""ClosedTrade model: immutable record of every position reduction."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class ClosedTrade(SQLModel, table=True):
    __tablename__ = "closed_trade"

    id: str = Field(primary_key=True)  # "trade-<hex>"
    account_id: int = Field(foreign_key="paper_account.id", index=True)
    symbol: str
    qty: float
    entry_price: float
    exit_price: float
    realized_pnl: float
    reason: str  # "manual", "filled", "stop_loss", "take_profit", ...
    closed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
