"""Position model: an open holding with weighted-average cost basis."""

from datetime import datetime, timezone

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class Position(SQLModel, table=True):
    __tablename__ = "paper_position"
    __table_args__ = (UniqueConstraint("account_id", "symbol", name="uq_paper_position_symbol"),)

    id: int | None = Field(default=None, primary_key=True)
    account_id: int = Field(foreign_key="paper_account.id", index=True)
    symbol: str
    qty: float  # always > 0; the row is deleted when it reaches zero
    avg_price: float
    stop_loss: float | None = None
    take_profit: float | None = None
    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
