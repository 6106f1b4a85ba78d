"""PaperAccount model: the cash side of a user's ledger."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class PaperAccount(SQLModel, table=True):
    __tablename__ = "paper_account"

    id: int | None = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True, unique=True)
    cash: float
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
