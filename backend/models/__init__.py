"""Database models."""

from backend.models.user import User
from backend.models.account import PaperAccount
from backend.models.position import Position
from backend.models.order import PaperOrder
from backend.models.trade import ClosedTrade
from backend.models.broker import BrokerSandbox, BrokerOrder

__all__ = [
    "User",
    "PaperAccount",
    "Position",
    "PaperOrder",
    "ClosedTrade",
    "BrokerSandbox",
    "BrokerOrder",
]
