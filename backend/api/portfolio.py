"""Portfolio analytics API."""

from fastapi import APIRouter, Depends
from sqlmodel import Session

from backend.api.deps import get_current_user
from backend.database import get_session
from backend.engine import fill_engine
from backend.engine.ledger import account_lock, load_ledger, save_ledger
from backend.models.user import User
from backend.services.portfolio_analytics import build_portfolio_analytics

router = APIRouter(prefix="/api/portfolio", tags=["portfolio"])


@router.get("/analytics")
async def portfolio_analytics(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Allocation, exposure, correlation and risk over the current positions."""
    async with account_lock(user.id):
        ledger = load_ledger(session, user.id)
        prices = await fill_engine.run_automation(ledger)
        save_ledger(session, ledger)
    return await build_portfolio_analytics(ledger, prices)
