"""Markets API: symbol resolution and latest quotes."""

from fastapi import APIRouter, Depends

from backend.api.deps import get_current_user
from backend.services import market_data
from backend.services.symbols import resolve_symbol, to_quote_ticker

router = APIRouter(prefix="/api/markets", tags=["markets"], dependencies=[Depends(get_current_user)])


@router.get("/resolve/{symbol:path}")
def resolve(symbol: str):
    """Classify a raw symbol and show the quote-provider ticker it maps to."""
    info = resolve_symbol(symbol)
    return {**info.to_dict(), "quoteTicker": to_quote_ticker(info)}


@router.get("/quote/{symbol:path}")
async def latest_quote(symbol: str):
    info = resolve_symbol(symbol)
    price = await market_data.fetch_latest_price(info.original)
    return {"symbol": info.original, "price": round(price, 6)}
