"""Alpaca paper-trading REST client.

Places market orders and queries their status on the Alpaca paper API.
Network errors and non-2xx responses come back as ``OrderResult(success=False)``;
the caller decides whether that blocks execution or leaves an order pending.
"""

import logging
from urllib.parse import quote

import requests

from backend.services.broker_providers import OrderResult
from backend.services.sandbox_client import SandboxRestClient, parse_price

logger = logging.getLogger(__name__)


class AlpacaSandboxClient(SandboxRestClient):
    """Wrapper around the Alpaca paper REST API for sandbox order routing."""

    def __init__(self, base_url: str, api_key: str, api_secret: str):
        super().__init__(base_url)
        self.api_key = api_key
        self.api_secret = api_secret

    def _auth_headers(self) -> dict[str, str]:
        return {"APCA-API-KEY-ID": self.api_key, "APCA-API-SECRET-KEY": self.api_secret}

    async def place_order(self, symbol: str, side: str, quantity: int) -> OrderResult:
        """Submit a market order.

        Args:
            symbol: Provider symbol ("AAPL" or "BTC/USD").
            side: "buy" or "sell".
            quantity: Whole units.
        """
        payload = {
            "symbol": symbol,
            "qty": str(quantity),
            "side": side,
            "type": "market",
            # Crypto orders do not accept "day"
            "time_in_force": "gtc" if "/" in symbol else "day",
        }
        try:
            data = await self._call("POST", "/v2/orders", payload)
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Alpaca order failed: {e}")
            return OrderResult(success=False, error=str(e))

        order_id = str(data.get("id") or "")
        if not order_id:
            return OrderResult(success=False, error="Alpaca response has no order id", raw_response=str(data))
        status = str(data.get("status") or "accepted")
        logger.info(f"Alpaca order placed: {order_id} {side} {quantity} {symbol} ({status})")
        return OrderResult(
            success=True,
            order_id=order_id,
            order_status=status,
            filled_price=parse_price(data.get("filled_avg_price")),
            raw_response=str(data),
        )

    async def get_order_status(self, order_id: str) -> OrderResult:
        """Fetch the current status and average fill price of an order."""
        try:
            data = await self._call("GET", f"/v2/orders/{quote(order_id, safe='')}")
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"Alpaca status query failed for {order_id}: {e}")
            return OrderResult(success=False, order_id=order_id, error=str(e))
        return OrderResult(
            success=True,
            order_id=order_id,
            order_status=str(data.get("status") or "unknown"),
            filled_price=parse_price(data.get("filled_avg_price")),
            raw_response=str(data),
        )
