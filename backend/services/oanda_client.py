"""OANDA practice (fxTrade sandbox) REST client.

Market orders are sent fill-or-kill, so placement usually reports the fill
directly. Status queries look up the order and, once filled, its filling
transaction for the execution price.
"""

import logging
from urllib.parse import quote

import requests

from backend.services.broker_providers import OrderResult
from backend.services.sandbox_client import SandboxRestClient, parse_price

logger = logging.getLogger(__name__)

# OANDA order states -> provider vocabulary understood by the status table
_STATE_MAP = {
    "PENDING": "pending",
    "FILLED": "filled",
    "TRIGGERED": "pending",
    "CANCELLED": "cancelled",
}


class OandaSandboxClient(SandboxRestClient):
    """Wrapper around the OANDA v20 practice REST API."""

    def __init__(self, base_url: str, token: str, account_id: str):
        super().__init__(base_url)
        self.token = token
        self.account_id = account_id

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _account_path(self, suffix: str) -> str:
        return f"/v3/accounts/{quote(self.account_id, safe='')}{suffix}"

    async def place_order(self, symbol: str, side: str, quantity: int) -> OrderResult:
        """Submit a FOK market order. Sells are negative units."""
        if not self.account_id:
            return OrderResult(success=False, error="OANDA account id is required")

        units = quantity if side == "buy" else -quantity
        payload = {
            "order": {
                "units": str(units),
                "instrument": symbol,
                "timeInForce": "FOK",
                "type": "MARKET",
                "positionFill": "DEFAULT",
            }
        }
        try:
            data = await self._call("POST", self._account_path("/orders"), payload)
        except (requests.RequestException, ValueError) as e:
            logger.error(f"OANDA order failed: {e}")
            return OrderResult(success=False, error=str(e))

        create_tx = data.get("orderCreateTransaction") or {}
        fill_tx = data.get("orderFillTransaction") or {}
        cancel_tx = data.get("orderCancelTransaction") or {}
        # The create transaction id is the order specifier used by status queries
        order_id = str(create_tx.get("id") or fill_tx.get("orderID") or fill_tx.get("id") or "")
        if not order_id:
            return OrderResult(success=False, error="OANDA response has no order id", raw_response=str(data))

        if fill_tx:
            status, reason = "filled", None
        elif cancel_tx:
            status, reason = "cancelled", cancel_tx.get("reason")
        else:
            status, reason = "accepted", None
        logger.info(f"OANDA order placed: {order_id} {units} {symbol} ({status})")
        return OrderResult(
            success=True,
            order_id=order_id,
            order_status=status,
            filled_price=parse_price(fill_tx.get("price")),
            reason=reason,
            raw_response=str(data),
        )

    async def get_order_status(self, order_id: str) -> OrderResult:
        """Fetch order state; for filled orders also the fill price."""
        try:
            data = await self._call("GET", self._account_path(f"/orders/{quote(order_id, safe='')}"))
            order = data.get("order") or {}
            state = str(order.get("state") or "")
            filled_price = None
            tx_id = order.get("fillingTransactionID")
            if state == "FILLED" and tx_id:
                tx = await self._call("GET", self._account_path(f"/transactions/{quote(str(tx_id), safe='')}"))
                filled_price = parse_price((tx.get("transaction") or {}).get("price"))
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"OANDA status query failed for {order_id}: {e}")
            return OrderResult(success=False, order_id=order_id, error=str(e))

        return OrderResult(
            success=True,
            order_id=order_id,
            order_status=_STATE_MAP.get(state, state.lower() or "unknown"),
            filled_price=filled_price,
            raw_response=str(data),
        )
