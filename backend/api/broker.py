"""Broker sandbox API: connect, preview, execute, sync, provider webhooks."""

import logging

from fastapi import APIRouter, Depends
from sqlmodel import Session, select

from backend.api.deps import get_current_user, verify_webhook_secret
from backend.api.paper import order_view
from backend.database import get_session
from backend.engine import broker_sandbox
from backend.engine.ledger import account_lock, load_ledger
from backend.models.broker import BrokerOrder, BrokerSandbox
from backend.models.user import User
from backend.schemas.broker import (
    BrokerOrderRead,
    ConnectRequest,
    SandboxOrderRequest,
    SandboxRead,
    WebhookPayload,
)
from backend.services.broker_providers import credentials_status, normalize_provider
from backend.services.portfolio_analytics import compute_summary
from backend.utils.constants import RECENT_BROKER_ORDERS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/broker/sandbox", tags=["broker"])


def sandbox_view(session: Session, sandbox: BrokerSandbox) -> dict:
    """Sandbox state with its most recent orders, newest first."""
    recent = session.exec(
        select(BrokerOrder)
        .where(BrokerOrder.sandbox_id == sandbox.id)
        .order_by(BrokerOrder.created_at.desc())
        .limit(RECENT_BROKER_ORDERS)
    ).all()
    view = SandboxRead(
        connected=sandbox.connected,
        provider=sandbox.provider,
        account_id=sandbox.account_ref,
        buying_power=sandbox.buying_power,
        max_order_value_pct=sandbox.max_order_value_pct,
        status=sandbox.status,
        updated_at=sandbox.updated_at,
        orders=[BrokerOrderRead.model_validate(o) for o in recent],
    )
    return view.model_dump(by_alias=True)


@router.get("")
def get_sandbox(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    sandbox = broker_sandbox.get_or_create_sandbox(session, user.id)
    return {
        "broker": sandbox_view(session, sandbox),
        "providerCredentials": credentials_status(normalize_provider(sandbox.provider)).to_dict(),
    }


@router.get("/providers")
def list_providers(user: User = Depends(get_current_user)):
    return {"providers": broker_sandbox.list_providers()}


@router.post("/connect")
async def connect(
    body: ConnectRequest,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    async with account_lock(user.id):
        sandbox = broker_sandbox.connect_sandbox(
            session,
            user.id,
            body.provider,
            account_id=body.account_id,
            buying_power=body.buying_power,
            max_order_value_pct=body.max_order_value_pct,
        )
        return {
            "broker": sandbox_view(session, sandbox),
            "providerCredentials": credentials_status(sandbox.provider).to_dict(),
        }


@router.post("/disconnect")
async def disconnect(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    async with account_lock(user.id):
        sandbox = broker_sandbox.disconnect_sandbox(session, user.id)
        return {"broker": sandbox_view(session, sandbox)}


@router.post("/preview")
async def preview(
    body: SandboxOrderRequest,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    """Advisory risk checks; nothing is persisted."""
    ledger = load_ledger(session, user.id)
    sandbox = broker_sandbox.get_or_create_sandbox(session, user.id)
    result = await broker_sandbox.build_risk_preview(
        ledger, sandbox, body.symbol, body.side, body.quantity, body.stop_loss, body.take_profit
    )
    return result.to_dict()


@router.post("/execute")
async def execute(
    body: SandboxOrderRequest,
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    async with account_lock(user.id):
        ledger = load_ledger(session, user.id)
        sandbox = broker_sandbox.get_or_create_sandbox(session, user.id)
        result = await broker_sandbox.execute_order(
            session,
            ledger,
            sandbox,
            body.symbol,
            body.side,
            body.quantity,
            stop_loss=body.stop_loss,
            take_profit=body.take_profit,
            confirm=body.confirm,
        )
        broker_order = result.broker_order
        return {
            "confirmation": {
                "status": broker_order.status,
                "brokerOrderId": broker_order.id,
                "providerOrderId": broker_order.provider_order_id or None,
                "providerStatus": broker_order.provider_status or None,
                "provider": broker_order.provider,
                "symbol": broker_order.symbol,
                "side": broker_order.side,
                "quantity": broker_order.quantity,
                "filledPrice": None if broker_order.filled_price is None else round(broker_order.filled_price, 6),
                "priceEstimated": broker_order.price_estimated,
                "orderValue": round(broker_order.order_value, 2),
                "reason": broker_order.reason or None,
            },
            "order": order_view(result.paper_order),
            "broker": sandbox_view(session, sandbox),
            "paperSummary": compute_summary(ledger, {result.preview.symbol: result.preview.market_price}),
        }


@router.post("/sync")
async def sync(
    user: User = Depends(get_current_user),
    session: Session = Depends(get_session),
):
    async with account_lock(user.id):
        ledger = load_ledger(session, user.id)
        sandbox = broker_sandbox.get_or_create_sandbox(session, user.id)
        result = await broker_sandbox.sync_sandbox(session, ledger, sandbox)
        return {**result, "broker": sandbox_view(session, sandbox)}


@router.post("/webhook/{provider}", dependencies=[Depends(verify_webhook_secret)])
async def provider_webhook(
    provider: str,
    body: WebhookPayload,
    session: Session = Depends(get_session),
):
    """Provider push callback. Authenticated by shared secret, not by user token."""
    return await broker_sandbox.apply_webhook(
        session,
        provider,
        body.status,
        provider_order_id=body.provider_order_id,
        broker_order_id=body.broker_order_id,
        filled_price=body.filled_price,
        reason=body.reason,
    )
