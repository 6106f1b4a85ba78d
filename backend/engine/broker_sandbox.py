"""Broker sandbox adapter.

Routes paper orders to a sandbox provider and reconciles provider state back
into the user's ledger:

1. Connect: gated by the provider's credential capability table.
2. Preview: advisory risk checks; never mutates anything.
3. Execute: re-runs the preview, requires confirmation, places the order
   externally first (non-local providers), then records a paper order and
   a BrokerOrder linking the two.
4. Sync (pull) and webhook (push): translate the provider's raw status and
   apply it through ``apply_provider_update``. Terminal broker orders ignore
   further updates and buying power moves at most once per order.

Callers hold the owner's ``account_lock`` around every mutating call; the
webhook path takes the locks itself because it cannot know the owner up front.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field

from sqlalchemy import or_
from sqlmodel import Session, select

from backend.config import settings
from backend.engine import fill_engine
from backend.engine.ledger import (
    Ledger,
    account_lock,
    load_ledger,
    new_entity_id,
    save_ledger,
    utcnow,
)
from backend.errors import (
    BrokerNotConnected,
    ConfirmationRequired,
    ExternalProviderFailure,
    OrderValidationError,
    RiskCheckFailed,
)
from backend.models.broker import BrokerOrder, BrokerSandbox
from backend.services import market_data
from backend.services.broker_providers import (
    OANDA_SANDBOX,
    PAPER_BROKER,
    PROVIDERS,
    ProviderStatus,
    credentials_status,
    get_provider_client,
    map_symbol_for_provider,
    normalize_provider,
    require_credentials,
    translate_provider_status,
)
from backend.utils.constants import ORDER_OPEN, SYNC_BATCH

logger = logging.getLogger(__name__)

BROKER_TERMINAL_STATUSES = ("filled", "rejected", "canceled")


def get_or_create_sandbox(session: Session, user_id: int) -> BrokerSandbox:
    sandbox = session.exec(
        select(BrokerSandbox).where(BrokerSandbox.user_id == user_id)
    ).first()
    if sandbox is None:
        sandbox = BrokerSandbox(
            user_id=user_id,
            buying_power=settings.default_buying_power,
            max_order_value_pct=settings.default_max_order_value_pct,
        )
        session.add(sandbox)
        session.commit()
        session.refresh(sandbox)
    return sandbox


def list_providers() -> list[dict]:
    return [
        {"id": p, "label": p, "credentials": credentials_status(p).to_dict()}
        for p in PROVIDERS
    ]


def connect_sandbox(
    session: Session,
    user_id: int,
    provider: str | None,
    account_id: str | None = None,
    buying_power: float | None = None,
    max_order_value_pct: float | None = None,
) -> BrokerSandbox:
    """Connect the user's sandbox to a provider. Raises ProviderCredentialsMissing."""
    provider = normalize_provider(provider)
    require_credentials(provider)

    sandbox = get_or_create_sandbox(session, user_id)
    default_ref = settings.oanda_sandbox_account_id if provider == OANDA_SANDBOX else f"sbx-{user_id}"
    sandbox.account_ref = str(account_id or default_ref or "").strip()[:40] or f"sbx-{user_id}"
    sandbox.connected = True
    sandbox.provider = provider
    sandbox.status = "connected"
    if buying_power is not None and buying_power > 0:
        sandbox.buying_power = float(buying_power)
    if max_order_value_pct is not None and 1 <= max_order_value_pct <= 100:
        sandbox.max_order_value_pct = float(max_order_value_pct)
    sandbox.updated_at = utcnow()
    session.add(sandbox)
    session.commit()
    session.refresh(sandbox)
    logger.info(f"User {user_id} connected sandbox {provider} ({sandbox.account_ref})")
    return sandbox


def disconnect_sandbox(session: Session, user_id: int) -> BrokerSandbox:
    sandbox = get_or_create_sandbox(session, user_id)
    sandbox.connected = False
    sandbox.status = "disconnected"
    sandbox.updated_at = utcnow()
    session.add(sandbox)
    session.commit()
    session.refresh(sandbox)
    logger.info(f"User {user_id} disconnected sandbox {sandbox.provider or '-'}")
    return sandbox


# ---------------------------------------------------------------------------
# Risk preview
# ---------------------------------------------------------------------------

@dataclass
class RiskCheck:
    id: str
    ok: bool
    message: str


@dataclass
class RiskPreview:
    symbol: str
    provider: str
    provider_symbol: str
    side: str
    quantity: int
    market_price: float
    order_value: float
    checks: list[RiskCheck] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(c.ok for c in self.checks)

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "symbol": self.symbol,
            "provider": self.provider,
            "providerSymbol": self.provider_symbol,
            "side": self.side,
            "quantity": self.quantity,
            "marketPrice": round(self.market_price, 6),
            "orderValue": round(self.order_value, 2),
            "checks": [{"id": c.id, "ok": c.ok, "message": c.message} for c in self.checks],
        }


async def build_risk_preview(
    ledger: Ledger,
    sandbox: BrokerSandbox,
    symbol: str,
    side: str,
    quantity: int,
    stop_loss: float | None = None,
    take_profit: float | None = None,
) -> RiskPreview:
    """Evaluate every pre-trade check against a fresh market price.

    Raises before pricing when the payload is invalid, the sandbox is not
    connected, credentials are missing, or the provider cannot trade the
    symbol. Failed checks do not raise; they are reported in the preview.
    """
    symbol, side, quantity, _, _ = fill_engine.validate_order_request(symbol, side, quantity)
    if not sandbox.connected:
        raise BrokerNotConnected("Sandbox broker is not connected")
    provider = normalize_provider(sandbox.provider)
    require_credentials(provider)
    provider_symbol = map_symbol_for_provider(symbol, provider)

    market_price = await market_data.fetch_latest_price(symbol)
    order_value = market_price * quantity
    max_order_value = sandbox.buying_power * sandbox.max_order_value_pct / 100.0

    checks = [
        RiskCheck(
            id="max_order_value",
            ok=order_value <= max_order_value,
            message=f"Order value {order_value:.2f} must be <= {max_order_value:.2f}",
        )
    ]
    if side == "buy":
        checks.append(RiskCheck(
            id="buying_power",
            ok=order_value <= sandbox.buying_power,
            message=f"Buying power {sandbox.buying_power:.2f} vs order {order_value:.2f}",
        ))
    else:
        pos = ledger.positions.get(symbol)
        pos_qty = pos.qty if pos else 0.0
        checks.append(RiskCheck(
            id="position_qty",
            ok=pos_qty >= quantity,
            message=f"Sell qty {quantity} requires position >= {quantity} (current {pos_qty:g})",
        ))

    stop_loss = fill_engine.positive_or_none(stop_loss)
    take_profit = fill_engine.positive_or_none(take_profit)
    if stop_loss is not None and take_profit is not None:
        if side == "buy":
            bracket_ok = stop_loss < market_price < take_profit
        else:
            bracket_ok = take_profit < market_price < stop_loss
        checks.append(RiskCheck(
            id="sl_tp_logic",
            ok=bracket_ok,
            message="Stop-loss / take-profit placement must bracket current price correctly",
        ))

    return RiskPreview(
        symbol=symbol,
        provider=provider,
        provider_symbol=provider_symbol,
        side=side,
        quantity=quantity,
        market_price=market_price,
        order_value=order_value,
        checks=checks,
    )


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def apply_broker_accounting(sandbox: BrokerSandbox, broker_order: BrokerOrder, amount: float) -> bool:
    """Debit (buy) or credit (sell) buying power exactly once per broker order."""
    if broker_order.accounting_applied:
        return False
    if amount is None or amount <= 0:
        return False
    if broker_order.side == "buy":
        sandbox.buying_power = max(0.0, sandbox.buying_power - amount)
    elif broker_order.side == "sell":
        sandbox.buying_power = sandbox.buying_power + amount
    broker_order.accounting_applied = True
    return True


def apply_provider_update(
    ledger: Ledger,
    sandbox: BrokerSandbox,
    broker_order: BrokerOrder,
    raw_status: str | None,
    filled_price: float | None = None,
    reason: str | None = None,
    fill_reason: str = "broker_provider_fill",
) -> bool:
    """Apply one provider status observation. Returns True when the broker
    order changed state. Safe to call repeatedly with the same status."""
    if broker_order.status in BROKER_TERMINAL_STATUSES:
        logger.info(
            f"Broker order {broker_order.id} already {broker_order.status}; "
            f"ignoring provider status {raw_status!r}"
        )
        return False

    status = translate_provider_status(raw_status)
    broker_order.provider_status = str(raw_status or broker_order.provider_status or "")
    broker_order.updated_at = utcnow()
    if reason:
        broker_order.reason = str(reason)

    paper_order = ledger.find_order(broker_order.paper_order_id) if broker_order.paper_order_id else None

    if status is ProviderStatus.FILLED:
        provider_price = fill_engine.positive_or_none(filled_price)
        # No provider price: book at the requested price and flag it
        fill_price = provider_price or broker_order.requested_price
        broker_order.price_estimated = provider_price is None
        if paper_order is not None and paper_order.status == ORDER_OPEN:
            fill_engine.fill_order(ledger, paper_order, fill_price, fill_reason)
            if paper_order.status != "filled":
                broker_order.reason = f"paper_{paper_order.status}: {paper_order.reason}"
        broker_order.status = "filled"
        broker_order.filled_price = fill_price
        apply_broker_accounting(sandbox, broker_order, fill_price * broker_order.quantity)
        logger.info(
            f"Broker order {broker_order.id} filled @ {fill_price:.6g}"
            f"{' (estimated)' if broker_order.price_estimated else ''}"
        )
        return True

    if status in (ProviderStatus.CANCELED, ProviderStatus.REJECTED):
        broker_order.status = status.value
        if paper_order is not None:
            fill_engine.terminate_order(paper_order, status.value, f"provider_{status.value}")
        logger.info(f"Broker order {broker_order.id} {status.value} by provider")
        return True

    # PENDING and PARTIAL both wait for a terminal report
    broker_order.status = "pending"
    return False


def _evict_history(session: Session, sandbox: BrokerSandbox):
    """Drop terminal broker orders beyond the newest broker_order_history_limit.

    Pending orders are never evicted: their paper order stays open until sync
    or a webhook can still match them.
    """
    limit = settings.broker_order_history_limit
    older = session.exec(
        select(BrokerOrder)
        .where(BrokerOrder.sandbox_id == sandbox.id)
        .order_by(BrokerOrder.created_at.desc())
        .offset(limit)
    ).all()
    stale = [o for o in older if o.status in BROKER_TERMINAL_STATUSES]
    for order in stale:
        session.delete(order)
    if stale:
        logger.info(f"Evicted {len(stale)} old broker orders for sandbox {sandbox.id}")


def _persist(session: Session, ledger: Ledger, sandbox: BrokerSandbox):
    sandbox.updated_at = utcnow()
    save_ledger(session, ledger, commit=False)
    session.add(sandbox)
    session.commit()


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

@dataclass
class ExecutionResult:
    broker_order: BrokerOrder
    paper_order: object
    preview: RiskPreview


async def execute_order(
    session: Session,
    ledger: Ledger,
    sandbox: BrokerSandbox,
    symbol: str,
    side: str,
    quantity: int,
    stop_loss: float | None = None,
    take_profit: float | None = None,
    confirm: bool = False,
) -> ExecutionResult:
    """Re-validate, place (externally first) and record a sandbox order."""
    preview = await build_risk_preview(ledger, sandbox, symbol, side, quantity, stop_loss, take_profit)
    if not preview.ok:
        raise RiskCheckFailed(preview.to_dict())
    if not confirm:
        raise ConfirmationRequired(preview.to_dict())

    provider = preview.provider
    external = None
    if provider != PAPER_BROKER:
        client = get_provider_client(provider, sandbox.account_ref)
        try:
            external = await client.place_order(preview.provider_symbol, preview.side, preview.quantity)
        finally:
            await client.close()
        if not external.success:
            raise ExternalProviderFailure(f"{provider} order failed: {external.error}")

    order = fill_engine.create_order(
        ledger, preview.symbol, preview.side, preview.quantity, "market",
        stop_loss=stop_loss, take_profit=take_profit,
    )
    broker_order = BrokerOrder(
        id=new_entity_id("sbxord"),
        sandbox_id=sandbox.id,
        user_id=sandbox.user_id,
        provider=provider,
        provider_order_id=external.order_id if external else "",
        provider_status=external.order_status if external else "simulated",
        paper_order_id=order.id,
        symbol=preview.symbol,
        side=preview.side,
        quantity=preview.quantity,
        requested_price=preview.market_price,
        order_value=preview.order_value,
        status="pending",
    )

    if external is None:
        fill_engine.fill_order(ledger, order, preview.market_price, "broker_sandbox_fill")
        if order.status == "filled":
            broker_order.status = "filled"
            broker_order.filled_price = preview.market_price
            apply_broker_accounting(sandbox, broker_order, preview.order_value)
        else:
            broker_order.status = "rejected"
            broker_order.reason = order.reason or ""
    else:
        order.routed_to_provider = True
        order.reason = fill_engine.AWAITING_PROVIDER_FILL
        apply_provider_update(
            ledger, sandbox, broker_order,
            external.order_status, external.filled_price, external.reason,
            fill_reason="broker_external_fill",
        )
        if order.status == ORDER_OPEN:
            broker_order.reason = broker_order.reason or fill_engine.AWAITING_PROVIDER_FILL

    session.add(broker_order)
    await fill_engine.run_automation(ledger)
    _persist(session, ledger, sandbox)
    _evict_history(session, sandbox)
    session.commit()
    logger.info(
        f"Sandbox execute {provider}: {preview.side} {preview.quantity} {preview.symbol} "
        f"-> {broker_order.status} (paper order {order.id} {order.status})"
    )
    return ExecutionResult(broker_order=broker_order, paper_order=order, preview=preview)


async def sync_sandbox(session: Session, ledger: Ledger, sandbox: BrokerSandbox) -> dict:
    """Pull status for the newest pending orders of the connected provider.

    A failing status query leaves that order pending for the next sync.
    """
    if not sandbox.connected:
        raise BrokerNotConnected("Sandbox broker is not connected")
    provider = normalize_provider(sandbox.provider)
    if provider == PAPER_BROKER:
        return {"provider": provider, "synced": 0, "updated": 0}
    require_credentials(provider)

    pending = session.exec(
        select(BrokerOrder)
        .where(BrokerOrder.sandbox_id == sandbox.id)
        .where(BrokerOrder.provider == provider)
        .where(BrokerOrder.status == "pending")
        .where(BrokerOrder.provider_order_id != "")
        .order_by(BrokerOrder.created_at.desc())
        .limit(SYNC_BATCH)
    ).all()

    updated = 0
    if pending:
        client = get_provider_client(provider, sandbox.account_ref)
        try:
            for broker_order in pending:
                result = await client.get_order_status(broker_order.provider_order_id)
                if not result.success:
                    logger.warning(
                        f"Sync: {provider} status for {broker_order.provider_order_id} "
                        f"unavailable ({result.error}); keeping pending"
                    )
                    continue
                if apply_provider_update(
                    ledger, sandbox, broker_order,
                    result.order_status, result.filled_price, result.reason,
                ):
                    updated += 1
        finally:
            await client.close()

    _persist(session, ledger, sandbox)
    logger.info(f"Sync {provider} for user {sandbox.user_id}: {len(pending)} pending, {updated} updated")
    return {"provider": provider, "synced": len(pending), "updated": updated}


async def apply_webhook(
    session: Session,
    provider: str | None,
    status: str | None,
    provider_order_id: str | None = None,
    broker_order_id: str | None = None,
    filled_price: float | None = None,
    reason: str | None = None,
) -> dict:
    """Apply a provider callback to every matching broker order, across all users."""
    provider = normalize_provider(provider)
    status = str(status or "").strip()
    provider_order_id = str(provider_order_id or "").strip()
    broker_order_id = str(broker_order_id or "").strip()
    if not status or not (provider_order_id or broker_order_id):
        raise OrderValidationError("status and providerOrderId or brokerOrderId are required")

    id_filters = []
    if provider_order_id:
        id_filters.append(BrokerOrder.provider_order_id == provider_order_id)
    if broker_order_id:
        id_filters.append(BrokerOrder.id == broker_order_id)
    matches = session.exec(
        select(BrokerOrder)
        .where(BrokerOrder.provider == provider)
        .where(or_(*id_filters))
    ).all()

    by_user: dict[int, list[str]] = defaultdict(list)
    for broker_order in matches:
        by_user[broker_order.user_id].append(broker_order.id)

    updates = 0
    for user_id, order_ids in by_user.items():
        async with account_lock(user_id):
            # Another request may have committed while we waited for the lock
            session.expire_all()
            ledger = load_ledger(session, user_id)
            sandbox = get_or_create_sandbox(session, user_id)
            for order_id in order_ids:
                broker_order = session.get(BrokerOrder, order_id)
                if broker_order is None:
                    continue
                apply_provider_update(ledger, sandbox, broker_order, status, filled_price, reason)
                updates += 1
            _persist(session, ledger, sandbox)

    logger.info(
        f"Webhook {provider}: status={status} provider_order_id={provider_order_id or '-'} "
        f"broker_order_id={broker_order_id or '-'} matched={updates}"
    )
    return {"ok": True, "provider": provider, "updates": updates}
