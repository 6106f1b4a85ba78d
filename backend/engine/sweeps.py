"""Background sweeps run by the scheduler.

- Automation sweep: one automation pass for every account holding open
  orders or positions, so resting limits and stop-loss / take-profit exits
  trigger without client traffic.
- Broker sync sweep: pull provider status for every connected external
  sandbox.

Each account is processed in its own session under its own ledger lock; one
failing account is logged and never stops the sweep.
"""

import logging

from sqlmodel import Session, select

from backend.database import engine
from backend.engine import broker_sandbox, fill_engine
from backend.engine.ledger import account_lock, load_ledger, save_ledger
from backend.errors import TradingError
from backend.models.account import PaperAccount
from backend.models.broker import BrokerSandbox
from backend.models.order import PaperOrder
from backend.models.position import Position
from backend.services.broker_providers import PAPER_BROKER
from backend.utils.constants import ORDER_OPEN

logger = logging.getLogger(__name__)


def _active_account_users() -> list[int]:
    """User ids whose accounts have open orders or open positions."""
    with Session(engine) as session:
        with_positions = set(session.exec(select(Position.account_id).distinct()).all())
        with_orders = set(
            session.exec(
                select(PaperOrder.account_id).where(PaperOrder.status == ORDER_OPEN).distinct()
            ).all()
        )
        account_ids = with_positions | with_orders
        if not account_ids:
            return []
        return list(
            session.exec(
                select(PaperAccount.user_id).where(PaperAccount.id.in_(account_ids))  # type: ignore[attr-defined]
            ).all()
        )


async def run_automation_for_user(user_id: int):
    async with account_lock(user_id):
        with Session(engine) as session:
            ledger = load_ledger(session, user_id)
            before = len(ledger.open_orders()), len(ledger.positions)
            await fill_engine.run_automation(ledger)
            save_ledger(session, ledger)
            after = len(ledger.open_orders()), len(ledger.positions)
    if before != after:
        logger.info(
            f"[automation] user {user_id}: open orders {before[0]}->{after[0]}, "
            f"positions {before[1]}->{after[1]}"
        )


async def run_automation_sweep():
    user_ids = _active_account_users()
    if not user_ids:
        return
    logger.debug(f"[automation] sweeping {len(user_ids)} accounts")
    for user_id in user_ids:
        try:
            await run_automation_for_user(user_id)
        except Exception as e:
            logger.error(f"[automation] user {user_id} failed: {e}", exc_info=True)


async def run_broker_sync_sweep():
    with Session(engine) as session:
        user_ids = list(
            session.exec(
                select(BrokerSandbox.user_id)
                .where(BrokerSandbox.connected == True)  # noqa: E712
                .where(BrokerSandbox.provider != PAPER_BROKER)
            ).all()
        )
    for user_id in user_ids:
        try:
            async with account_lock(user_id):
                with Session(engine) as session:
                    ledger = load_ledger(session, user_id)
                    sandbox = broker_sandbox.get_or_create_sandbox(session, user_id)
                    result = await broker_sandbox.sync_sandbox(session, ledger, sandbox)
            if result["updated"]:
                logger.info(f"[broker-sync] user {user_id}: {result}")
        except TradingError as e:
            logger.warning(f"[broker-sync] user {user_id} skipped: {e}")
        except Exception as e:
            logger.error(f"[broker-sync] user {user_id} failed: {e}", exc_info=True)
