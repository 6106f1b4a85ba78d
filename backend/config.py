"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent

ENV_PREFIX = "PT_"


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'paper_trading.db'}"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]  # Vite dev server

    # Auth (tokens are issued outside this service)
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 1440  # 24 hours

    # Paper ledger defaults
    starting_cash: float = 100000.0
    default_buying_power: float = 100000.0
    default_max_order_value_pct: float = 25.0
    broker_order_history_limit: int = 400

    # Quote provider
    quote_base_url: str = "https://query1.finance.yahoo.com"

    # Sandbox brokers
    alpaca_base_url: str = "https://paper-api.alpaca.markets"
    oanda_base_url: str = "https://api-fxpractice.oanda.com"
    alpaca_sandbox_key: str = ""
    alpaca_sandbox_secret: str = ""
    oanda_sandbox_token: str = ""
    oanda_sandbox_account_id: str = ""
    broker_webhook_secret: str = ""

    # Background sweeps (0 disables)
    automation_interval_seconds: int = 60
    broker_sync_interval_seconds: int = 120

    model_config = {"env_prefix": ENV_PREFIX, "env_file": ".env"}


settings = Settings()
