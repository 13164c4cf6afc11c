"""Application configuration via environment variables."""

from pathlib import Path
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent

BINANCE_REST_MAINNET = "https://api.binance.com/api/v3"
BINANCE_REST_TESTNET = "https://testnet.binance.vision/api/v3"
BINANCE_WS_MAINNET = "wss://stream.binance.com:9443/ws"
BINANCE_WS_TESTNET = "wss://testnet.binance.vision/ws"


class Settings(BaseSettings):
    database_url: str = f"sqlite:///{PROJECT_ROOT / 'cryptobot.db'}"
    encryption_key: str = ""  # Fernet key; generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]
    engine_enabled: bool = True  # start the trading runtime inside the API process

    # Exchange
    binance_testnet: bool = True
    binance_rest_url: str = ""  # empty = derived from binance_testnet
    binance_ws_url: str = ""
    recv_window_ms: int = 5000
    quote_asset: str = "USDT"
    kline_interval: str = "1m"

    # Scheduling
    control_loop_seconds: int = 5
    portfolio_snapshot_seconds: int = 60
    shutdown_grace_seconds: float = 5.0

    # Gateway reconnect / liveness
    gateway_base_delay_ms: int = 1000
    gateway_max_delay_ms: int = 30000
    gateway_max_attempts: int = 10
    gateway_stale_seconds: int = 300

    # Rolling cache
    market_cache_ttl_seconds: int = 300
    indicator_cache_ttl_seconds: int = 60
    sentiment_cache_ttl_seconds: int = 60
    trade_buffer_size: int = 100
    significant_trade_notional: float = 10000.0

    # Event processing
    handler_max_attempts: int = 3
    handler_timeout_seconds: float = 30.0
    indicator_window: int = 50
    sentiment_window_hours: int = 24
    retention_days: int = 30

    # Risk limits
    max_portfolio_risk: float = 0.05
    max_position_risk: float = 0.02
    max_pair_exposure: float = 0.20
    max_drawdown: float = 0.15
    max_volatility: float = 0.5
    volatility_scaling: bool = True
    atr_multiplier: float = 2.0
    risk_reward_ratio: float = 2.0
    fallback_stop_pct: float = 0.05
    default_volatility: float = 0.2

    model_config = {"env_prefix": "CB_", "env_file": ".env"}

    @property
    def rest_url(self) -> str:
        if self.binance_rest_url:
            return self.binance_rest_url
        return BINANCE_REST_TESTNET if self.binance_testnet else BINANCE_REST_MAINNET

    @property
    def ws_url(self) -> str:
        if self.binance_ws_url:
            return self.binance_ws_url
        return BINANCE_WS_TESTNET if self.binance_testnet else BINANCE_WS_MAINNET


settings = Settings()
