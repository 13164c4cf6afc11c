"""Candle model: one closed OHLCV interval per pair, immutable once written."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

from cryptobot.utils.numbers import DECIMAL_PLACES, MAX_DIGITS


def _money(default: str = "0"):
    return Field(default=Decimal(default), max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)


class Candle(SQLModel, table=True):
    __tablename__ = "candle"
    __table_args__ = (UniqueConstraint("pair_id", "timestamp", name="uq_candle_pair_timestamp"),)

    id: int | None = Field(default=None, primary_key=True)
    pair_id: int = Field(foreign_key="trading_pair.id", index=True)
    timestamp: datetime = Field(index=True)  # kline open time reported by the exchange
    interval: str = "1m"

    open: Decimal = _money()
    high: Decimal = _money()
    low: Decimal = _money()
    close: Decimal = _money()
    volume: Decimal = _money()
    quote_volume: Decimal = _money()
    trades_count: int = 0
    taker_buy_volume: Decimal = _money()
    taker_buy_quote_volume: Decimal = _money()

    # Derived at ingestion
    buy_volume: Decimal = _money()
    sell_volume: Decimal = _money()
    buy_sell_ratio: Decimal = _money()
    volatility: Decimal = _money()  # (high - low) / open * 100

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
