"""IndicatorSnapshot model: technical state derived from a candle window."""

from datetime import datetime, timezone

from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class IndicatorSnapshot(SQLModel, table=True):
    __tablename__ = "indicator_snapshot"
    __table_args__ = (UniqueConstraint("pair_id", "timestamp", name="uq_indicator_pair_timestamp"),)

    id: int | None = Field(default=None, primary_key=True)
    pair_id: int = Field(foreign_key="trading_pair.id", index=True)
    timestamp: datetime = Field(index=True)  # timestamp of the newest candle in the window
    close: float
    rsi: float
    macd_line: float
    macd_signal: float
    macd_histogram: float
    bb_upper: float
    bb_middle: float
    bb_lower: float
    atr: float
    volatility: float
    sma_20: float
    ema_20: float
    candle_count: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
