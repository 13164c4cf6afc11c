"""SentimentReading model: scored sentiment written by the external analysis service."""

from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class SentimentReading(SQLModel, table=True):
    __tablename__ = "sentiment_reading"

    id: int | None = Field(default=None, primary_key=True)
    pair_id: int = Field(foreign_key="trading_pair.id", index=True)
    analyzed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    source_type: str = "news"
    score: float  # -1 (bearish) .. 1 (bullish)
    confidence: float  # 0 .. 1
    impact: float  # 0 .. 1
