"""Aggregate sentiment signal per pair.

Sentiment scoring itself happens in an external service that writes
`sentiment_reading` rows. This module only folds recent readings into the
`{score, confidence, impact}` signal the strategy engine consumes.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlmodel import Session, select

from cryptobot.config import settings
from cryptobot.database import engine
from cryptobot.models.sentiment_reading import SentimentReading
from cryptobot.utils.constants import sentiment_key


@dataclass(frozen=True)
class SentimentSignal:
    score: float = 0.0
    confidence: float = 0.0
    impact: float = 0.0
    count: int = 0


NEUTRAL = SentimentSignal()


def aggregate(readings: list[SentimentReading]) -> SentimentSignal:
    """Score weighted by impact*confidence; confidence and impact averaged."""
    if not readings:
        return NEUTRAL

    weighted = 0.0
    total_weight = 0.0
    for r in readings:
        weight = r.impact * r.confidence
        weighted += r.score * weight
        total_weight += weight

    count = len(readings)
    return SentimentSignal(
        score=weighted / total_weight if total_weight > 0 else 0.0,
        confidence=sum(r.confidence for r in readings) / count,
        impact=sum(r.impact for r in readings) / count,
        count=count,
    )


def get_aggregate_sentiment(pair_id: int, cache, hours: int | None = None) -> SentimentSignal:
    cached = cache.get(sentiment_key(pair_id))
    if cached is not None:
        return cached

    hours = hours or settings.sentiment_window_hours
    since = datetime.now(timezone.utc) - timedelta(hours=hours)
    with Session(engine) as session:
        readings = session.exec(
            select(SentimentReading).where(
                SentimentReading.pair_id == pair_id,
                SentimentReading.analyzed_at >= since,
            )
        ).all()

    signal = aggregate(list(readings))
    cache.set(sentiment_key(pair_id), signal, ttl=settings.sentiment_cache_ttl_seconds)
    return signal
