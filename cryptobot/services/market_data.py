"""Candle storage, indicator refresh and market-data retention.

Candles come from the stream (closed klines) and, at startup, from a REST
backfill. Indicators are recomputed from the latest stored window whenever a
new candle lands and are cached as one immutable snapshot per pair.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pandas as pd
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from cryptobot.config import settings
from cryptobot.database import engine
from cryptobot.models.candle import Candle
from cryptobot.models.indicator_snapshot import IndicatorSnapshot
from cryptobot.services.events import KlineEvent
from cryptobot.services.indicators import IndicatorValues, compute_indicators
from cryptobot.utils.constants import indicators_key
from cryptobot.utils.logging import log_event
from cryptobot.utils.numbers import to_decimal

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Candles
# ---------------------------------------------------------------------------

def candle_from_kline(pair_id: int, event: KlineEvent) -> Candle:
    """Build a Candle with derived buy/sell split, ratio and range volatility."""
    buy_volume = event.taker_buy_volume
    sell_volume = event.volume - buy_volume
    ratio = buy_volume / sell_volume if sell_volume > 0 else Decimal("0")
    volatility = (event.high - event.low) / event.open * 100

    return Candle(
        pair_id=pair_id,
        timestamp=event.open_time,
        interval=event.interval,
        open=to_decimal(event.open),
        high=to_decimal(event.high),
        low=to_decimal(event.low),
        close=to_decimal(event.close),
        volume=to_decimal(event.volume),
        quote_volume=to_decimal(event.quote_volume),
        trades_count=event.trades_count,
        taker_buy_volume=to_decimal(event.taker_buy_volume),
        taker_buy_quote_volume=to_decimal(event.taker_buy_quote_volume),
        buy_volume=to_decimal(buy_volume),
        sell_volume=to_decimal(sell_volume),
        buy_sell_ratio=to_decimal(ratio),
        volatility=to_decimal(volatility),
    )


def store_candle(candle: Candle) -> bool:
    """Insert a candle. Returns False if (pair, timestamp) already exists."""
    with Session(engine) as session:
        session.add(candle)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.debug(f"Candle for pair {candle.pair_id} at {candle.timestamp} already stored")
            return False
    return True


def load_candle_window(pair_id: int, limit: int | None = None) -> pd.DataFrame:
    """Most recent `limit` candles for a pair as an ascending-time DataFrame."""
    limit = limit or settings.indicator_window
    with Session(engine) as session:
        rows = session.exec(
            select(Candle)
            .where(Candle.pair_id == pair_id)
            .order_by(Candle.timestamp.desc())
            .limit(limit)
        ).all()
    return _candles_to_frame(rows)


def _candles_to_frame(rows: list[Candle]) -> pd.DataFrame:
    if not rows:
        return pd.DataFrame(columns=["open", "high", "low", "close", "volume"])

    records = [
        {
            "t": r.timestamp,
            "open": float(r.open),
            "high": float(r.high),
            "low": float(r.low),
            "close": float(r.close),
            "volume": float(r.volume),
        }
        for r in rows
    ]
    df = pd.DataFrame(records)
    df["t"] = pd.to_datetime(df["t"], utc=True)
    return df.set_index("t").sort_index()


def _parse_klines(pair_id: int, klines: list[list], interval: str) -> list[Candle]:
    """Parse REST kline rows: [open_time, o, h, l, c, v, close_time, q, n, V, Q, ignore]."""
    candles = []
    for k in klines:
        event = KlineEvent(
            symbol="",
            event_time=datetime.fromtimestamp(k[6] / 1000, tz=timezone.utc),
            open_time=datetime.fromtimestamp(k[0] / 1000, tz=timezone.utc),
            close_time=datetime.fromtimestamp(k[6] / 1000, tz=timezone.utc),
            interval=interval,
            open=Decimal(k[1]),
            high=Decimal(k[2]),
            low=Decimal(k[3]),
            close=Decimal(k[4]),
            volume=Decimal(k[5]),
            quote_volume=Decimal(k[7]),
            trades_count=int(k[8]),
            taker_buy_volume=Decimal(k[9]),
            taker_buy_quote_volume=Decimal(k[10]),
            is_closed=True,
        )
        if event.open <= 0:
            continue
        candles.append(candle_from_kline(pair_id, event))
    return candles


async def backfill_candles(client, pair, cache, limit: int | None = None) -> int:
    """Seed the candle window from REST so indicators exist before the first stream candle."""
    limit = limit or settings.indicator_window
    klines = await client.get_klines(pair.symbol, settings.kline_interval, limit=limit + 1)
    # The newest REST kline is still open
    closed = [k for k in klines if k[6] < datetime.now(timezone.utc).timestamp() * 1000]
    inserted = sum(1 for c in _parse_klines(pair.id, closed, settings.kline_interval) if store_candle(c))
    if inserted:
        refresh_indicators(pair.id, cache)
    logger.info(f"[{pair.symbol}] Backfilled {inserted} candles")
    return inserted


# ---------------------------------------------------------------------------
# Indicators
# ---------------------------------------------------------------------------

def refresh_indicators(pair_id: int, cache, window: int | None = None) -> IndicatorValues | None:
    """Recompute indicators over the latest window, persist and cache them.

    Re-running on an unchanged window returns the already-stored snapshot.
    """
    candles = load_candle_window(pair_id, window)
    values = compute_indicators(candles)
    if values is None:
        return None

    with Session(engine) as session:
        session.add(IndicatorSnapshot(pair_id=pair_id, **values.to_dict()))
        try:
            session.commit()
            log_event(logger, logging.DEBUG, "INDICATORS_UPDATED",
                      f"Indicators updated for pair {pair_id}", pair_id=pair_id,
                      rsi=values.rsi, atr=values.atr, candles=values.candle_count)
        except IntegrityError:
            session.rollback()

    cache.set(indicators_key(pair_id), values, ttl=settings.indicator_cache_ttl_seconds)
    return values


def get_latest_indicators(pair_id: int, cache) -> IndicatorValues | None:
    """Cached snapshot, else the newest persisted one."""
    values = cache.get(indicators_key(pair_id))
    if values is not None:
        return values

    with Session(engine) as session:
        row = session.exec(
            select(IndicatorSnapshot)
            .where(IndicatorSnapshot.pair_id == pair_id)
            .order_by(IndicatorSnapshot.timestamp.desc())
        ).first()
    if row is None:
        return None

    values = _values_from_row(row)
    cache.set(indicators_key(pair_id), values, ttl=settings.indicator_cache_ttl_seconds)
    return values


def _values_from_row(row: IndicatorSnapshot) -> IndicatorValues:
    return IndicatorValues(
        timestamp=row.timestamp,
        close=row.close,
        rsi=row.rsi,
        macd_line=row.macd_line,
        macd_signal=row.macd_signal,
        macd_histogram=row.macd_histogram,
        bb_upper=row.bb_upper,
        bb_middle=row.bb_middle,
        bb_lower=row.bb_lower,
        atr=row.atr,
        volatility=row.volatility,
        sma_20=row.sma_20,
        ema_20=row.ema_20,
        candle_count=row.candle_count,
    )


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

def purge_market_data(days: int | None = None) -> dict:
    """Delete candles and indicator snapshots older than the retention window."""
    days = days if days is not None else settings.retention_days
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)

    with engine.begin() as conn:
        candles = conn.execute(delete(Candle).where(Candle.timestamp < cutoff)).rowcount
        snapshots = conn.execute(
            delete(IndicatorSnapshot).where(IndicatorSnapshot.timestamp < cutoff)
        ).rowcount

    log_event(logger, logging.INFO, "MARKET_DATA_PURGED",
              f"Purged {candles} candles and {snapshots} indicator snapshots older than {days} days",
              days=days, candles=candles, snapshots=snapshots)
    return {"candles": candles, "indicator_snapshots": snapshots, "cutoff": cutoff.isoformat()}
