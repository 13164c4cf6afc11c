"""Technical indicator engine.

All functions are pure computation. No I/O, no database access. Inputs are
ascending-time price arrays (or a candle DataFrame sorted here); outputs are
plain floats so snapshots compare equal for identical windows.
"""

from dataclasses import dataclass, asdict
from datetime import datetime

import numpy as np
import pandas as pd

from cryptobot.utils.constants import (
    ATR_PERIOD,
    BB_MULTIPLIER,
    BB_PERIOD,
    MA_PERIOD,
    MACD_FAST,
    MACD_SIGNAL,
    MACD_SLOW,
    RSI_OVERBOUGHT,
    RSI_OVERSOLD,
    RSI_PERIOD,
    VOLATILITY_PERIOD,
)


@dataclass(frozen=True)
class IndicatorValues:
    timestamp: datetime
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
    candle_count: int

    @property
    def is_oversold(self) -> bool:
        return self.rsi <= RSI_OVERSOLD

    @property
    def is_overbought(self) -> bool:
        return self.rsi >= RSI_OVERBOUGHT

    @property
    def bullish_macd(self) -> bool:
        return self.macd_histogram > 0 and self.macd_line > self.macd_signal

    @property
    def bearish_macd(self) -> bool:
        return self.macd_histogram < 0 and self.macd_line < self.macd_signal

    def price_above_bb(self, price: float) -> bool:
        return price > self.bb_upper

    def price_below_bb(self, price: float) -> bool:
        return price < self.bb_lower

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Core series helpers
# ---------------------------------------------------------------------------

def compute_rsi(prices, period: int = RSI_PERIOD) -> float:
    """RSI with plain arithmetic-mean gain/loss (no Wilder smoothing).

    Returns 50 (neutral) when fewer than `period` prices are available.
    """
    values = np.asarray(prices, dtype=float)
    if len(values) < period:
        return 50.0

    changes = np.diff(values)[-period:]
    gains = np.where(changes >= 0, changes, 0.0)
    losses = np.where(changes < 0, -changes, 0.0)

    avg_gain = float(gains.sum()) / period
    avg_loss = float(losses.sum()) / period

    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def compute_ema(prices, period: int) -> np.ndarray:
    """EMA seeded with the first element, multiplier 2/(period+1)."""
    values = np.asarray(prices, dtype=float)
    if len(values) == 0:
        return np.array([], dtype=float)

    multiplier = 2.0 / (period + 1)
    ema = np.empty(len(values), dtype=float)
    ema[0] = values[0]
    for i in range(1, len(values)):
        ema[i] = (values[i] - ema[i - 1]) * multiplier + ema[i - 1]
    return ema


def compute_macd(
    prices,
    fast: int = MACD_FAST,
    slow: int = MACD_SLOW,
    signal: int = MACD_SIGNAL,
) -> tuple[float, float, float]:
    """Return the last (macd_line, signal_line, histogram)."""
    values = np.asarray(prices, dtype=float)
    if len(values) == 0:
        return 0.0, 0.0, 0.0

    macd_line = compute_ema(values, fast) - compute_ema(values, slow)
    signal_line = compute_ema(macd_line, signal)
    histogram = macd_line - signal_line
    return float(macd_line[-1]), float(signal_line[-1]), float(histogram[-1])


def compute_bollinger_bands(
    prices,
    period: int = BB_PERIOD,
    multiplier: float = BB_MULTIPLIER,
) -> tuple[float, float, float]:
    """Return (upper, middle, lower) over the trailing window, population std.

    Sums are divided by `period` even when fewer prices are available, so a
    short window pulls the middle band toward zero.
    """
    values = np.asarray(prices, dtype=float)
    if len(values) == 0:
        return 0.0, 0.0, 0.0

    window = values[-period:]
    middle = float(window.sum() / period)
    std = float(np.sqrt(((window - middle) ** 2).sum() / period))
    return middle + multiplier * std, middle, middle - multiplier * std


def compute_atr(highs, lows, closes, period: int = ATR_PERIOD) -> float:
    """Sum of the last `period` true ranges divided by `period`. 0.0 without two bars."""
    high = np.asarray(highs, dtype=float)
    low = np.asarray(lows, dtype=float)
    close = np.asarray(closes, dtype=float)
    if len(close) < 2:
        return 0.0

    prev_close = close[:-1]
    true_ranges = np.maximum.reduce([
        high[1:] - low[1:],
        np.abs(high[1:] - prev_close),
        np.abs(low[1:] - prev_close),
    ])
    return float(true_ranges[-period:].sum() / period)


def compute_volatility(prices, period: int = VOLATILITY_PERIOD) -> float:
    """Population std of simple returns over min(len(returns), period)."""
    values = np.asarray(prices, dtype=float)
    if len(values) < 2:
        return 0.0

    prev = values[:-1]
    returns = np.divide(np.diff(values), prev, out=np.zeros(len(prev)), where=prev != 0)
    window = returns[-period:]
    return float(window.std())


def compute_sma(prices, period: int = MA_PERIOD) -> float:
    values = np.asarray(prices, dtype=float)
    if len(values) == 0:
        return 0.0
    return float(values[-period:].sum() / period)


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------

def compute_indicators(candles: pd.DataFrame) -> IndicatorValues | None:
    """Compute every indicator over a candle window.

    `candles` is indexed by candle timestamp with high/low/close columns, in
    any order; rows are sorted ascending here. Returns None for an empty window.
    """
    if candles is None or candles.empty:
        return None

    df = candles.sort_index()
    closes = df["close"].astype(float).values
    highs = df["high"].astype(float).values
    lows = df["low"].astype(float).values

    macd_line, macd_signal, macd_hist = compute_macd(closes)
    bb_upper, bb_middle, bb_lower = compute_bollinger_bands(closes)
    ema = compute_ema(closes, MA_PERIOD)

    return IndicatorValues(
        timestamp=df.index[-1].to_pydatetime(),
        close=float(closes[-1]),
        rsi=compute_rsi(closes),
        macd_line=macd_line,
        macd_signal=macd_signal,
        macd_histogram=macd_hist,
        bb_upper=bb_upper,
        bb_middle=bb_middle,
        bb_lower=bb_lower,
        atr=compute_atr(highs, lows, closes),
        volatility=compute_volatility(closes),
        sma_20=compute_sma(closes),
        ema_20=float(ema[-1]),
        candle_count=len(df),
    )
