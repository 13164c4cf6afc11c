"""Strategy entry/exit signal evaluation.

All functions are pure computation. No I/O, no database access. Inputs are
the latest indicator snapshot, the aggregate sentiment signal and the current
price.
"""

from dataclasses import dataclass

from cryptobot.models.position import SIDE_LONG, SIDE_SHORT
from cryptobot.services.indicators import IndicatorValues
from cryptobot.services.sentiment import SentimentSignal
from cryptobot.utils.constants import BUY, SELL, SENTIMENT_EXIT_CONFIDENCE, SENTIMENT_EXIT_SCORE


@dataclass
class EntrySignal:
    should_enter: bool
    side: str | None = None  # "BUY" or "SELL"
    rule: str | None = None  # indicator rule that produced the vote
    skip_reason: str | None = None

    @property
    def position_side(self) -> str | None:
        if self.side == BUY:
            return SIDE_LONG
        if self.side == SELL:
            return SIDE_SHORT
        return None


@dataclass
class ExitSignal:
    should_exit: bool
    exit_reason: str | None = None


def evaluate_entry(indicators: IndicatorValues, sentiment: SentimentSignal, price: float) -> EntrySignal:
    """Vote BUY/SELL from RSI, MACD and Bollinger rules, each gated by sentiment direction.

    The rules are evaluated RSI -> MACD -> Bollinger and each matching rule
    replaces the previous vote, so the last matching rule decides.
    """
    decision = EntrySignal(should_enter=False, skip_reason="no_signal")

    # RSI extremes
    if indicators.is_oversold and sentiment.score > 0:
        decision = EntrySignal(True, BUY, "rsi")
    elif indicators.is_overbought and sentiment.score < 0:
        decision = EntrySignal(True, SELL, "rsi")

    # MACD crossover
    if indicators.bullish_macd and sentiment.score > 0:
        decision = EntrySignal(True, BUY, "macd")
    elif indicators.bearish_macd and sentiment.score < 0:
        decision = EntrySignal(True, SELL, "macd")

    # Bollinger breach
    if indicators.price_below_bb(price) and sentiment.score > 0:
        decision = EntrySignal(True, BUY, "bollinger")
    elif indicators.price_above_bb(price) and sentiment.score < 0:
        decision = EntrySignal(True, SELL, "bollinger")

    return decision


def evaluate_exit(indicators: IndicatorValues, sentiment: SentimentSignal, side: str) -> ExitSignal:
    """Strategy exit: momentum reversal or strong opposing sentiment."""
    if side == SIDE_LONG:
        if indicators.is_overbought:
            return ExitSignal(True, "RSI overbought")
        if indicators.bearish_macd:
            return ExitSignal(True, "Bearish MACD crossover")
        if sentiment.score < -SENTIMENT_EXIT_SCORE and sentiment.confidence > SENTIMENT_EXIT_CONFIDENCE:
            return ExitSignal(True, "Bearish sentiment")
    else:
        if indicators.is_oversold:
            return ExitSignal(True, "RSI oversold")
        if indicators.bullish_macd:
            return ExitSignal(True, "Bullish MACD crossover")
        if sentiment.score > SENTIMENT_EXIT_SCORE and sentiment.confidence > SENTIMENT_EXIT_CONFIDENCE:
            return ExitSignal(True, "Bullish sentiment")
    return ExitSignal(False)
