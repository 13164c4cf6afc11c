"""Database models."""

from cryptobot.models.trading_pair import TradingPair
from cryptobot.models.trading_strategy import TradingStrategy
from cryptobot.models.candle import Candle
from cryptobot.models.indicator_snapshot import IndicatorSnapshot
from cryptobot.models.position import Position
from cryptobot.models.portfolio_snapshot import PortfolioSnapshot
from cryptobot.models.sentiment_reading import SentimentReading
from cryptobot.models.system_log import SystemLog
from cryptobot.models.credential import Credential

__all__ = [
    "TradingPair",
    "TradingStrategy",
    "Candle",
    "IndicatorSnapshot",
    "Position",
    "PortfolioSnapshot",
    "SentimentReading",
    "SystemLog",
    "Credential",
]
