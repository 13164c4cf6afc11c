"""Shared constants: event codes and cache key builders."""

# Trade sides / order sides
BUY = "BUY"
SELL = "SELL"

# Gateway health states
GATEWAY_IDLE = "idle"
GATEWAY_CONNECTING = "connecting"
GATEWAY_CONNECTED = "connected"
GATEWAY_RECONNECTING = "reconnecting"
GATEWAY_FAILED = "failed"
GATEWAY_CLOSED = "closed"

# Indicator defaults
RSI_PERIOD = 14
RSI_OVERSOLD = 30.0
RSI_OVERBOUGHT = 70.0
MACD_FAST = 12
MACD_SLOW = 26
MACD_SIGNAL = 9
BB_PERIOD = 20
BB_MULTIPLIER = 2.0
ATR_PERIOD = 14
VOLATILITY_PERIOD = 20
MA_PERIOD = 20

# Exit on strong opposing sentiment
SENTIMENT_EXIT_SCORE = 0.5
SENTIMENT_EXIT_CONFIDENCE = 0.7


def price_key(symbol: str) -> str:
    return f"price:{symbol}"


def candle_key(symbol: str) -> str:
    return f"candle:{symbol}"


def trades_key(symbol: str) -> str:
    return f"trades:{symbol}"


def trade_stats_key(symbol: str) -> str:
    return f"trade_stats:{symbol}"


def ticker_key(symbol: str) -> str:
    return f"ticker_24h:{symbol}"


def indicators_key(pair_id: int) -> str:
    return f"indicators:{pair_id}"


def sentiment_key(pair_id: int) -> str:
    return f"sentiment:{pair_id}"
