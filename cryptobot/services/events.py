"""Typed market events decoded from exchange stream payloads.

The gateway decodes every inbound JSON object exactly once into one of the
event dataclasses below; downstream code never touches the raw field names.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from cryptobot.errors import MalformedEventError


@dataclass(frozen=True)
class KlineEvent:
    symbol: str
    event_time: datetime
    open_time: datetime
    close_time: datetime
    interval: str
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    quote_volume: Decimal
    trades_count: int
    taker_buy_volume: Decimal
    taker_buy_quote_volume: Decimal
    is_closed: bool


@dataclass(frozen=True)
class TradeEvent:
    symbol: str
    event_time: datetime
    trade_id: int
    price: Decimal
    quantity: Decimal
    trade_time: datetime
    is_buyer_maker: bool

    @property
    def notional(self) -> Decimal:
        return self.price * self.quantity

    @property
    def is_buy(self) -> bool:
        """Aggressor was the buyer (taker buy)."""
        return not self.is_buyer_maker


@dataclass(frozen=True)
class TickerEvent:
    symbol: str
    event_time: datetime
    price_change: Decimal
    price_change_percent: Decimal
    weighted_avg_price: Decimal
    last_price: Decimal
    last_quantity: Decimal
    bid_price: Decimal
    ask_price: Decimal
    open_price: Decimal
    high_price: Decimal
    low_price: Decimal
    volume: Decimal
    quote_volume: Decimal
    trades_count: int


MarketEvent = KlineEvent | TradeEvent | TickerEvent


def _ms(value) -> datetime:
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise MalformedEventError(f"Bad timestamp {value!r}") from e


def _dec(value) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise MalformedEventError(f"Bad number {value!r}") from e
    if not d.is_finite():
        raise MalformedEventError(f"Non-finite number {value!r}")
    return d


def _decode_kline(data: dict) -> KlineEvent:
    k = data["k"]
    event = KlineEvent(
        symbol=data["s"],
        event_time=_ms(data.get("E", k["t"])),
        open_time=_ms(k["t"]),
        close_time=_ms(k["T"]),
        interval=k.get("i", "1m"),
        open=_dec(k["o"]),
        high=_dec(k["h"]),
        low=_dec(k["l"]),
        close=_dec(k["c"]),
        volume=_dec(k["v"]),
        quote_volume=_dec(k.get("q", "0")),
        trades_count=int(k.get("n", 0)),
        taker_buy_volume=_dec(k.get("V", "0")),
        taker_buy_quote_volume=_dec(k.get("Q", "0")),
        is_closed=bool(k.get("x", False)),
    )
    if not (event.high >= max(event.open, event.close) and min(event.open, event.close) >= event.low):
        raise MalformedEventError(f"Inconsistent OHLC for {event.symbol} at {event.open_time}")
    if event.open <= 0:
        raise MalformedEventError(f"Non-positive open for {event.symbol}")
    return event


def _decode_trade(data: dict) -> TradeEvent:
    return TradeEvent(
        symbol=data["s"],
        event_time=_ms(data.get("E", data["T"])),
        trade_id=int(data["t"]),
        price=_dec(data["p"]),
        quantity=_dec(data["q"]),
        trade_time=_ms(data["T"]),
        is_buyer_maker=bool(data["m"]),
    )


def _decode_ticker(data: dict) -> TickerEvent:
    return TickerEvent(
        symbol=data["s"],
        event_time=_ms(data["E"]),
        price_change=_dec(data["p"]),
        price_change_percent=_dec(data["P"]),
        weighted_avg_price=_dec(data["w"]),
        last_price=_dec(data["c"]),
        last_quantity=_dec(data.get("Q", "0")),
        bid_price=_dec(data.get("b", "0")),
        ask_price=_dec(data.get("a", "0")),
        open_price=_dec(data["o"]),
        high_price=_dec(data["h"]),
        low_price=_dec(data["l"]),
        volume=_dec(data["v"]),
        quote_volume=_dec(data["q"]),
        trades_count=int(data.get("n", 0)),
    )


_DECODERS = {
    "kline": _decode_kline,
    "trade": _decode_trade,
    "24hrTicker": _decode_ticker,
    "ticker": _decode_ticker,
}


def decode_event(payload) -> MarketEvent | None:
    """Decode one parsed JSON message.

    Returns None for control messages (subscription acks) and event types the
    engine does not consume. Raises MalformedEventError for anything else that
    cannot be decoded.
    """
    if not isinstance(payload, dict):
        raise MalformedEventError(f"Expected a JSON object, got {type(payload).__name__}")

    # Combined-stream envelope: {"stream": "btcusdt@trade", "data": {...}}
    if "stream" in payload and "data" in payload:
        payload = payload["data"]
        if not isinstance(payload, dict):
            raise MalformedEventError("Stream envelope without an object payload")

    if "e" not in payload:
        if "id" in payload and ("result" in payload or "error" in payload):
            return None
        raise MalformedEventError("Message has no event type")

    decoder = _DECODERS.get(payload["e"])
    if decoder is None:
        return None
    try:
        return decoder(payload)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedEventError(f"Malformed {payload['e']} event: {e!r}") from e
