"""Tests for decoding exchange stream payloads into typed events."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from cryptobot.errors import MalformedEventError
from cryptobot.services.events import KlineEvent, TickerEvent, TradeEvent, decode_event


def kline_payload(**overrides):
    k = {
        "t": 1767614400000, "T": 1767614459999, "s": "BTCUSDT", "i": "1m",
        "o": "100.0", "c": "101.5", "h": "102.0", "l": "99.5",
        "v": "12.5", "n": 40, "x": True, "q": "1262.5", "V": "7.5", "Q": "757.0",
    }
    k.update(overrides)
    return {"e": "kline", "E": 1767614460000, "s": "BTCUSDT", "k": k}


def trade_payload(**overrides):
    data = {"e": "trade", "E": 1767614460000, "s": "BTCUSDT", "t": 12345,
            "p": "50000.00", "q": "0.3", "T": 1767614459990, "m": False}
    data.update(overrides)
    return data


def ticker_payload():
    return {
        "e": "24hrTicker", "E": 1767614460000, "s": "BTCUSDT",
        "p": "150.0", "P": "0.3", "w": "50010.0", "c": "50100.0", "Q": "0.01",
        "b": "50099.0", "a": "50101.0", "o": "49950.0", "h": "50500.0", "l": "49500.0",
        "v": "1200.5", "q": "60000000.0", "n": 98000,
    }


# ---------------------------------------------------------------------------
# Kline
# ---------------------------------------------------------------------------

class TestKline:
    def test_decode(self):
        event = decode_event(kline_payload())
        assert isinstance(event, KlineEvent)
        assert event.symbol == "BTCUSDT"
        assert event.close == Decimal("101.5")
        assert event.open_time == datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
        assert event.is_closed
        assert event.taker_buy_volume == Decimal("7.5")

    def test_combined_stream_envelope(self):
        event = decode_event({"stream": "btcusdt@kline_1m", "data": kline_payload()})
        assert isinstance(event, KlineEvent)

    def test_high_below_close_rejected(self):
        with pytest.raises(MalformedEventError):
            decode_event(kline_payload(h="101.0"))

    def test_low_above_open_rejected(self):
        with pytest.raises(MalformedEventError):
            decode_event(kline_payload(l="100.5"))

    def test_non_positive_open_rejected(self):
        with pytest.raises(MalformedEventError):
            decode_event(kline_payload(o="0", l="0"))

    def test_non_numeric_rejected(self):
        with pytest.raises(MalformedEventError):
            decode_event(kline_payload(c="abc"))

    def test_missing_field_rejected(self):
        payload = kline_payload()
        del payload["k"]["c"]
        with pytest.raises(MalformedEventError):
            decode_event(payload)


# ---------------------------------------------------------------------------
# Trade / ticker
# ---------------------------------------------------------------------------

class TestTrade:
    def test_decode_and_notional(self):
        event = decode_event(trade_payload())
        assert isinstance(event, TradeEvent)
        assert event.notional == Decimal("15000.000")
        assert event.is_buy

    def test_buyer_maker_is_sell(self):
        assert not decode_event(trade_payload(m=True)).is_buy


def test_ticker_decode():
    event = decode_event(ticker_payload())
    assert isinstance(event, TickerEvent)
    assert event.last_price == Decimal("50100.0")
    assert event.trades_count == 98000


# ---------------------------------------------------------------------------
# Control / unknown
# ---------------------------------------------------------------------------

def test_subscription_ack_ignored():
    assert decode_event({"result": None, "id": 1}) is None


def test_unknown_event_type_ignored():
    assert decode_event({"e": "depthUpdate", "s": "BTCUSDT"}) is None


@pytest.mark.parametrize("payload", [[], "text", 42, {"foo": "bar"}, {"stream": "x", "data": []}])
def test_non_event_payload_rejected(payload):
    with pytest.raises(MalformedEventError):
        decode_event(payload)
