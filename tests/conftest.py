"""Shared fixtures: in-memory database, fresh cache, sample rows."""

import os

from cryptography.fernet import Fernet

# Must be set before cryptobot.config is imported anywhere
os.environ["CB_DATABASE_URL"] = "sqlite://"
os.environ["CB_ENGINE_ENABLED"] = "false"
os.environ.setdefault("CB_ENCRYPTION_KEY", Fernet.generate_key().decode())

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from sqlmodel import Session, SQLModel  # noqa: E402

import cryptobot.models  # noqa: E402,F401
from cryptobot.database import engine  # noqa: E402
from cryptobot.models.candle import Candle  # noqa: E402
from cryptobot.models.trading_pair import TradingPair  # noqa: E402
from cryptobot.models.trading_strategy import TradingStrategy  # noqa: E402
from cryptobot.services.cache import TTLCache  # noqa: E402


@pytest.fixture
def db():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def cache():
    return TTLCache()


@pytest.fixture
def pair(db) -> TradingPair:
    with Session(engine) as session:
        row = TradingPair(
            symbol="BTCUSDT",
            base_asset="BTC",
            quote_asset="USDT",
            min_qty=Decimal("0.001"),
            max_qty=Decimal("100"),
            max_position_size=Decimal("1"),
        )
        session.add(row)
        session.commit()
        session.refresh(row)
        return row


@pytest.fixture
def strategy(db) -> TradingStrategy:
    with Session(engine) as session:
        row = TradingStrategy(name="momentum", change_history=[])
        session.add(row)
        session.commit()
        session.refresh(row)
        return row


def make_candles(pair_id: int, closes: list[float], start: datetime | None = None, spread: float = 1.0) -> list[Candle]:
    """One-minute candles with open=previous close and a fixed high/low spread."""
    start = start or datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)
    candles = []
    prev = closes[0]
    for i, close in enumerate(closes):
        candles.append(Candle(
            pair_id=pair_id,
            timestamp=start + timedelta(minutes=i),
            open=Decimal(str(prev)),
            high=Decimal(str(max(prev, close) + spread)),
            low=Decimal(str(min(prev, close) - spread)),
            close=Decimal(str(close)),
            volume=Decimal("10"),
        ))
        prev = close
    return candles


@pytest.fixture
def candle_factory():
    return make_candles
