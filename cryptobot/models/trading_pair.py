"""TradingPair model: an exchange instrument the engine trades."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field

from cryptobot.utils.numbers import DECIMAL_PLACES, MAX_DIGITS


class TradingPair(SQLModel, table=True):
    __tablename__ = "trading_pair"

    id: int | None = Field(default=None, primary_key=True)
    symbol: str = Field(index=True, unique=True)  # exchange symbol, e.g. "BTCUSDT"
    base_asset: str
    quote_asset: str = "USDT"

    # Exchange filters
    min_qty: Decimal = Field(default=Decimal("0.00001"), max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    max_qty: Decimal = Field(default=Decimal("9000"), max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    min_notional: Decimal = Field(default=Decimal("10"), max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)

    # Sizing & fees
    max_position_size: Decimal = Field(default=Decimal("1"), max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    maker_fee: Decimal = Field(default=Decimal("0.001"), max_digits=10, decimal_places=4)
    taker_fee: Decimal = Field(default=Decimal("0.001"), max_digits=10, decimal_places=4)

    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self) -> str:
        return f"{self.base_asset}/{self.quote_asset}"

    def stream_names(self, interval: str = "1m") -> list[str]:
        """Exchange stream names this pair subscribes to."""
        s = self.symbol.lower()
        return [f"{s}@kline_{interval}", f"{s}@trade", f"{s}@ticker"]
