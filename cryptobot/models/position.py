"""Position model: an open or closed exposure owned by a strategy."""

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Index
from sqlmodel import SQLModel, Field

from cryptobot.errors import PositionStateError
from cryptobot.utils.numbers import DECIMAL_PLACES, MAX_DIGITS, to_decimal

SIDE_LONG = "LONG"
SIDE_SHORT = "SHORT"
STATUS_OPEN = "OPEN"
STATUS_CLOSED = "CLOSED"


class Position(SQLModel, table=True):
    __tablename__ = "position"
    __table_args__ = (Index("ix_position_pair_strategy_status", "pair_id", "strategy_name", "status"),)

    id: int | None = Field(default=None, primary_key=True)
    pair_id: int = Field(foreign_key="trading_pair.id", index=True)
    strategy_name: str = Field(index=True)  # weak reference to TradingStrategy.name
    side: str  # "LONG" or "SHORT"
    status: str = STATUS_OPEN

    quantity: Decimal = Field(max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    entry_price: Decimal = Field(max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    current_price: Decimal = Field(max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    stop_loss: Decimal | None = Field(default=None, max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    take_profit: Decimal | None = Field(default=None, max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    trailing_stop: Decimal | None = Field(default=None, max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    realized_pnl: Decimal | None = Field(default=None, max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    unrealized_pnl: Decimal = Field(default=Decimal("0"), max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)

    entry_order_id: str | None = None
    exit_order_id: str | None = None
    exit_reason: str | None = None
    opened_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    closed_at: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_OPEN

    def pnl_at(self, price: float) -> float:
        """PnL of the full quantity marked at `price`."""
        qty = float(self.quantity)
        entry = float(self.entry_price)
        if self.side == SIDE_LONG:
            return (price - entry) * qty
        return (entry - price) * qty

    def mark_price(self, price: float):
        self.current_price = to_decimal(price)
        self.unrealized_pnl = to_decimal(self.pnl_at(price))

    def mark_closed(self, exit_price: float, reason: str, order_id: str | None = None,
                    closed_at: datetime | None = None):
        """Transition OPEN -> CLOSED. Allowed exactly once."""
        if self.status != STATUS_OPEN or self.closed_at is not None:
            raise PositionStateError(f"Position {self.id} is already {self.status}")
        self.status = STATUS_CLOSED
        self.current_price = to_decimal(exit_price)
        self.realized_pnl = to_decimal(self.pnl_at(exit_price))
        self.unrealized_pnl = Decimal("0")
        self.exit_reason = reason
        self.exit_order_id = order_id
        self.closed_at = closed_at or datetime.now(timezone.utc)
