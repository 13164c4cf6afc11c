"""PortfolioSnapshot model: periodic account valuation feeding the risk engine."""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON

from cryptobot.utils.numbers import DECIMAL_PLACES, MAX_DIGITS


class PortfolioSnapshot(SQLModel, table=True):
    __tablename__ = "portfolio_snapshot"

    id: int | None = Field(default=None, primary_key=True)
    snapshot_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    total_value: Decimal = Field(max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    free_quote: Decimal = Field(default=Decimal("0"), max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    locked_quote: Decimal = Field(default=Decimal("0"), max_digits=MAX_DIGITS, decimal_places=DECIMAL_PLACES)
    daily_drawdown: float = 0.0  # fraction, <= 0 (e.g. -0.04 = 4% below today's peak)
    open_positions: int = 0
    asset_distribution: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
