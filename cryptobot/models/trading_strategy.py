"""TradingStrategy model: a parameterized decision policy run against every active pair."""

from datetime import datetime, time, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class TradingStrategy(SQLModel, table=True):
    __tablename__ = "trading_strategy"

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    description: str = ""
    is_active: bool = True
    timeframe: str = "1m"
    max_positions: int = 1
    max_drawdown: float = 15.0  # percent
    profit_target: float = 10.0  # percent
    stop_loss_pct: float = 5.0
    parameters: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    # {"monday": [{"start": "09:00", "end": "17:30"}], ...}; empty = always open
    trading_hours: dict[str, list[dict[str, str]]] | None = Field(default=None, sa_column=Column(JSON))
    backtest_results: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    version: str = "1.0.0"
    change_history: list[dict[str, Any]] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def is_within_trading_hours(self, now: datetime | None = None) -> bool:
        if not self.trading_hours:
            return True
        now = now or datetime.now(timezone.utc)
        windows = self.trading_hours.get(now.strftime("%A").lower())
        if not windows:
            return False
        current = now.time().replace(second=0, microsecond=0)
        for window in windows:
            start = time.fromisoformat(window["start"])
            end = time.fromisoformat(window["end"])
            if start <= current <= end:
                return True
        return False

    def bump_version(self, change_type: str, description: str):
        """Increment the patch version and append a change-history entry."""
        major, minor, patch = (self.version or "1.0.0").split(".")
        self.version = f"{major}.{minor}.{int(patch) + 1}"
        # Reassign so the JSON column is flagged dirty
        self.change_history = [
            *(self.change_history or []),
            {
                "type": change_type,
                "description": description,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "version": self.version,
            },
        ]
        self.updated_at = datetime.now(timezone.utc)
