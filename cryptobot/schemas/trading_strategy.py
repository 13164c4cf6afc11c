"""Pydantic schemas for TradingStrategy API."""

from datetime import datetime, time
from typing import Any

from pydantic import BaseModel, Field, field_validator

DAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def _check_trading_hours(value: dict | None) -> dict | None:
    if not value:
        return value
    for day, windows in value.items():
        if day not in DAYS:
            raise ValueError(f"unknown day '{day}'")
        for window in windows:
            try:
                start = time.fromisoformat(window["start"])
                end = time.fromisoformat(window["end"])
            except (KeyError, TypeError, ValueError):
                raise ValueError(f"{day}: windows need 'start' and 'end' as HH:MM")
            if start > end:
                raise ValueError(f"{day}: start must be before end")
    return value


class TradingStrategyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    description: str = ""
    is_active: bool = True
    timeframe: str = "1m"
    max_positions: int = Field(default=1, ge=1)
    max_drawdown: float = Field(default=15.0, gt=0, le=100)
    profit_target: float = Field(default=10.0, gt=0)
    stop_loss_pct: float = Field(default=5.0, gt=0, le=100)
    parameters: dict[str, Any] | None = None
    trading_hours: dict[str, list[dict[str, str]]] | None = None
    backtest_results: dict[str, Any] | None = None

    @field_validator("name")
    @classmethod
    def _trim_name(cls, value: str) -> str:
        text = value.strip()
        if not text:
            raise ValueError("must not be empty")
        return text

    @field_validator("trading_hours")
    @classmethod
    def _validate_hours(cls, value):
        return _check_trading_hours(value)


class TradingStrategyUpdate(BaseModel):
    description: str | None = None
    timeframe: str | None = None
    max_positions: int | None = Field(default=None, ge=1)
    max_drawdown: float | None = Field(default=None, gt=0, le=100)
    profit_target: float | None = Field(default=None, gt=0)
    stop_loss_pct: float | None = Field(default=None, gt=0, le=100)
    parameters: dict[str, Any] | None = None
    trading_hours: dict[str, list[dict[str, str]]] | None = None
    backtest_results: dict[str, Any] | None = None
    change_description: str | None = None

    @field_validator("trading_hours")
    @classmethod
    def _validate_hours(cls, value):
        return _check_trading_hours(value)


class TradingStrategyRead(BaseModel):
    id: int
    name: str
    description: str
    is_active: bool
    timeframe: str
    max_positions: int
    max_drawdown: float
    profit_target: float
    stop_loss_pct: float
    parameters: dict[str, Any] | None
    trading_hours: dict[str, list[dict[str, str]]] | None
    backtest_results: dict[str, Any] | None
    version: str
    change_history: list[dict[str, Any]] | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
