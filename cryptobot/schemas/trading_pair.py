"""Pydantic schemas for TradingPair API."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field, field_validator, model_validator


class TradingPairCreate(BaseModel):
    symbol: str = Field(min_length=2, max_length=32)
    base_asset: str = Field(min_length=1, max_length=16)
    quote_asset: str = Field(default="USDT", min_length=1, max_length=16)
    min_qty: Decimal = Field(default=Decimal("0.00001"), gt=0)
    max_qty: Decimal = Field(default=Decimal("9000"), gt=0)
    min_notional: Decimal = Field(default=Decimal("10"), ge=0)
    max_position_size: Decimal = Field(default=Decimal("1"), gt=0)
    maker_fee: Decimal = Field(default=Decimal("0.001"), ge=0)
    taker_fee: Decimal = Field(default=Decimal("0.001"), ge=0)
    is_active: bool = True

    @field_validator("symbol", "base_asset", "quote_asset")
    @classmethod
    def _normalize_asset(cls, value: str) -> str:
        text = value.strip().replace("/", "").upper()
        if not text:
            raise ValueError("must not be empty")
        return text

    @model_validator(mode="after")
    def _validate_relationships(self):
        if self.min_qty > self.max_qty:
            raise ValueError("min_qty must be <= max_qty")
        if self.max_position_size < self.min_qty:
            raise ValueError("max_position_size must be >= min_qty")
        return self


class TradingPairUpdate(BaseModel):
    min_qty: Decimal | None = Field(default=None, gt=0)
    max_qty: Decimal | None = Field(default=None, gt=0)
    min_notional: Decimal | None = Field(default=None, ge=0)
    max_position_size: Decimal | None = Field(default=None, gt=0)
    maker_fee: Decimal | None = Field(default=None, ge=0)
    taker_fee: Decimal | None = Field(default=None, ge=0)
    is_active: bool | None = None


class TradingPairRead(BaseModel):
    id: int
    symbol: str
    base_asset: str
    quote_asset: str
    min_qty: Decimal
    max_qty: Decimal
    min_notional: Decimal
    max_position_size: Decimal
    maker_fee: Decimal
    taker_fee: Decimal
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}
