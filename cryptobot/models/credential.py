"""Credential model: encrypted Binance API credentials."""

from datetime import datetime, timezone
from sqlmodel import SQLModel, Field


class Credential(SQLModel, table=True):
    __tablename__ = "credential"

    id: int | None = Field(default=None, primary_key=True)
    name: str = "default"
    api_key: str
    api_secret_encrypted: str = ""  # Fernet-encrypted API secret
    testnet: bool = True
    is_active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
