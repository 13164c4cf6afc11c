"""SystemLog model: persisted structured log records (event-coded)."""

from datetime import datetime, timezone
from typing import Any

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON


class SystemLog(SQLModel, table=True):
    __tablename__ = "system_log"

    id: int | None = Field(default=None, primary_key=True)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    level: str = Field(index=True)  # "INFO", "WARNING", "ERROR", "CRITICAL"
    component: str  # logger name
    event: str = Field(index=True)  # e.g. "POSITION_OPENED"
    message: str
    context: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
