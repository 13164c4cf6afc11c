"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cryptobot.config import settings
from cryptobot.database import create_db_and_tables
from cryptobot.utils.logging import setup_logging
from cryptobot.api import pairs, strategies, system

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()

    runtime = None
    if settings.engine_enabled:
        from cryptobot.engine.runtime import TradingRuntime
        runtime = TradingRuntime()
        await runtime.start()
    else:
        logger.info("Trading engine disabled (CB_ENGINE_ENABLED=false); serving API only")
    app.state.runtime = runtime

    yield

    if runtime is not None:
        await runtime.shutdown()


app = FastAPI(
    title="Crypto Trading Engine",
    description="Streaming market data, indicator and risk-gated strategy engine for Binance spot",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(system.router)
app.include_router(pairs.router)
app.include_router(strategies.router)
