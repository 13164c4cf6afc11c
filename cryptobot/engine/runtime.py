"""Trading runtime: owns the gateway, event processor, order client and scheduler.

One `TradingRuntime` per process. `start()` wires everything up;
`request_shutdown()` may be called from a signal handler, another thread or
a test and only ever triggers the shutdown sequence once.
"""

import asyncio
import logging

from sqlmodel import Session, select

from cryptobot.config import settings
from cryptobot.database import engine
from cryptobot.engine.strategy_job import EngineContext
from cryptobot.errors import ConfigurationError, ExchangeError
from cryptobot.models.credential import Credential
from cryptobot.models.trading_pair import TradingPair
from cryptobot.services.binance_client import BinanceClient
from cryptobot.services.cache import TTLCache
from cryptobot.services.encryption import decrypt_secret
from cryptobot.services.event_processor import EventProcessor
from cryptobot.services.gateway import MarketDataGateway
from cryptobot.services.market_data import backfill_candles
from cryptobot.services.risk import RiskEngine, RiskLimits
from cryptobot.utils.constants import GATEWAY_FAILED
from cryptobot.utils.logging import install_system_log_handler, log_event

logger = logging.getLogger(__name__)


def load_client() -> BinanceClient:
    """Build the order client from the active stored credential."""
    with Session(engine) as session:
        cred = session.exec(
            select(Credential).where(Credential.is_active == True).order_by(Credential.id.desc())
        ).first()
    if cred is None:
        raise ConfigurationError("No active exchange credential configured (run `cryptobot.cli add-credential`)")
    return BinanceClient(
        api_key=cred.api_key,
        api_secret=decrypt_secret(cred.api_secret_encrypted),
        base_url=settings.rest_url,
        recv_window=settings.recv_window_ms,
    )


class TradingRuntime:
    def __init__(self, client=None, cache: TTLCache | None = None, connect=None, schedule: bool = True):
        self.client = client
        self.cache = cache or TTLCache()
        self.risk = RiskEngine(RiskLimits.from_settings(settings))
        self.processor = EventProcessor(self.cache)
        self.gateway: MarketDataGateway | None = None
        self.context: EngineContext | None = None

        self._connect = connect
        self._schedule = schedule
        self._gateway_task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stopping = asyncio.Event()
        self._shutdown_requested = False
        self._shutdown_task: asyncio.Task | None = None
        self.started = False

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self):
        self._loop = asyncio.get_running_loop()
        install_system_log_handler()

        if self.client is None:
            try:
                self.client = load_client()
            except ConfigurationError as e:
                log_event(logger, logging.CRITICAL, "CONFIGURATION_ERROR", str(e))
                raise
        self.context = EngineContext(self.client, self.cache, self.risk, price_ttl=settings.market_cache_ttl_seconds)

        with Session(engine) as session:
            pairs = session.exec(select(TradingPair).where(TradingPair.is_active == True)).all()
        self.processor.register_pairs(pairs)

        for pair in pairs:
            try:
                await backfill_candles(self.client, pair, self.cache)
            except ExchangeError as e:
                logger.warning(f"[{pair.symbol}] Candle backfill failed: {e}")

        streams = [s for pair in pairs for s in pair.stream_names(settings.kline_interval)]
        self.gateway = MarketDataGateway(
            settings.ws_url,
            streams,
            self.processor.submit,
            base_delay_ms=settings.gateway_base_delay_ms,
            max_delay_ms=settings.gateway_max_delay_ms,
            max_attempts=settings.gateway_max_attempts,
            connect=self._connect,
        )
        self._start_gateway()

        if self._schedule:
            from cryptobot.engine.scheduler import start_scheduler
            start_scheduler(self)

        self.started = True
        logger.info(f"Trading runtime started: {len(pairs)} pairs, {len(streams)} streams")

    def _start_gateway(self):
        self._gateway_task = asyncio.get_running_loop().create_task(self.gateway.run())

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    async def check_gateway_health(self):
        """Watchdog job: restart a gateway that went silent or gave up."""
        if self.gateway is None or self._shutdown_requested:
            return
        threshold = settings.gateway_stale_seconds
        if not self.gateway.is_stale(threshold):
            return

        elapsed = self.gateway.seconds_since_last_message()
        log_event(logger, logging.WARNING, "GATEWAY_STALE",
                  f"Gateway stale (status={self.gateway.status}, {elapsed}s since last message), restarting",
                  status=self.gateway.status, seconds_since_last_message=elapsed)

        if self.gateway.status == GATEWAY_FAILED or (self._gateway_task and self._gateway_task.done()):
            self.gateway.reconnect_attempts = 0
            self._start_gateway()
        else:
            self.gateway.force_reconnect()

    def health(self) -> dict:
        threshold = settings.gateway_stale_seconds
        gateway = self.gateway.health(threshold) if self.gateway else None
        return {
            "running": self.started and not self._shutdown_requested,
            "gateway": gateway,
            "healthy": gateway is not None and not gateway["stale"],
            "in_flight_events": self.processor.in_flight,
            "processed_events": self.processor.processed,
            "failed_events": self.processor.failed,
        }

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def request_shutdown(self):
        """Begin shutdown. Idempotent; safe from signal handlers and other threads."""
        if self._shutdown_requested:
            return
        self._shutdown_requested = True
        logger.info("Shutdown requested")
        if self.gateway is not None:
            self.gateway.close()
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._stopping.set()
        else:
            loop.call_soon_threadsafe(self._stopping.set)

    async def shutdown(self):
        """Run the shutdown sequence once; later callers await the same run."""
        self.request_shutdown()
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        await asyncio.shield(self._shutdown_task)

    async def _shutdown(self):
        if self._schedule:
            from cryptobot.engine.scheduler import stop_scheduler
            stop_scheduler()

        if self._gateway_task is not None:
            try:
                await asyncio.wait_for(self._gateway_task, timeout=settings.shutdown_grace_seconds)
            except asyncio.TimeoutError:
                logger.warning("Gateway did not stop within the grace period")

        abandoned = await self.processor.drain(settings.shutdown_grace_seconds)

        if self.client is not None:
            await self.client.close()
        self.started = False
        logger.info(f"Trading runtime stopped ({abandoned} in-flight handlers abandoned)")

    async def wait_closed(self):
        """Block until shutdown is requested, then finish it."""
        await self._stopping.wait()
        await self.shutdown()
