"""Event processor: typed stream events -> canonical records + rolling cache.

Handlers run as independent tasks. Updates to one symbol's cache entries are
serialized through the cache's per-key lock; different symbols proceed
concurrently. Each handler is retried on transient store errors and dropped
after the last attempt (at-most-once), so one bad event never blocks the
stream.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, replace

from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from cryptobot.config import settings
from cryptobot.database import engine
from cryptobot.errors import UnknownPairError
from cryptobot.models.trading_pair import TradingPair
from cryptobot.services.events import KlineEvent, MarketEvent, TickerEvent, TradeEvent
from cryptobot.services.market_data import candle_from_kline, refresh_indicators, store_candle
from cryptobot.utils.constants import (
    candle_key,
    price_key,
    ticker_key,
    trade_stats_key,
    trades_key,
)
from cryptobot.utils.logging import log_event
from cryptobot.utils.retry import retry_async

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeStats:
    """Rolling trade aggregate for one symbol. Replaced, never mutated."""

    buy_volume: float = 0.0
    sell_volume: float = 0.0
    volume: float = 0.0
    trades_count: int = 0
    last_price: float | None = None
    high_price: float | None = None
    low_price: float | None = None

    def add(self, trade: TradeEvent) -> "TradeStats":
        price = float(trade.price)
        qty = float(trade.quantity)
        return replace(
            self,
            buy_volume=self.buy_volume + (qty if trade.is_buy else 0.0),
            sell_volume=self.sell_volume + (0.0 if trade.is_buy else qty),
            volume=self.volume + qty,
            trades_count=self.trades_count + 1,
            last_price=price,
            high_price=price if self.high_price is None else max(self.high_price, price),
            low_price=price if self.low_price is None else min(self.low_price, price),
        )


class EventProcessor:
    def __init__(
        self,
        cache,
        max_attempts: int | None = None,
        timeout: float | None = None,
        retry_delay: float = 0.5,
        significant_notional: float | None = None,
        market_ttl: float | None = None,
        buffer_size: int | None = None,
    ):
        self.cache = cache
        self.max_attempts = max_attempts or settings.handler_max_attempts
        self.timeout = timeout or settings.handler_timeout_seconds
        self.retry_delay = retry_delay
        self.significant_notional = (
            significant_notional if significant_notional is not None else settings.significant_trade_notional
        )
        self.market_ttl = market_ttl or settings.market_cache_ttl_seconds
        self.buffer_size = buffer_size or settings.trade_buffer_size

        self.processed = 0
        self.failed = 0
        self._pair_ids: dict[str, int] = {}
        self._tasks: set[asyncio.Task] = set()
        self._accepting = True

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def submit(self, event: MarketEvent) -> asyncio.Task | None:
        """Schedule `event` for processing. Gateway callback; never blocks."""
        if not self._accepting:
            return None
        task = asyncio.get_running_loop().create_task(self.process(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def process(self, event: MarketEvent) -> bool:
        handler = self._handler_for(event)
        try:
            await retry_async(
                lambda: handler(event),
                max_attempts=self.max_attempts,
                timeout=self.timeout,
                delay=self.retry_delay,
                exceptions=(OperationalError,),
            )
        except UnknownPairError as e:
            logger.debug(f"Dropping {type(event).__name__}: {e}")
            return False
        except Exception as e:
            self.failed += 1
            log_event(logger, logging.ERROR, "EVENT_HANDLER_FAILED",
                      f"{type(event).__name__} for {event.symbol} dropped after failure: {e!r}",
                      event_type=type(event).__name__, payload=asdict(event))
            return False
        self.processed += 1
        return True

    def _handler_for(self, event: MarketEvent):
        if isinstance(event, KlineEvent):
            return self.handle_kline
        if isinstance(event, TradeEvent):
            return self.handle_trade
        if isinstance(event, TickerEvent):
            return self.handle_ticker
        raise TypeError(f"Unsupported event {type(event).__name__}")

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: float) -> int:
        """Stop accepting events, wait up to `timeout` for in-flight handlers, cancel the rest.

        Returns the number of handlers abandoned.
        """
        self._accepting = False
        pending = set(self._tasks)
        if not pending:
            return 0
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"Abandoned {len(still_running)} in-flight event handlers on shutdown")
        return len(still_running)

    # ------------------------------------------------------------------
    # Pair lookup
    # ------------------------------------------------------------------

    def register_pairs(self, pairs: list[TradingPair]):
        for pair in pairs:
            self._pair_ids[pair.symbol] = pair.id

    def _resolve_pair_id(self, symbol: str) -> int:
        pair_id = self._pair_ids.get(symbol)
        if pair_id is not None:
            return pair_id
        with Session(engine) as session:
            pair = session.exec(
                select(TradingPair).where(TradingPair.symbol == symbol, TradingPair.is_active == True)
            ).first()
        if pair is None:
            raise UnknownPairError(f"No active pair for symbol {symbol}")
        self._pair_ids[symbol] = pair.id
        return pair.id

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_kline(self, event: KlineEvent):
        pair_id = self._resolve_pair_id(event.symbol)
        async with self.cache.lock(event.symbol):
            self.cache.set(price_key(event.symbol), float(event.close), ttl=self.market_ttl)
            self.cache.set(candle_key(event.symbol), {
                "timestamp": event.open_time.isoformat(),
                "open": float(event.open),
                "high": float(event.high),
                "low": float(event.low),
                "close": float(event.close),
                "volume": float(event.volume),
                "is_closed": event.is_closed,
            }, ttl=self.market_ttl)

            if not event.is_closed:
                return
            # Open klines are revised until close; only closed ones are stored.
            # A retry after a partial failure finds the candle stored and
            # still refreshes indicators, which is idempotent per timestamp.
            # DB writes run in the executor so the handler timeout can abandon them.
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, store_candle, candle_from_kline(pair_id, event))
            await loop.run_in_executor(None, refresh_indicators, pair_id, self.cache)

    async def handle_trade(self, event: TradeEvent):
        async with self.cache.lock(event.symbol):
            buffer = self.cache.get(trades_key(event.symbol)) or ()
            entry = {
                "id": event.trade_id,
                "price": float(event.price),
                "quantity": float(event.quantity),
                "time": event.trade_time.isoformat(),
                "is_buyer_maker": event.is_buyer_maker,
            }
            self.cache.set(trades_key(event.symbol), (entry, *buffer)[: self.buffer_size], ttl=self.market_ttl)

            stats = self.cache.get(trade_stats_key(event.symbol)) or TradeStats()
            self.cache.set(trade_stats_key(event.symbol), stats.add(event), ttl=self.market_ttl)

        notional = float(event.notional)
        if notional > self.significant_notional:
            log_event(logger, logging.INFO, "SIGNIFICANT_TRADE_PROCESSED",
                      f"{event.symbol} trade {event.trade_id}: {event.quantity} @ {event.price} "
                      f"({notional:.2f} notional)",
                      symbol=event.symbol, trade_id=event.trade_id, price=float(event.price),
                      quantity=float(event.quantity), notional=notional,
                      side="SELL" if event.is_buyer_maker else "BUY")

    async def handle_ticker(self, event: TickerEvent):
        async with self.cache.lock(event.symbol):
            self.cache.set(ticker_key(event.symbol), {
                "last_price": float(event.last_price),
                "price_change": float(event.price_change),
                "price_change_percent": float(event.price_change_percent),
                "weighted_avg_price": float(event.weighted_avg_price),
                "high": float(event.high_price),
                "low": float(event.low_price),
                "volume": float(event.volume),
                "quote_volume": float(event.quote_volume),
                "trades_count": event.trades_count,
                "event_time": event.event_time.isoformat(),
            }, ttl=self.market_ttl)
