"""Per (strategy, pair) trading cycle.

The control loop calls `run_strategy_tick` on each interval. For every
strategy x active pair it runs one state-machine step:

    Idle      (no OPEN position)  -> entry signals -> risk gate -> market order -> Position
    Managing  (OPEN position)     -> mark price -> trailing stop -> close checks -> market order -> CLOSED

A failure in one combination is logged and the loop moves on.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, select

from cryptobot.database import engine
from cryptobot.engine.portfolio import load_portfolio_state
from cryptobot.models.position import Position, SIDE_LONG, STATUS_OPEN
from cryptobot.models.trading_pair import TradingPair
from cryptobot.models.trading_strategy import TradingStrategy
from cryptobot.services import signal_engine
from cryptobot.services.market_data import get_latest_indicators
from cryptobot.services.risk import RiskEngine
from cryptobot.services.sentiment import get_aggregate_sentiment
from cryptobot.utils.constants import BUY, SELL, price_key
from cryptobot.utils.logging import log_event
from cryptobot.utils.numbers import to_decimal, to_float

logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    """Collaborators shared by every cycle."""

    client: object  # BinanceClient-compatible order client
    cache: object  # TTLCache
    risk: RiskEngine
    price_ttl: float = 300


async def run_strategy_tick(ctx: EngineContext, now: datetime | None = None) -> dict[str, str]:
    """One control-loop pass over every strategy x active pair, sequentially."""
    with Session(engine) as session:
        strategies = session.exec(select(TradingStrategy).order_by(TradingStrategy.id)).all()
        pairs = session.exec(
            select(TradingPair).where(TradingPair.is_active == True).order_by(TradingPair.id)
        ).all()
        strategy_ids = [s.id for s in strategies]
        pair_ids = [p.id for p in pairs]

    results = {}
    for strategy_id in strategy_ids:
        for pair_id in pair_ids:
            results[f"{strategy_id}:{pair_id}"] = await run_strategy_cycle(ctx, strategy_id, pair_id, now=now)
    return results


async def run_strategy_cycle(
    ctx: EngineContext,
    strategy_id: int,
    pair_id: int,
    now: datetime | None = None,
) -> str:
    """Evaluate one (strategy, pair). Returns the action taken; never raises."""
    strategy_name = f"strategy_{strategy_id}"
    symbol = f"pair_{pair_id}"
    try:
        with Session(engine) as session:
            strategy = session.get(TradingStrategy, strategy_id)
            pair = session.get(TradingPair, pair_id)
            if strategy is None or pair is None:
                return "skip:missing"
            strategy_name = strategy.name
            symbol = pair.symbol
            position = session.exec(
                select(Position).where(
                    Position.pair_id == pair_id,
                    Position.strategy_name == strategy.name,
                    Position.status == STATUS_OPEN,
                )
            ).first()

        if position is None:
            return await _handle_idle(ctx, strategy, pair, now)
        return await _handle_managing(ctx, strategy, pair, position)

    except Exception as e:
        log_event(logger, logging.ERROR, "STRATEGY_EXECUTION_FAILED",
                  f"[{strategy_name}/{symbol}] Cycle error: {e}", exc_info=True,
                  strategy=strategy_name, trading_pair=symbol)
        return "error"


async def _current_price(ctx: EngineContext, pair: TradingPair) -> float:
    price = ctx.cache.get(price_key(pair.symbol))
    if price is None:
        price = await ctx.client.get_price(pair.symbol)
        ctx.cache.set(price_key(pair.symbol), price, ttl=ctx.price_ttl)
    return float(price)


# ---------------------------------------------------------------------------
# Idle
# ---------------------------------------------------------------------------

async def _handle_idle(ctx: EngineContext, strategy: TradingStrategy, pair: TradingPair, now: datetime | None) -> str:
    if not strategy.is_active:
        return "skip:inactive"
    if not strategy.is_within_trading_hours(now):
        return "skip:outside_trading_hours"

    with Session(engine) as session:
        open_count = session.exec(
            select(func.count()).select_from(Position).where(
                Position.strategy_name == strategy.name,
                Position.status == STATUS_OPEN,
            )
        ).one()
    if open_count >= strategy.max_positions:
        return "skip:max_positions"

    indicators = get_latest_indicators(pair.id, ctx.cache)
    if indicators is None:
        logger.debug(f"[{strategy.name}/{pair.symbol}] No indicators yet")
        return "skip:no_indicators"

    price = await _current_price(ctx, pair)
    sentiment = get_aggregate_sentiment(pair.id, ctx.cache)

    entry = signal_engine.evaluate_entry(indicators, sentiment, price)
    if not entry.should_enter:
        return "none"

    side = entry.position_side
    stop_loss = ctx.risk.calculate_stop_loss(price, side, indicators.atr)
    portfolio = load_portfolio_state()
    size = ctx.risk.calculate_position_size(pair, price, stop_loss, portfolio.value, indicators.volatility)

    decision = ctx.risk.can_open_position(pair.id, size, side, price, indicators.volatility, portfolio)
    if not decision.allowed:
        log_event(logger, logging.INFO, "RISK_CHECK_REJECTED",
                  f"[{strategy.name}/{pair.symbol}] {entry.side} rejected: {decision.reason}",
                  strategy=strategy.name, trading_pair=pair.symbol, side=entry.side,
                  size=size, reason=decision.reason)
        return f"rejected:{decision.reason}"

    return await _open_position(ctx, strategy, pair, entry, size, price, stop_loss)


async def _open_position(ctx: EngineContext, strategy, pair, entry, size: float, price: float, stop_loss: float) -> str:
    """Order first, then the Position row. A failed write is compensated with a reversing order."""
    result = await ctx.client.place_market_order(pair.symbol, entry.side, size)
    if not result.success:
        log_event(logger, logging.ERROR, "POSITION_OPEN_FAILED",
                  f"[{strategy.name}/{pair.symbol}] {entry.side} order failed: {result.error}",
                  strategy=strategy.name, trading_pair=pair.symbol, side=entry.side, size=size)
        return "entry_failed"

    entry_price = result.filled_price or price
    quantity = result.filled_amount or size
    take_profit = ctx.risk.calculate_take_profit(price, stop_loss)

    try:
        with Session(engine) as session:
            # Re-check to prevent duplicates from a concurrent manual trigger
            existing = session.exec(
                select(Position).where(
                    Position.pair_id == pair.id,
                    Position.strategy_name == strategy.name,
                    Position.status == STATUS_OPEN,
                )
            ).first()
            if existing:
                logger.warning(f"[{strategy.name}/{pair.symbol}] Position already exists, reversing entry")
                await _compensate_entry(ctx, strategy, pair, entry.side, quantity, "duplicate position")
                return "entry_aborted_duplicate"

            position = Position(
                pair_id=pair.id,
                strategy_name=strategy.name,
                side=entry.position_side,
                quantity=to_decimal(quantity),
                entry_price=to_decimal(entry_price),
                current_price=to_decimal(entry_price),
                stop_loss=to_decimal(stop_loss),
                take_profit=to_decimal(take_profit),
                trailing_stop=to_decimal(stop_loss),
                entry_order_id=result.order_id,
            )
            session.add(position)
            session.commit()
            session.refresh(position)
    except SQLAlchemyError as e:
        await _compensate_entry(ctx, strategy, pair, entry.side, quantity, f"persist failed: {e}")
        return "entry_rolled_back"

    log_event(logger, logging.INFO, "POSITION_OPENED",
              f"[{strategy.name}/{pair.symbol}] Opened {position.side} {quantity} @ {entry_price} ({entry.rule})",
              position_id=position.id, strategy=strategy.name, trading_pair=pair.symbol,
              size=quantity, entry_price=entry_price, stop_loss=stop_loss, take_profit=take_profit,
              rule=entry.rule, order_id=result.order_id)
    return f"entry_{position.side.lower()}"


async def _compensate_entry(ctx: EngineContext, strategy, pair, side: str, quantity: float, why: str):
    """Flatten a filled entry that could not be recorded."""
    reverse = SELL if side == BUY else BUY
    result = await ctx.client.place_market_order(pair.symbol, reverse, quantity)
    if result.success:
        log_event(logger, logging.WARNING, "POSITION_COMPENSATED",
                  f"[{strategy.name}/{pair.symbol}] Entry reversed ({why})",
                  strategy=strategy.name, trading_pair=pair.symbol, side=reverse, size=quantity)
    else:
        log_event(logger, logging.CRITICAL, "POSITION_COMPENSATED",
                  f"[{strategy.name}/{pair.symbol}] Could not reverse entry ({why}): {result.error}. "
                  f"Manual intervention required.",
                  strategy=strategy.name, trading_pair=pair.symbol, side=reverse, size=quantity)


# ---------------------------------------------------------------------------
# Managing
# ---------------------------------------------------------------------------

async def _handle_managing(ctx: EngineContext, strategy: TradingStrategy, pair: TradingPair, position: Position) -> str:
    price = await _current_price(ctx, pair)
    indicators = get_latest_indicators(pair.id, ctx.cache)
    atr = indicators.atr if indicators else None

    new_trailing = ctx.risk.update_trailing_stop(position, price, atr)
    with Session(engine) as session:
        db_pos = session.get(Position, position.id)
        db_pos.mark_price(price)
        if new_trailing is not None and to_decimal(new_trailing) != db_pos.trailing_stop:
            logger.info(f"[{strategy.name}/{pair.symbol}] Trailing stop {db_pos.trailing_stop} -> {new_trailing:.8f}")
            db_pos.trailing_stop = to_decimal(new_trailing)
        session.add(db_pos)
        session.commit()
        session.refresh(db_pos)
        position = db_pos

    close = ctx.risk.should_close_position(position, price)
    reason = close.reason if close.should_close else None

    if reason is None and indicators is not None:
        sentiment = get_aggregate_sentiment(pair.id, ctx.cache)
        exit_sig = signal_engine.evaluate_exit(indicators, sentiment, position.side)
        if exit_sig.should_exit:
            reason = f"Exit signal: {exit_sig.exit_reason}"

    if reason is None:
        return "hold"
    return await _close_position(ctx, strategy, pair, position, price, reason)


async def _close_position(ctx: EngineContext, strategy, pair, position: Position, price: float, reason: str) -> str:
    close_side = SELL if position.side == SIDE_LONG else BUY
    quantity = to_float(position.quantity)
    result = await ctx.client.place_market_order(pair.symbol, close_side, quantity)
    if not result.success:
        log_event(logger, logging.ERROR, "POSITION_CLOSE_FAILED",
                  f"[{strategy.name}/{pair.symbol}] Close order failed: {result.error}",
                  position_id=position.id, trading_pair=pair.symbol, reason=reason)
        return "exit_failed"

    exit_price = result.filled_price or price
    try:
        with Session(engine) as session:
            db_pos = session.get(Position, position.id)
            db_pos.mark_closed(exit_price, reason, order_id=result.order_id,
                               closed_at=datetime.now(timezone.utc))
            session.add(db_pos)
            session.commit()
            session.refresh(db_pos)
    except SQLAlchemyError as e:
        log_event(logger, logging.CRITICAL, "POSITION_CLOSE_FAILED",
                  f"[{strategy.name}/{pair.symbol}] Close order {result.order_id} filled but position "
                  f"{position.id} not updated: {e}. Manual reconciliation required.",
                  position_id=position.id, trading_pair=pair.symbol, order_id=result.order_id)
        return "exit_unpersisted"

    pnl = to_float(db_pos.realized_pnl)
    log_event(logger, logging.INFO, "POSITION_CLOSED",
              f"[{strategy.name}/{pair.symbol}] Closed {db_pos.side} ({reason}): PnL={pnl:.8f}",
              position_id=db_pos.id, strategy=strategy.name, trading_pair=pair.symbol,
              reason=reason, exit_price=exit_price, pnl=pnl, order_id=result.order_id)
    return "exit"
