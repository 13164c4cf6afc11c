"""Portfolio valuation, risk-engine state and strategy performance."""

import logging
from datetime import datetime, timezone

from sqlmodel import Session, func, select

from cryptobot.config import settings
from cryptobot.database import engine
from cryptobot.errors import ExchangeError
from cryptobot.models.portfolio_snapshot import PortfolioSnapshot
from cryptobot.models.position import Position, STATUS_CLOSED, STATUS_OPEN
from cryptobot.models.trading_pair import TradingPair
from cryptobot.services.risk import OpenExposure, PortfolioState
from cryptobot.utils.constants import price_key
from cryptobot.utils.logging import log_event
from cryptobot.utils.numbers import to_decimal, to_float

logger = logging.getLogger(__name__)


def load_portfolio_state() -> PortfolioState:
    """Latest portfolio snapshot plus every OPEN position, for the risk checks."""
    with Session(engine) as session:
        snapshot = session.exec(
            select(PortfolioSnapshot).order_by(PortfolioSnapshot.snapshot_time.desc())
        ).first()
        positions = session.exec(select(Position).where(Position.status == STATUS_OPEN)).all()

    return PortfolioState(
        value=to_float(snapshot.total_value) if snapshot else 0.0,
        daily_drawdown=snapshot.daily_drawdown if snapshot else 0.0,
        open_positions=[
            OpenExposure(
                pair_id=p.pair_id,
                quantity=to_float(p.quantity),
                entry_price=to_float(p.entry_price),
                stop_loss=to_float(p.stop_loss),
            )
            for p in positions
        ],
    )


async def record_portfolio_snapshot(client, cache) -> PortfolioSnapshot | None:
    """Value the account in quote currency and record today's drawdown."""
    try:
        account = await client.get_account()
        raw = {b["asset"]: (float(b["free"]), float(b["locked"])) for b in account.get("balances", [])}
        balances = {asset: free + locked for asset, (free, locked) in raw.items()}
        quote = settings.quote_asset
        quote_free, quote_locked = raw.get(quote, (0.0, 0.0))

        with Session(engine) as session:
            pairs = session.exec(
                select(TradingPair).where(TradingPair.is_active == True, TradingPair.quote_asset == quote)
            ).all()
            open_count = session.exec(
                select(func.count()).select_from(Position).where(Position.status == STATUS_OPEN)
            ).one()

        total = quote_free + quote_locked
        distribution = {quote: total}
        for pair in pairs:
            amount = balances.get(pair.base_asset, 0.0)
            if amount <= 0 or pair.base_asset in distribution:
                continue
            price = cache.get(price_key(pair.symbol))
            if price is None:
                price = await client.get_price(pair.symbol)
            distribution[pair.base_asset] = amount * price
            total += amount * price

        now = datetime.now(timezone.utc)
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        with Session(engine) as session:
            peak = session.exec(
                select(func.max(PortfolioSnapshot.total_value)).where(PortfolioSnapshot.snapshot_time >= day_start)
            ).one()
            peak = max(to_float(peak) or 0.0, total)
            drawdown = (total - peak) / peak if peak > 0 else 0.0

            snapshot = PortfolioSnapshot(
                snapshot_time=now,
                total_value=to_decimal(total),
                free_quote=to_decimal(quote_free),
                locked_quote=to_decimal(quote_locked),
                daily_drawdown=drawdown,
                open_positions=open_count,
                asset_distribution=distribution,
            )
            session.add(snapshot)
            session.commit()
            session.refresh(snapshot)

        logger.info(f"Portfolio value {total:.2f} {quote} (drawdown {drawdown:.2%})")
        return snapshot
    except (ExchangeError, KeyError, ValueError) as e:
        log_event(logger, logging.ERROR, "PORTFOLIO_SNAPSHOT_FAILED", f"Portfolio snapshot failed: {e}")
        return None


def get_strategy_metrics(strategy_name: str) -> dict:
    """Win rate, profit factor and PnL stats over a strategy's CLOSED positions."""
    with Session(engine) as session:
        positions = session.exec(
            select(Position).where(
                Position.strategy_name == strategy_name,
                Position.status == STATUS_CLOSED,
            )
        ).all()

    pnls = [to_float(p.realized_pnl) or 0.0 for p in positions]
    if not pnls:
        return {
            "total_trades": 0,
            "win_rate": 0.0,
            "profit_factor": 0.0,
            "average_win": 0.0,
            "average_loss": 0.0,
            "largest_win": 0.0,
            "largest_loss": 0.0,
            "total_pnl": 0.0,
        }

    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    total_wins = sum(wins)
    total_losses = abs(sum(losses))

    return {
        "total_trades": len(pnls),
        "win_rate": len(wins) / len(pnls) * 100,
        "profit_factor": total_wins / total_losses if total_losses > 0 else 0.0,
        "average_win": total_wins / len(wins) if wins else 0.0,
        "average_loss": total_losses / len(losses) if losses else 0.0,
        "largest_win": max(wins) if wins else 0.0,
        "largest_loss": min(losses) if losses else 0.0,
        "total_pnl": sum(pnls),
    }
