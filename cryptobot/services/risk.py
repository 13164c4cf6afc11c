"""Risk management engine.

Pure decision logic over position/portfolio snapshots and indicator outputs.
Every new position is gated by `can_open_position`; open positions are guarded
each tick by `update_trailing_stop` and `should_close_position`. Rejections
are returned as values, not raised.
"""

import logging
from dataclasses import dataclass, field

from cryptobot.models.position import SIDE_LONG
from cryptobot.utils.numbers import to_float

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskLimits:
    """Process-wide guardrails, constant for the engine's lifetime."""

    max_portfolio_risk: float = 0.05
    max_position_risk: float = 0.02
    max_pair_exposure: float = 0.20
    max_drawdown: float = 0.15
    max_volatility: float = 0.5
    volatility_scaling: bool = True
    atr_multiplier: float = 2.0
    risk_reward_ratio: float = 2.0
    fallback_stop_pct: float = 0.05
    default_volatility: float = 0.2

    @classmethod
    def from_settings(cls, settings=None) -> "RiskLimits":
        if settings is None:
            from cryptobot.config import settings
        return cls(
            max_portfolio_risk=settings.max_portfolio_risk,
            max_position_risk=settings.max_position_risk,
            max_pair_exposure=settings.max_pair_exposure,
            max_drawdown=settings.max_drawdown,
            max_volatility=settings.max_volatility,
            volatility_scaling=settings.volatility_scaling,
            atr_multiplier=settings.atr_multiplier,
            risk_reward_ratio=settings.risk_reward_ratio,
            fallback_stop_pct=settings.fallback_stop_pct,
            default_volatility=settings.default_volatility,
        )


@dataclass(frozen=True)
class RiskDecision:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class CloseDecision:
    should_close: bool
    reason: str | None = None


@dataclass(frozen=True)
class OpenExposure:
    """One OPEN position as seen by the portfolio checks."""

    pair_id: int
    quantity: float
    entry_price: float
    stop_loss: float | None = None


@dataclass
class PortfolioState:
    value: float
    daily_drawdown: float = 0.0  # fraction, typically <= 0
    open_positions: list[OpenExposure] = field(default_factory=list)

    def pair_quantity(self, pair_id: int) -> float:
        return sum(p.quantity for p in self.open_positions if p.pair_id == pair_id)


class RiskEngine:
    def __init__(self, limits: RiskLimits | None = None):
        self.limits = limits or RiskLimits()

    # ------------------------------------------------------------------
    # Entry gate
    # ------------------------------------------------------------------

    def can_open_position(
        self,
        pair_id: int,
        size: float,
        side: str,
        price: float,
        volatility: float | None,
        portfolio: PortfolioState,
    ) -> RiskDecision:
        """Checks run in fixed order; the first failing check is the reason."""
        try:
            if portfolio.value <= 0:
                return RiskDecision(False, "Portfolio value unavailable")

            if not self._check_portfolio_risk(portfolio):
                return RiskDecision(False, "Portfolio risk limit exceeded")

            if not self._check_pair_exposure(pair_id, size, price, portfolio):
                return RiskDecision(False, "Maximum pair exposure reached")

            if abs(portfolio.daily_drawdown) > self.limits.max_drawdown:
                return RiskDecision(False, "Maximum drawdown reached")

            vol = volatility if volatility is not None else self.limits.default_volatility
            if vol > self.limits.max_volatility:
                return RiskDecision(False, "Volatility too high")

            return RiskDecision(True)
        except (TypeError, ValueError, ArithmeticError) as e:
            logger.error(f"Risk check failed for pair {pair_id} ({side} {size}): {e}", exc_info=True)
            return RiskDecision(False, f"Risk check failed: {e}")

    def _check_portfolio_risk(self, portfolio: PortfolioState) -> bool:
        at_risk = sum(
            abs(p.entry_price - p.stop_loss) * p.quantity
            for p in portfolio.open_positions
            if p.stop_loss is not None
        )
        return at_risk / portfolio.value <= self.limits.max_portfolio_risk

    def _check_pair_exposure(self, pair_id: int, size: float, price: float, portfolio: PortfolioState) -> bool:
        exposure = (portfolio.pair_quantity(pair_id) + size) * price
        return exposure / portfolio.value <= self.limits.max_pair_exposure

    # ------------------------------------------------------------------
    # Sizing & levels
    # ------------------------------------------------------------------

    def calculate_position_size(
        self,
        pair,
        price: float,
        stop_loss: float,
        portfolio_value: float,
        volatility: float | None = None,
    ) -> float:
        """Risk a fixed share of the portfolio over the stop distance.

        Always returns a value within [pair.min_qty, pair.max_position_size].
        """
        min_qty = to_float(pair.min_qty)
        max_size = to_float(pair.max_position_size)

        stop_distance = abs(price - stop_loss)
        if stop_distance <= 0 or portfolio_value <= 0:
            size = min_qty
        else:
            size = portfolio_value * self.limits.max_position_risk / stop_distance

        if self.limits.volatility_scaling:
            vol = volatility if volatility is not None else self.limits.default_volatility
            size *= 1 - min(vol, self.limits.max_volatility)

        size = min(size, max_size)
        size = max(size, min_qty)
        return size

    def calculate_stop_loss(self, entry_price: float, side: str, atr: float | None) -> float:
        """entry ∓ ATR·multiplier; fixed percentage when ATR is unavailable."""
        if not atr:
            pct = self.limits.fallback_stop_pct
            return entry_price * (1 - pct) if side == SIDE_LONG else entry_price * (1 + pct)

        distance = atr * self.limits.atr_multiplier
        return entry_price - distance if side == SIDE_LONG else entry_price + distance

    def calculate_take_profit(self, entry_price: float, stop_loss: float, risk_reward: float | None = None) -> float:
        rr = risk_reward if risk_reward is not None else self.limits.risk_reward_ratio
        reward = abs(entry_price - stop_loss) * rr
        if stop_loss < entry_price:
            return entry_price + reward
        return entry_price - reward

    # ------------------------------------------------------------------
    # Open-position guard
    # ------------------------------------------------------------------

    def update_trailing_stop(self, position, current_price: float, atr: float | None) -> float | None:
        """Return the trailing stop after ratcheting toward `current_price`.

        The stop only ever tightens: up for LONG, down for SHORT. A position
        without a trailing stop, or a missing ATR, leaves it unchanged.
        """
        trailing = to_float(position.trailing_stop)
        if trailing is None or not atr:
            return trailing

        distance = atr * self.limits.atr_multiplier
        if position.side == SIDE_LONG:
            candidate = current_price - distance
            return candidate if candidate > trailing else trailing
        candidate = current_price + distance
        return candidate if candidate < trailing else trailing

    def should_close_position(self, position, current_price: float) -> CloseDecision:
        """Priority: stop-loss > trailing stop > take-profit > max drawdown."""
        is_long = position.side == SIDE_LONG
        stop_loss = to_float(position.stop_loss)
        trailing = to_float(position.trailing_stop)
        take_profit = to_float(position.take_profit)

        if stop_loss:
            if (is_long and current_price <= stop_loss) or (not is_long and current_price >= stop_loss):
                return CloseDecision(True, "Stop loss triggered")

        if trailing:
            if (is_long and current_price <= trailing) or (not is_long and current_price >= trailing):
                return CloseDecision(True, "Trailing stop triggered")

        if take_profit:
            if (is_long and current_price >= take_profit) or (not is_long and current_price <= take_profit):
                return CloseDecision(True, "Take profit reached")

        quantity = to_float(position.quantity)
        entry = to_float(position.entry_price)
        entry_value = quantity * entry
        if entry_value > 0:
            pnl = (current_price - entry) * quantity if is_long else (entry - current_price) * quantity
            if abs(pnl / entry_value) >= self.limits.max_drawdown:
                return CloseDecision(True, "Maximum position drawdown reached")

        return CloseDecision(False)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def risk_metrics(self, pair, positions: list, indicators, portfolio_value: float) -> dict:
        """Exposure and volatility summary for one pair."""
        exposure = sum(to_float(p.quantity) * to_float(p.current_price) for p in positions)
        unrealized = sum(to_float(p.unrealized_pnl) or 0.0 for p in positions)
        return {
            "volatility": indicators.volatility if indicators else 0.0,
            "atr": indicators.atr if indicators else 0.0,
            "exposure": exposure,
            "exposure_pct": exposure / portfolio_value if portfolio_value > 0 else None,
            "unrealized_pnl": unrealized,
            "position_count": len(positions),
            "max_position_size": to_float(pair.max_position_size),
        }
