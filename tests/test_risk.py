"""Tests for the risk engine: sizing, levels, trailing stop and gates."""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from cryptobot.models.position import SIDE_LONG, SIDE_SHORT
from cryptobot.services.risk import (
    OpenExposure,
    PortfolioState,
    RiskEngine,
    RiskLimits,
)


@pytest.fixture
def risk():
    return RiskEngine(RiskLimits())


def _pair(min_qty="0.001", max_size="1"):
    return SimpleNamespace(min_qty=Decimal(min_qty), max_position_size=Decimal(max_size))


def _position(side=SIDE_LONG, entry=100, qty=1, stop=None, tp=None, trailing=None):
    return SimpleNamespace(
        side=side,
        entry_price=Decimal(str(entry)),
        quantity=Decimal(str(qty)),
        stop_loss=Decimal(str(stop)) if stop is not None else None,
        take_profit=Decimal(str(tp)) if tp is not None else None,
        trailing_stop=Decimal(str(trailing)) if trailing is not None else None,
    )


# ---------------------------------------------------------------------------
# Stop-loss / take-profit
# ---------------------------------------------------------------------------

class TestLevels:
    def test_long_stop_and_target(self, risk):
        stop = risk.calculate_stop_loss(100, SIDE_LONG, atr=2)
        assert stop == 96
        assert risk.calculate_take_profit(100, stop) == 108

    def test_short_stop_and_target(self, risk):
        stop = risk.calculate_stop_loss(100, SIDE_SHORT, atr=2)
        assert stop == 104
        assert risk.calculate_take_profit(100, stop) == 92

    def test_fallback_stop_without_atr(self, risk):
        assert risk.calculate_stop_loss(100, SIDE_LONG, atr=None) == pytest.approx(95)
        assert risk.calculate_stop_loss(100, SIDE_SHORT, atr=0) == pytest.approx(105)

    def test_custom_risk_reward(self, risk):
        assert risk.calculate_take_profit(100, 96, risk_reward=3) == 112


# ---------------------------------------------------------------------------
# Trailing stop
# ---------------------------------------------------------------------------

class TestTrailingStop:
    def test_ratchets_up_then_holds(self, risk):
        pos = _position(trailing=95)
        new = risk.update_trailing_stop(pos, 100, atr=2)
        assert new == 96
        pos.trailing_stop = Decimal("96")
        assert risk.update_trailing_stop(pos, 97, atr=2) == 96

    def test_short_ratchets_down(self, risk):
        pos = _position(side=SIDE_SHORT, trailing=105)
        assert risk.update_trailing_stop(pos, 100, atr=2) == 104
        pos.trailing_stop = Decimal("104")
        assert risk.update_trailing_stop(pos, 103, atr=2) == 104

    def test_missing_atr_leaves_stop(self, risk):
        assert risk.update_trailing_stop(_position(trailing=95), 120, atr=None) == 95

    def test_no_trailing_stop(self, risk):
        assert risk.update_trailing_stop(_position(), 120, atr=2) is None


# ---------------------------------------------------------------------------
# Close checks
# ---------------------------------------------------------------------------

class TestShouldClose:
    def test_stop_loss_has_priority(self, risk):
        pos = _position(stop=96, trailing=97, tp=108)
        decision = risk.should_close_position(pos, 95)
        assert decision.should_close
        assert decision.reason == "Stop loss triggered"

    def test_trailing_stop(self, risk):
        pos = _position(stop=90, trailing=97, tp=108)
        assert risk.should_close_position(pos, 96.5).reason == "Trailing stop triggered"

    def test_take_profit(self, risk):
        pos = _position(stop=96, tp=108)
        assert risk.should_close_position(pos, 108).reason == "Take profit reached"

    def test_short_take_profit(self, risk):
        pos = _position(side=SIDE_SHORT, stop=104, tp=92)
        assert risk.should_close_position(pos, 91).reason == "Take profit reached"

    def test_max_position_drawdown(self, risk):
        pos = _position()
        assert risk.should_close_position(pos, 84).reason == "Maximum position drawdown reached"

    def test_large_gain_also_trips_drawdown_guard(self, risk):
        pos = _position()
        assert risk.should_close_position(pos, 116).reason == "Maximum position drawdown reached"

    def test_hold(self, risk):
        decision = risk.should_close_position(_position(stop=96, trailing=96, tp=108), 101)
        assert not decision.should_close
        assert decision.reason is None


# ---------------------------------------------------------------------------
# Position sizing
# ---------------------------------------------------------------------------

class TestPositionSize:
    def test_risk_over_stop_distance_scaled_by_volatility(self, risk):
        # 10000 * 0.02 / 4 = 50, * (1 - 0.1) = 45 -> clamped to max 100
        size = risk.calculate_position_size(_pair(max_size="100"), 100, 96, 10_000, volatility=0.1)
        assert size == pytest.approx(45)

    def test_clamped_to_max(self, risk):
        assert risk.calculate_position_size(_pair(), 100, 96, 10_000, volatility=0.1) == 1

    def test_clamped_to_min(self, risk):
        assert risk.calculate_position_size(_pair(min_qty="0.5"), 100, 96, 10, volatility=0.1) == 0.5

    def test_zero_stop_distance_uses_min_qty(self, risk):
        assert risk.calculate_position_size(_pair(), 100, 100, 10_000) == pytest.approx(0.001)

    def test_default_volatility_when_missing(self, risk):
        size = risk.calculate_position_size(_pair(max_size="100"), 100, 96, 10_000, volatility=None)
        assert size == pytest.approx(50 * (1 - 0.2))

    def test_volatility_capped_at_max(self, risk):
        size = risk.calculate_position_size(_pair(max_size="100"), 100, 96, 10_000, volatility=0.9)
        assert size == pytest.approx(50 * (1 - 0.5))

    def test_always_within_bounds(self, risk):
        pair = _pair(min_qty="0.01", max_size="2")
        for value in (0, 1, 100, 1e6):
            for stop in (99.99, 90, 50):
                size = risk.calculate_position_size(pair, 100, stop, value, volatility=0.3)
                assert 0.01 <= size <= 2


# ---------------------------------------------------------------------------
# Entry gate
# ---------------------------------------------------------------------------

class TestCanOpenPosition:
    def test_allowed(self, risk):
        decision = risk.can_open_position(1, 10, SIDE_LONG, 100, 0.1, PortfolioState(value=10_000))
        assert decision.allowed
        assert decision.reason is None

    def test_portfolio_value_missing(self, risk):
        decision = risk.can_open_position(1, 1, SIDE_LONG, 100, 0.1, PortfolioState(value=0))
        assert decision.reason == "Portfolio value unavailable"

    def test_portfolio_risk_exceeded(self, risk):
        portfolio = PortfolioState(value=1000, open_positions=[
            OpenExposure(pair_id=2, quantity=10, entry_price=100, stop_loss=90),  # 100 at risk = 10%
        ])
        decision = risk.can_open_position(1, 1, SIDE_LONG, 100, 0.1, portfolio)
        assert decision.reason == "Portfolio risk limit exceeded"

    def test_pair_exposure_includes_existing(self, risk):
        portfolio = PortfolioState(value=10_000, open_positions=[
            OpenExposure(pair_id=1, quantity=15, entry_price=100, stop_loss=None),
        ])
        # (15 + 10) * 100 / 10000 = 25% > 20%
        decision = risk.can_open_position(1, 10, SIDE_LONG, 100, 0.1, portfolio)
        assert decision.reason == "Maximum pair exposure reached"

    def test_drawdown(self, risk):
        portfolio = PortfolioState(value=10_000, daily_drawdown=-0.2)
        assert risk.can_open_position(1, 1, SIDE_LONG, 100, 0.1, portfolio).reason == "Maximum drawdown reached"

    def test_volatility(self, risk):
        decision = risk.can_open_position(1, 1, SIDE_LONG, 100, 0.6, PortfolioState(value=10_000))
        assert decision.reason == "Volatility too high"

    def test_first_failing_check_wins(self, risk):
        portfolio = PortfolioState(value=10_000, daily_drawdown=-0.5)
        decision = risk.can_open_position(1, 1000, SIDE_LONG, 100, 0.9, portfolio)
        assert decision.reason == "Maximum pair exposure reached"

    def test_bad_input_rejected_not_raised(self, risk):
        decision = risk.can_open_position(1, None, SIDE_LONG, 100, 0.1, PortfolioState(value=10_000))
        assert not decision.allowed
        assert decision.reason.startswith("Risk check failed")


def test_risk_metrics():
    risk = RiskEngine()
    pair = _pair(max_size="2")
    positions = [SimpleNamespace(quantity=Decimal("1"), current_price=Decimal("110"), unrealized_pnl=Decimal("10"))]
    indicators = SimpleNamespace(volatility=0.02, atr=1.5)
    metrics = risk.risk_metrics(pair, positions, indicators, 1100)
    assert metrics["exposure"] == 110
    assert metrics["exposure_pct"] == pytest.approx(0.1)
    assert metrics["unrealized_pnl"] == 10
    assert metrics["atr"] == 1.5
