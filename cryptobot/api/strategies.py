"""CRUD API for trading strategies."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from cryptobot.database import get_session
from cryptobot.errors import StrategyInUseError
from cryptobot.models.position import Position, STATUS_OPEN
from cryptobot.models.trading_strategy import TradingStrategy
from cryptobot.schemas.trading_strategy import (
    TradingStrategyCreate,
    TradingStrategyRead,
    TradingStrategyUpdate,
)

router = APIRouter(prefix="/api/strategies", tags=["strategies"])


def ensure_strategy_idle(session: Session, strategy: TradingStrategy):
    """Raise StrategyInUseError while the strategy still holds OPEN positions."""
    open_positions = session.exec(
        select(Position).where(Position.strategy_name == strategy.name, Position.status == STATUS_OPEN)
    ).all()
    if open_positions:
        raise StrategyInUseError(
            f"Strategy {strategy.name} has {len(open_positions)} open position(s). Close them first."
        )


def _get_strategy_or_404(session: Session, strategy_id: int) -> TradingStrategy:
    strategy = session.get(TradingStrategy, strategy_id)
    if not strategy:
        raise HTTPException(status_code=404, detail="Strategy not found")
    return strategy


@router.get("", response_model=list[TradingStrategyRead])
def list_strategies(
    active: bool | None = None,
    session: Session = Depends(get_session),
):
    stmt = select(TradingStrategy).order_by(TradingStrategy.id)
    if active is not None:
        stmt = stmt.where(TradingStrategy.is_active == active)
    return session.exec(stmt).all()


@router.post("", response_model=TradingStrategyRead, status_code=201)
def create_strategy(
    data: TradingStrategyCreate,
    session: Session = Depends(get_session),
):
    strategy = TradingStrategy(**data.model_dump(), change_history=[])
    session.add(strategy)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=409, detail=f"Strategy {data.name} already exists")
    session.refresh(strategy)
    return strategy


@router.get("/{strategy_id}", response_model=TradingStrategyRead)
def get_strategy(strategy_id: int, session: Session = Depends(get_session)):
    return _get_strategy_or_404(session, strategy_id)


@router.put("/{strategy_id}", response_model=TradingStrategyRead)
def update_strategy(
    strategy_id: int,
    data: TradingStrategyUpdate,
    session: Session = Depends(get_session),
):
    strategy = _get_strategy_or_404(session, strategy_id)
    update_data = data.model_dump(exclude_unset=True)
    description = update_data.pop("change_description", None)
    if not update_data:
        return strategy

    for key, value in update_data.items():
        setattr(strategy, key, value)
    strategy.bump_version(
        "parameters_update",
        description or f"Updated {', '.join(sorted(update_data))}",
    )

    session.add(strategy)
    session.commit()
    session.refresh(strategy)
    return strategy


@router.post("/{strategy_id}/toggle", response_model=TradingStrategyRead)
def toggle_strategy(strategy_id: int, session: Session = Depends(get_session)):
    strategy = _get_strategy_or_404(session, strategy_id)
    if strategy.is_active:
        try:
            ensure_strategy_idle(session, strategy)
        except StrategyInUseError as e:
            raise HTTPException(status_code=409, detail=str(e))

    strategy.is_active = not strategy.is_active
    strategy.updated_at = datetime.now(timezone.utc)
    session.add(strategy)
    session.commit()
    session.refresh(strategy)
    return strategy


@router.get("/{strategy_id}/metrics")
def strategy_metrics(strategy_id: int, session: Session = Depends(get_session)):
    """Performance over the strategy's closed positions."""
    from cryptobot.engine.portfolio import get_strategy_metrics

    strategy = _get_strategy_or_404(session, strategy_id)
    return {"strategy": strategy.name, "version": strategy.version, **get_strategy_metrics(strategy.name)}
