"""CRUD API for trading pairs."""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from cryptobot.api.deps import get_cache
from cryptobot.config import settings
from cryptobot.database import get_session
from cryptobot.errors import PairInUseError
from cryptobot.models.position import Position, STATUS_OPEN
from cryptobot.models.trading_pair import TradingPair
from cryptobot.schemas.trading_pair import TradingPairCreate, TradingPairRead, TradingPairUpdate

router = APIRouter(prefix="/api/pairs", tags=["pairs"])


def ensure_pair_idle(session: Session, pair: TradingPair):
    """Raise PairInUseError while the pair still has an OPEN position."""
    pos = session.exec(
        select(Position).where(Position.pair_id == pair.id, Position.status == STATUS_OPEN)
    ).first()
    if pos:
        raise PairInUseError(f"Pair {pair.symbol} has an open position (id={pos.id}). Close it first.")


def _get_pair_or_404(session: Session, pair_id: int) -> TradingPair:
    pair = session.get(TradingPair, pair_id)
    if not pair:
        raise HTTPException(status_code=404, detail="Pair not found")
    return pair


@router.get("", response_model=list[TradingPairRead])
def list_pairs(
    active: bool | None = None,
    session: Session = Depends(get_session),
):
    stmt = select(TradingPair).order_by(TradingPair.id)
    if active is not None:
        stmt = stmt.where(TradingPair.is_active == active)
    return session.exec(stmt).all()


@router.post("", response_model=TradingPairRead, status_code=201)
def create_pair(
    data: TradingPairCreate,
    session: Session = Depends(get_session),
):
    pair = TradingPair(**data.model_dump())
    session.add(pair)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise HTTPException(status_code=409, detail=f"Pair {data.symbol} already exists")
    session.refresh(pair)
    return pair


@router.get("/{pair_id}", response_model=TradingPairRead)
def get_pair(pair_id: int, session: Session = Depends(get_session)):
    return _get_pair_or_404(session, pair_id)


@router.put("/{pair_id}", response_model=TradingPairRead)
def update_pair(
    pair_id: int,
    data: TradingPairUpdate,
    session: Session = Depends(get_session),
):
    pair = _get_pair_or_404(session, pair_id)
    update_data = data.model_dump(exclude_unset=True)

    # Validate full merged config so partial updates cannot bypass cross-field rules.
    merged = {**pair.model_dump(), **update_data}
    try:
        TradingPairCreate.model_validate(merged)
    except ValidationError as e:
        # Inputs hold Decimal and datetime values that are not JSON-serializable
        detail = e.errors(include_url=False, include_context=False, include_input=False)
        raise HTTPException(status_code=422, detail=detail)

    if update_data.get("is_active") is False and pair.is_active:
        try:
            ensure_pair_idle(session, pair)
        except PairInUseError as e:
            raise HTTPException(status_code=409, detail=str(e))

    for key, value in update_data.items():
        setattr(pair, key, value)
    pair.updated_at = datetime.now(timezone.utc)

    session.add(pair)
    session.commit()
    session.refresh(pair)
    return pair


@router.post("/{pair_id}/toggle", response_model=TradingPairRead)
def toggle_pair(pair_id: int, session: Session = Depends(get_session)):
    pair = _get_pair_or_404(session, pair_id)
    if pair.is_active:
        try:
            ensure_pair_idle(session, pair)
        except PairInUseError as e:
            raise HTTPException(status_code=409, detail=str(e))

    pair.is_active = not pair.is_active
    pair.updated_at = datetime.now(timezone.utc)
    session.add(pair)
    session.commit()
    session.refresh(pair)
    return pair


@router.get("/{pair_id}/risk")
def pair_risk_metrics(
    pair_id: int,
    session: Session = Depends(get_session),
    cache=Depends(get_cache),
):
    """Exposure, volatility and ATR for one pair."""
    from cryptobot.engine.portfolio import load_portfolio_state
    from cryptobot.services.market_data import get_latest_indicators
    from cryptobot.services.risk import RiskEngine, RiskLimits

    pair = _get_pair_or_404(session, pair_id)
    positions = session.exec(
        select(Position).where(Position.pair_id == pair_id, Position.status == STATUS_OPEN)
    ).all()
    indicators = get_latest_indicators(pair_id, cache)
    portfolio = load_portfolio_state()
    risk = RiskEngine(RiskLimits.from_settings(settings))
    return {"pair_id": pair_id, "symbol": pair.symbol,
            **risk.risk_metrics(pair, positions, indicators, portfolio.value)}
