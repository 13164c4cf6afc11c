"""System API: health check, scheduler status, manual tick, persisted logs."""

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlmodel import Session, select

from cryptobot.api.deps import get_runtime
from cryptobot.database import get_session
from cryptobot.models.system_log import SystemLog

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check(runtime=Depends(get_runtime)):
    """Engine liveness. 503 when the market-data gateway is stale or has given up."""
    if runtime is None:
        return {"status": "ok", "engine": "disabled"}
    health = runtime.health()
    if not health["healthy"]:
        return JSONResponse(status_code=503, content={"status": "degraded", **health})
    return {"status": "ok", **health}


@router.get("/scheduler")
def scheduler_status():
    """Current scheduler state with job details."""
    from cryptobot.engine.scheduler import get_scheduler_status
    return get_scheduler_status()


@router.post("/tick")
async def trigger_tick(runtime=Depends(get_runtime)):
    """Run one control-loop pass over every strategy x active pair."""
    if runtime is None or runtime.context is None:
        raise HTTPException(status_code=503, detail="Trading engine is not running")
    from cryptobot.engine.strategy_job import run_strategy_tick
    results = await run_strategy_tick(runtime.context)
    return {"status": "ok", "results": results}


@router.get("/logs")
def system_logs(
    level: str | None = None,
    event: str | None = None,
    component: str | None = None,
    limit: int = 100,
    offset: int = 0,
    session: Session = Depends(get_session),
):
    stmt = select(SystemLog).order_by(SystemLog.timestamp.desc(), SystemLog.id.desc())
    if level is not None:
        stmt = stmt.where(SystemLog.level == level.upper())
    if event is not None:
        stmt = stmt.where(SystemLog.event == event.upper())
    if component is not None:
        stmt = stmt.where(SystemLog.component == component)
    stmt = stmt.offset(offset).limit(limit)
    return session.exec(stmt).all()
