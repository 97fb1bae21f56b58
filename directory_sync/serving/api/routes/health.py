"""
Health Check Endpoints

Liveness, readiness and read-model freshness for orchestration systems.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from directory_sync.config import get_settings
from directory_sync.database.connection import check_database_health, get_db_dependency
from directory_sync.database.models import ReadModelVersion, RefreshLogEntry
from directory_sync.serving.schemas import ReadModelVersionInfo

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    environment: str
    timestamp: datetime
    checks: Dict[str, Any]


class RefreshLogItem(BaseModel):
    scope: str
    version: Optional[int] = None
    status: str
    started_at: datetime
    completed_at: datetime
    duration_ms: float
    flattened_rows: int
    stats_rows: int
    error: Optional[str] = None


class ReadModelHealth(BaseModel):
    versions: List[ReadModelVersionInfo]
    recent_refreshes: List[RefreshLogItem]
    coordinator: List[Dict[str, Any]]
    max_staleness_seconds: Optional[float] = None


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """
    Overall health.

    Checks:
    - Database connectivity
    - Redis connectivity (degraded only; queries run uncached without it)
    - Refresh coordinator failures
    """
    settings = get_settings()
    checks: Dict[str, Any] = {}
    overall_status = "healthy"

    db_health = await check_database_health()
    checks["database"] = db_health
    if db_health.get("status") != "healthy":
        overall_status = "unhealthy"

    if settings.redis.enabled:
        try:
            from directory_sync.serving.cache import get_redis
            await get_redis().ping()
            checks["redis"] = {"status": "healthy"}
        except Exception as e:
            checks["redis"] = {"status": "unhealthy", "error": str(e)}
            if overall_status == "healthy":
                overall_status = "degraded"

    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is not None:
        failing = [s.scope for s in coordinator.status() if s.consecutive_failures > 0]
        checks["refresh"] = {"status": "degraded" if failing else "healthy", "failing_scopes": failing}
        if failing and overall_status == "healthy":
            overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=settings.version,
        environment=settings.app_env,
        timestamp=datetime.utcnow(),
        checks=checks,
    )


@router.get("/health/live")
async def liveness_check() -> Dict[str, str]:
    """Returns 200 while the process is running."""
    return {"status": "alive"}


@router.get("/health/ready")
async def readiness_check(response: Response) -> Dict[str, str]:
    """Returns 200 once the database answers."""
    db_health = await check_database_health()
    if db_health.get("status") != "healthy":
        response.status_code = 503
        return {"status": "not_ready", "reason": "database_unavailable"}
    return {"status": "ready"}


@router.get("/health/read-models", response_model=ReadModelHealth)
async def read_model_health(
    request: Request,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db_dependency),
) -> ReadModelHealth:
    """Active versions per scope, recent build attempts and coordinator state."""
    versions = (
        await db.execute(select(ReadModelVersion).order_by(ReadModelVersion.scope))
    ).scalars().all()
    refreshes = (
        await db.execute(
            select(RefreshLogEntry)
            .order_by(RefreshLogEntry.started_at.desc(), RefreshLogEntry.id.desc())
            .limit(limit)
        )
    ).scalars().all()

    coordinator = getattr(request.app.state, "coordinator", None)
    return ReadModelHealth(
        versions=[ReadModelVersionInfo.model_validate(v) for v in versions],
        recent_refreshes=[
            RefreshLogItem(
                scope=r.scope,
                version=r.version,
                status=r.status.value,
                started_at=r.started_at,
                completed_at=r.completed_at,
                duration_ms=r.duration_ms or 0.0,
                flattened_rows=r.flattened_rows or 0,
                stats_rows=r.stats_rows or 0,
                error=r.error,
            )
            for r in refreshes
        ],
        coordinator=[s.to_dict() for s in coordinator.status()] if coordinator else [],
        max_staleness_seconds=coordinator.max_staleness_seconds if coordinator else None,
    )
