"""Health, readiness, version, and sync status endpoints."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from trophybot.config import get_settings
from trophybot.database import get_session
from trophybot.tracking.scheduler import SyncScheduler

router = APIRouter()


def _scheduler(request: Request) -> SyncScheduler | None:
    return getattr(request.app.state, "scheduler", None)


async def _database_check(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        return f"error: {exc}"
    return "ok"


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: 200 while the process is up."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(
    request: Request,
    db: AsyncSession = Depends(get_session),  # noqa: B008
) -> dict[str, object]:
    """Readiness probe. The scheduler only counts when this process owns one."""
    checks: dict[str, str] = {"database": await _database_check(db)}

    scheduler = _scheduler(request)
    if scheduler is not None:
        checks["scheduler"] = "ok" if scheduler.is_started else "stopped"

    ready = all(value == "ok" for value in checks.values())
    return {"status": "ready" if ready else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {"version": settings.app_version, "environment": settings.environment}


@router.get("/sync/status")
async def sync_status(request: Request) -> dict[str, object]:
    """Last sync run summary and whether a run is in flight."""
    scheduler = _scheduler(request)
    if scheduler is None:
        return {"enabled": False}
    return {"enabled": True, **scheduler.status()}
