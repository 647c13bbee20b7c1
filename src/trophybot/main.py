"""FastAPI status application."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from trophybot.config import get_settings
from trophybot.database import close_db, init_db
from trophybot.health.router import router as health_router
from trophybot.middleware import setup_middleware
from trophybot.tracking.scheduler import SyncScheduler


@asynccontextmanager
async def standalone_lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Own the database pool when the API runs without the bot."""
    settings = get_settings()
    await init_db(settings.database_url)
    yield
    await close_db()


def create_app(scheduler: SyncScheduler | None = None, *, manage_db: bool = False) -> FastAPI:
    """Create the status API.

    Inside the bot process the database is already initialised, so the app
    only manages it when ``manage_db`` is set.
    """
    settings = get_settings()

    app = FastAPI(
        title="trophybot",
        description="Status endpoints for the PlayStation trophy bot",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=standalone_lifespan if manage_db else None,
    )
    app.state.scheduler = scheduler

    setup_middleware(app)
    app.include_router(health_router, tags=["Health"])
    return app
