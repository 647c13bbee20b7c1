"""arq worker that runs the trophy sync out of process.

Use this instead of the inline scheduler when the bot runs several replicas:
arq's ``unique`` cron jobs guarantee a single run per tick across workers.
Notifications go out through a REST-only Discord client (no gateway).

Usage: arq trophybot.workers.sync_worker.WorkerSettings
"""

from __future__ import annotations

import logging

import discord
from arq import cron
from arq.connections import RedisSettings

from trophybot.bot import DiscordChannelResolver
from trophybot.config import get_settings
from trophybot.database import close_db, get_session_factory, init_db
from trophybot.dependencies import build_sync_engine
from trophybot.log import setup_logging
from trophybot.psn.client import PSNClient
from trophybot.tracking.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

_settings = get_settings()


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Open the database pool, PSN client, and Discord REST session."""
    setup_logging(_settings)
    await init_db(_settings.database_url)

    discord_client = discord.Client(intents=discord.Intents.none())
    await discord_client.login(_settings.discord_token)

    psn = PSNClient(_settings)
    ctx["discord"] = discord_client
    ctx["psn"] = psn
    ctx["engine"] = build_sync_engine(
        _settings,
        get_session_factory(),
        psn,
        DiscordChannelResolver(discord_client),
    )
    logger.info("Sync worker started")


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    psn: PSNClient | None = ctx.get("psn")
    if psn:
        await psn.aclose()

    discord_client: discord.Client | None = ctx.get("discord")
    if discord_client:
        await discord_client.close()

    await close_db()
    logger.info("Sync worker shut down")


async def sync_trophies(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Check every eligible user once."""
    engine: SyncEngine = ctx["engine"]
    summary = await engine.sync_all()
    logger.info(
        "Trophy sync finished: %d users, %d new trophies, %d failed",
        summary.users,
        summary.new_trophies,
        summary.failed,
    )
    return {
        "users": summary.users,
        "checked": summary.checked,
        "skipped": summary.skipped,
        "failed": summary.failed,
        "new_trophies": summary.new_trophies,
    }


def sync_minutes(interval_minutes: int) -> set[int]:
    """Minutes of the hour at which a sync fires, e.g. 30 -> {0, 30}."""
    interval = max(1, min(interval_minutes, 60))
    return set(range(0, 60, interval))


class WorkerSettings:
    """arq worker settings for the trophy sync."""

    functions = [sync_trophies]
    cron_jobs = [
        cron(
            sync_trophies,
            minute=sync_minutes(_settings.sync_interval_minutes),
            second=0,
            unique=True,
            timeout=_settings.sync_run_timeout_seconds,
            run_at_startup=True,
        ),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(_settings.redis_url)
    max_jobs = 1
    job_timeout = int(_settings.sync_run_timeout_seconds)
