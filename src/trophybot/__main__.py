"""Run the Discord bot, the inline sync scheduler, and the status API.

Usage: trophybot  (or python -m trophybot)
"""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from trophybot.access.gate import RestrictionGate
from trophybot.bot import DiscordChannelResolver, TrophyBot
from trophybot.commands.context import CommandServices
from trophybot.config import Settings, get_settings
from trophybot.database import close_db, get_session_factory, init_db
from trophybot.dependencies import build_sync_engine
from trophybot.log import setup_logging
from trophybot.main import create_app
from trophybot.psn.client import PSNClient
from trophybot.tracking.scheduler import SyncScheduler

logger = logging.getLogger(__name__)


async def run(settings: Settings) -> None:
    if not settings.discord_token:
        msg = "TROPHYBOT_DISCORD_TOKEN is not set"
        raise RuntimeError(msg)

    await init_db(settings.database_url)
    session_factory = get_session_factory()
    psn = PSNClient(settings)

    bot = TrophyBot(settings)
    engine = build_sync_engine(settings, session_factory, psn, DiscordChannelResolver(bot))
    scheduler = SyncScheduler(
        engine,
        interval_seconds=settings.sync_interval_minutes * 60,
        run_timeout=settings.sync_run_timeout_seconds,
    )
    services = CommandServices(
        repository=engine.repository,
        engine=engine,
        gate=RestrictionGate(session_factory),
        psn=psn,
        runtime=bot,
        scheduler=scheduler if settings.inline_scheduler else None,
    )
    bot.configure(services, services.scheduler)

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(scheduler if settings.inline_scheduler else None),
            host=settings.health_host,
            port=settings.health_port,
            log_config=None,
        )
    )

    logger.info("Starting trophybot %s (inline scheduler=%s)", settings.app_version, settings.inline_scheduler)
    try:
        await asyncio.gather(bot.start(settings.discord_token), server.serve())
    finally:
        if not bot.is_closed():
            await bot.close()
        server.should_exit = True
        await psn.aclose()
        await close_db()
        logger.info("trophybot stopped")


def main() -> None:
    settings = get_settings()
    setup_logging(settings)
    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
