"""Component wiring shared by the bot process and the arq worker."""

from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trophybot.config import Settings
from trophybot.psn.client import PSNClient
from trophybot.tracking.credentials import CredentialManager
from trophybot.tracking.notifier import ChannelResolver, NotificationDispatcher
from trophybot.tracking.repository import TrophyRepository
from trophybot.tracking.sync_engine import SyncEngine


def build_sync_engine(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    psn: PSNClient,
    resolver: ChannelResolver,
) -> SyncEngine:
    """Assemble the tracking pipeline around explicit handles."""
    repository = TrophyRepository(session_factory)
    credentials = CredentialManager(
        repository,
        psn,
        refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
    )
    dispatcher = NotificationDispatcher(
        repository,
        resolver,
        max_per_game=settings.max_trophies_per_game,
        max_games=settings.max_game_groups,
    )
    return SyncEngine(
        repository,
        credentials,
        psn,
        dispatcher,
        fetch_limit=settings.recent_trophy_limit,
        fetch_timeout=settings.psn_request_timeout_seconds,
        user_delay=settings.sync_user_delay_seconds,
        require_credentials=settings.require_credentials,
    )
