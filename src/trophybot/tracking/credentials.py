"""Per-user PSN credential validation and refresh."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError

from trophybot.db.models import User
from trophybot.psn.client import PSNError, is_token_valid
from trophybot.psn.schemas import AuthTokens

logger = structlog.get_logger()

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)


class TokenRefresher(Protocol):
    async def refresh_access_token(self, refresh_token: str) -> AuthTokens: ...


class CredentialStore(Protocol):
    async def get_user(self, discord_id: str) -> User | None: ...

    async def save_credentials(self, discord_id: str, tokens: AuthTokens) -> None: ...


class CredentialManager:
    """Decides whether a stored access token is usable, refreshing it if not.

    ``ensure_valid_credential`` never raises. ``None`` means the caller must
    skip the user this cycle.
    """

    def __init__(
        self,
        store: CredentialStore,
        refresher: TokenRefresher,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.refresher = refresher
        self.refresh_margin = refresh_margin
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def is_fresh(self, user: User) -> bool:
        return is_token_valid(user.access_token, user.token_expires_at, now=self._clock(), margin=self.refresh_margin)

    async def ensure_valid_credential(self, user: User) -> str | None:
        if not user.has_credentials:
            return None

        if self.is_fresh(user):
            return user.access_token

        stored = await self._stored_fresh_token(user)
        if stored is not None:
            return stored

        if not user.refresh_token:
            logger.warning("credential_expired_no_refresh_token", discord_id=user.discord_id)
            return None

        try:
            tokens = await self.refresher.refresh_access_token(user.refresh_token)
        except PSNError as exc:
            logger.warning("credential_refresh_failed", discord_id=user.discord_id, error=str(exc))
            return None
        except Exception:
            logger.exception("credential_refresh_unexpected_error", discord_id=user.discord_id)
            return None

        try:
            await self.store.save_credentials(user.discord_id, tokens)
        except SQLAlchemyError:
            logger.exception("credential_persist_failed", discord_id=user.discord_id)
            return None

        user.access_token = tokens.access_token
        user.refresh_token = tokens.refresh_token
        user.token_expires_at = tokens.expires_at
        logger.debug("credential_refreshed", discord_id=user.discord_id, expires_at=tokens.expires_at.isoformat())
        return tokens.access_token

    async def _stored_fresh_token(self, user: User) -> str | None:
        """Adopt a token another check saved after ``user`` was loaded."""
        try:
            stored = await self.store.get_user(user.discord_id)
        except SQLAlchemyError:
            logger.warning("credential_reload_failed", discord_id=user.discord_id)
            return None
        if stored is None or not self.is_fresh(stored):
            return None
        user.access_token = stored.access_token
        user.refresh_token = stored.refresh_token
        user.token_expires_at = stored.token_expires_at
        return stored.access_token
