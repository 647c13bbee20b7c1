"""Trophy synchronization engine.

For every eligible user, in sequence:

1. Resolve a usable PSN token (refreshing it if needed). When credentials
   are not required, users without stored tokens are read from public data.
2. Fetch recently earned trophies, bounded by a per-call timeout.
3. Keep trophies earned strictly after the user's watermark.
4. Store them (duplicates ignored) and hand them to the dispatcher.
5. Advance the watermark, even when the fetch failed.

Each user is its own fault domain: nothing raised while checking one user
stops the loop over the others.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError

from trophybot.db.models import User
from trophybot.psn.client import TRANSIENT_ERRORS, PSNAuthError
from trophybot.psn.schemas import EarnedTrophy
from trophybot.tracking.credentials import CredentialManager
from trophybot.tracking.notifier import NotificationDispatcher
from trophybot.tracking.repository import TrophyRepository

logger = structlog.get_logger()

SKIPPED = "skipped"
CHECKED = "checked"
FAILED = "failed"


class TrophySource(Protocol):
    async def fetch_recent_trophies(
        self, access_token: str | None, account_id: str, limit: int = 50
    ) -> list[EarnedTrophy]: ...


@dataclass
class SyncOutcome:
    """What happened during one user's check."""

    discord_id: str
    status: str
    fetched: int = 0
    qualifying: int = 0
    inserted: int = 0
    fetch_error: str | None = None
    reason: str | None = None


@dataclass
class SyncRunSummary:
    started_at: datetime
    finished_at: datetime | None = None
    users: int = 0
    checked: int = 0
    skipped: int = 0
    failed: int = 0
    new_trophies: int = 0
    outcomes: list[SyncOutcome] = field(default_factory=list)

    def record(self, outcome: SyncOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == CHECKED:
            self.checked += 1
            self.new_trophies += outcome.inserted
        elif outcome.status == SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1


class SyncEngine:
    """Polls PSN for every eligible user and records new trophies."""

    def __init__(
        self,
        repository: TrophyRepository,
        credentials: CredentialManager,
        source: TrophySource,
        dispatcher: NotificationDispatcher,
        *,
        fetch_limit: int = 50,
        fetch_timeout: float = 30.0,
        user_delay: float = 2.0,
        require_credentials: bool = True,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.repository = repository
        self.credentials = credentials
        self.source = source
        self.dispatcher = dispatcher
        self.fetch_limit = fetch_limit
        self.fetch_timeout = fetch_timeout
        self.user_delay = user_delay
        self.require_credentials = require_credentials
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._user_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, discord_id: str) -> asyncio.Lock:
        return self._user_locks.setdefault(discord_id, asyncio.Lock())

    async def sync_all(self) -> SyncRunSummary:
        """Check every eligible user, one at a time, with a pause between users."""
        summary = SyncRunSummary(started_at=self._clock())

        try:
            users = await self.repository.list_sync_candidates()
        except SQLAlchemyError:
            logger.exception("sync_load_users_failed")
            summary.finished_at = self._clock()
            return summary

        summary.users = len(users)
        logger.info("sync_run_started", users=len(users))

        for index, user in enumerate(users):
            try:
                outcome = await self.sync_one(user)
            except Exception as exc:
                logger.exception("sync_user_failed", discord_id=user.discord_id)
                outcome = SyncOutcome(discord_id=user.discord_id, status=FAILED, reason=str(exc))
            summary.record(outcome)

            if len(users) > 1 and index < len(users) - 1:
                await self._sleep(self.user_delay)

        summary.finished_at = self._clock()
        logger.info(
            "sync_run_completed",
            users=summary.users,
            checked=summary.checked,
            skipped=summary.skipped,
            failed=summary.failed,
            new_trophies=summary.new_trophies,
        )
        return summary

    async def sync_one(self, user: User) -> SyncOutcome:
        """Check one user for new trophies.

        Credential refresh and the check itself run under the user's lock, so
        concurrent checks for one user refresh at most once.
        """
        if not user.psn_account_id:
            return SyncOutcome(discord_id=user.discord_id, status=SKIPPED, reason="no linked account")
        if self.require_credentials and not user.has_credentials:
            return SyncOutcome(discord_id=user.discord_id, status=SKIPPED, reason="no credentials")

        async with self._lock_for(user.discord_id):
            token: str | None = None
            if user.has_credentials:
                token = await self.credentials.ensure_valid_credential(user)
                if token is None:
                    logger.warning("sync_no_valid_token", discord_id=user.discord_id)
                    return SyncOutcome(discord_id=user.discord_id, status=SKIPPED, reason="no valid token")
            return await self._check(user, token)

    async def _check(self, user: User, token: str | None) -> SyncOutcome:
        outcome = SyncOutcome(discord_id=user.discord_id, status=CHECKED)
        checked_at = self._clock()

        try:
            watermark = await self.repository.get_watermark(user.discord_id)
        except SQLAlchemyError:
            logger.exception("sync_watermark_read_failed", discord_id=user.discord_id)
            outcome.status = FAILED
            outcome.reason = "watermark read failed"
            return outcome
        if watermark is None:
            outcome.status = SKIPPED
            outcome.reason = "user no longer linked"
            return outcome

        fetched = await self._fetch(user, token, outcome)
        outcome.fetched = len(fetched)

        qualifying = select_new_trophies(fetched, watermark)
        outcome.qualifying = len(qualifying)

        if qualifying:
            try:
                inserted = await self.repository.insert_trophies(user.discord_id, qualifying)
            except SQLAlchemyError:
                logger.exception("sync_persist_failed", discord_id=user.discord_id)
                outcome.status = FAILED
                outcome.reason = "persistence failed"
                return outcome
            outcome.inserted = len(inserted)

            if inserted:
                logger.info("sync_new_trophies", discord_id=user.discord_id, count=len(inserted))
                if user.notifications_enabled:
                    try:
                        await self.dispatcher.dispatch(user, qualifying)
                    except Exception:
                        logger.exception("sync_dispatch_failed", discord_id=user.discord_id)

        try:
            await self.repository.advance_watermark(user.discord_id, checked_at)
        except SQLAlchemyError:
            logger.exception("sync_watermark_update_failed", discord_id=user.discord_id)
            outcome.status = FAILED
            outcome.reason = "watermark update failed"
            return outcome

        if checked_at > user.last_trophy_check:
            user.last_trophy_check = checked_at
        return outcome

    async def _fetch(self, user: User, token: str | None, outcome: SyncOutcome) -> list[EarnedTrophy]:
        try:
            return await asyncio.wait_for(
                self.source.fetch_recent_trophies(token, user.psn_account_id, self.fetch_limit),
                timeout=self.fetch_timeout,
            )
        except asyncio.TimeoutError:
            outcome.fetch_error = f"timed out after {self.fetch_timeout:g}s"
            logger.warning("sync_fetch_timeout", discord_id=user.discord_id, timeout=self.fetch_timeout)
        except PSNAuthError as exc:
            outcome.fetch_error = str(exc)
            logger.warning("sync_fetch_auth_failed", discord_id=user.discord_id, error=str(exc))
        except TRANSIENT_ERRORS as exc:
            outcome.fetch_error = str(exc)
            logger.warning("sync_fetch_transient_error", discord_id=user.discord_id, error=str(exc))
        except Exception as exc:
            outcome.fetch_error = str(exc)
            logger.warning("sync_fetch_failed", discord_id=user.discord_id, error=str(exc), exc_info=True)
        return []


def select_new_trophies(trophies: Sequence[EarnedTrophy], watermark: datetime) -> list[EarnedTrophy]:
    """Trophies earned strictly after the watermark."""
    return [t for t in trophies if t.earned_at > watermark]
