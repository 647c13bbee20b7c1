"""Persistence gateway for the tracking pipeline.

Every method opens its own short session from the injected factory, so
callers never share a session across users. Trophy inserts are idempotent:
a duplicate ``(discord_id, trophy_id, game_id)`` is silently skipped.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trophybot.db.base import dialect_insert
from trophybot.db.models import EPOCH, LEGENDARY_TYPE, NotificationSettings, Trophy, User
from trophybot.psn.schemas import AuthTokens, EarnedTrophy


@dataclass(frozen=True)
class TrophyStats:
    total: int = 0
    platinum: int = 0
    gold: int = 0
    silver: int = 0
    bronze: int = 0
    games: int = 0


@dataclass(frozen=True)
class TrackingTotals:
    """Bot-wide counts for the status command."""

    users: int = 0
    linked: int = 0
    tracked: int = 0
    trophies: int = 0
    games: int = 0


class TrophyRepository:
    """Row-level access to users, trophies, and notification settings."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def list_sync_candidates(self) -> list[User]:
        """Users with notifications on and a linked PSN account."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(User)
                .where(User.notifications_enabled.is_(True), User.psn_account_id.isnot(None))
                .order_by(User.created_at)
            )
            return list(result.scalars().all())

    async def get_user(self, discord_id: str) -> User | None:
        async with self.session_factory() as db:
            return await db.get(User, discord_id)

    async def get_user_by_psn_username(self, psn_username: str) -> User | None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(User).where(func.lower(User.psn_username) == psn_username.lower())
            )
            return result.scalar_one_or_none()

    async def link_user(
        self,
        discord_id: str,
        psn_username: str,
        psn_account_id: str | None,
        tokens: AuthTokens | None = None,
    ) -> User:
        """Create (or re-link) a user. Re-linking resets the watermark."""
        async with self.session_factory() as db:
            user = await db.get(User, discord_id)
            if user is None:
                user = User(discord_id=discord_id, psn_username=psn_username)
                db.add(user)
            user.psn_username = psn_username
            user.psn_account_id = psn_account_id
            user.notifications_enabled = True
            user.last_trophy_check = EPOCH
            if tokens is not None:
                user.access_token = tokens.access_token
                user.refresh_token = tokens.refresh_token
                user.token_expires_at = tokens.expires_at
            await db.commit()
            return user

    async def unlink_user(self, discord_id: str) -> bool:
        """Delete a user and, by cascade, their trophies and settings."""
        async with self.session_factory() as db:
            await db.execute(delete(Trophy).where(Trophy.discord_id == discord_id))
            await db.execute(delete(NotificationSettings).where(NotificationSettings.discord_id == discord_id))
            result = await db.execute(delete(User).where(User.discord_id == discord_id))
            await db.commit()
            return result.rowcount > 0

    async def save_credentials(self, discord_id: str, tokens: AuthTokens) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(User)
                .where(User.discord_id == discord_id)
                .values(
                    access_token=tokens.access_token,
                    refresh_token=tokens.refresh_token,
                    token_expires_at=tokens.expires_at,
                )
            )
            await db.commit()

    async def get_watermark(self, discord_id: str) -> datetime | None:
        async with self.session_factory() as db:
            result = await db.execute(select(User.last_trophy_check).where(User.discord_id == discord_id))
            return result.scalar_one_or_none()

    async def advance_watermark(self, discord_id: str, checked_at: datetime) -> None:
        """Move the watermark forward to ``checked_at``. Never moves it back."""
        async with self.session_factory() as db:
            await db.execute(
                update(User)
                .where(User.discord_id == discord_id, User.last_trophy_check < checked_at)
                .values(last_trophy_check=checked_at)
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Trophies
    # ------------------------------------------------------------------

    async def insert_trophies(self, discord_id: str, trophies: Iterable[EarnedTrophy]) -> list[EarnedTrophy]:
        """Insert trophies, ignoring duplicates. Returns the newly stored ones.

        All rows go in one transaction; a database error rolls the batch back
        and propagates.
        """
        inserted: list[EarnedTrophy] = []
        async with self.session_factory() as db:
            for trophy in trophies:
                stmt = dialect_insert(db, Trophy).values(
                    discord_id=discord_id,
                    trophy_id=trophy.trophy_id,
                    trophy_name=trophy.trophy_name,
                    trophy_description=trophy.trophy_detail,
                    trophy_type=trophy.trophy_type,
                    trophy_icon_url=trophy.trophy_icon_url,
                    game_id=trophy.game_id,
                    game_title=trophy.game_title,
                    earned_at=trophy.earned_at,
                    is_platinum=trophy.trophy_type == LEGENDARY_TYPE,
                    notified=False,
                )
                stmt = stmt.on_conflict_do_nothing(
                    index_elements=["discord_id", "trophy_id", "game_id"],
                ).returning(Trophy.id)
                result = await db.execute(stmt)
                if result.scalar_one_or_none() is not None:
                    inserted.append(trophy)
            await db.commit()
        return inserted

    async def mark_notified(self, discord_id: str, trophies: Sequence[EarnedTrophy]) -> int:
        """Flag trophies as handled by the dispatcher."""
        if not trophies:
            return 0
        updated = 0
        async with self.session_factory() as db:
            for trophy in trophies:
                result = await db.execute(
                    update(Trophy)
                    .where(
                        Trophy.discord_id == discord_id,
                        Trophy.trophy_id == trophy.trophy_id,
                        Trophy.game_id == trophy.game_id,
                        Trophy.notified.is_(False),
                    )
                    .values(notified=True)
                )
                updated += result.rowcount
            await db.commit()
        return updated

    async def get_recent_trophies(self, discord_id: str, limit: int = 10) -> list[Trophy]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Trophy)
                .where(Trophy.discord_id == discord_id)
                .order_by(Trophy.earned_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_trophy_stats(self, discord_id: str) -> TrophyStats:
        """Per-type counts and number of distinct games for a user."""
        async with self.session_factory() as db:
            rows = (
                await db.execute(
                    select(Trophy.trophy_type, func.count())
                    .where(Trophy.discord_id == discord_id)
                    .group_by(Trophy.trophy_type)
                )
            ).all()
            games = (
                await db.execute(
                    select(func.count(func.distinct(Trophy.game_id))).where(Trophy.discord_id == discord_id)
                )
            ).scalar_one()

        counts = {trophy_type: count for trophy_type, count in rows}
        return TrophyStats(
            total=sum(counts.values()),
            platinum=counts.get("platinum", 0),
            gold=counts.get("gold", 0),
            silver=counts.get("silver", 0),
            bronze=counts.get("bronze", 0),
            games=games,
        )

    async def get_tracking_totals(self) -> TrackingTotals:
        async with self.session_factory() as db:
            users, linked, tracked = (
                await db.execute(
                    select(
                        func.count(),
                        func.count(User.psn_account_id),
                        func.count().filter(
                            User.notifications_enabled.is_(True), User.psn_account_id.isnot(None)
                        ),
                    ).select_from(User)
                )
            ).one()
            trophies, games = (
                await db.execute(select(func.count(), func.count(func.distinct(Trophy.game_id))).select_from(Trophy))
            ).one()
        return TrackingTotals(users=users, linked=linked, tracked=tracked, trophies=trophies, games=games)

    # ------------------------------------------------------------------
    # Notification settings
    # ------------------------------------------------------------------

    async def get_notification_settings(self, discord_id: str) -> NotificationSettings | None:
        async with self.session_factory() as db:
            return await db.get(NotificationSettings, discord_id)

    async def update_notification_settings(
        self,
        discord_id: str,
        *,
        channel_id: str | None = None,
        trophy_notifications: bool | None = None,
        platinum_notifications: bool | None = None,
        clear_channel: bool = False,
    ) -> NotificationSettings:
        """Create or update a user's settings. ``None`` leaves a field as is."""
        async with self.session_factory() as db:
            settings = await db.get(NotificationSettings, discord_id)
            if settings is None:
                settings = NotificationSettings(
                    discord_id=discord_id,
                    trophy_notifications=True,
                    platinum_notifications=True,
                )
                db.add(settings)
            if clear_channel:
                settings.channel_id = None
            elif channel_id is not None:
                settings.channel_id = channel_id
            if trophy_notifications is not None:
                settings.trophy_notifications = trophy_notifications
            if platinum_notifications is not None:
                settings.platinum_notifications = platinum_notifications
            await db.commit()
            return settings

    async def set_notifications_enabled(self, discord_id: str, enabled: bool) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                update(User).where(User.discord_id == discord_id).values(notifications_enabled=enabled)
            )
            await db.commit()
            return result.rowcount > 0
