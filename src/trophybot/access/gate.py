"""Per-guild channel allow-list for bot commands.

A guild starts unrestricted. Adding a channel switches it into allow-list
mode; removing channels never switches it back, even when the list becomes
empty. Only ``clear`` returns the guild to unrestricted.

Lookups fail open: if the store cannot be read, the command is allowed.
"""

from __future__ import annotations

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trophybot.db.base import dialect_insert
from trophybot.db.models import AllowedChannel, GuildRestriction

logger = structlog.get_logger()


class RestrictionGate:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def is_allowed(self, guild_id: str | None, channel_id: str | None) -> bool:
        """Whether a command may run in ``channel_id``. Direct messages always may."""
        if guild_id is None:
            return True
        try:
            async with self.session_factory() as db:
                restriction = await db.get(GuildRestriction, guild_id)
                if restriction is None or not restriction.restricted:
                    return True
                if channel_id is None:
                    return False
                found = await db.execute(
                    select(AllowedChannel.id).where(
                        AllowedChannel.guild_id == guild_id,
                        AllowedChannel.channel_id == channel_id,
                    )
                )
                return found.scalar_one_or_none() is not None
        except Exception as exc:
            logger.warning("restriction_lookup_failed", guild_id=guild_id, channel_id=channel_id, error=str(exc))
            return True

    async def is_restricted(self, guild_id: str) -> bool:
        async with self.session_factory() as db:
            restriction = await db.get(GuildRestriction, guild_id)
            return restriction is not None and restriction.restricted

    async def add_channel(self, guild_id: str, channel_id: str) -> bool:
        """Allow a channel and put the guild in allow-list mode.

        Returns False if the channel was already allowed.
        """
        async with self.session_factory() as db:
            restriction = await db.get(GuildRestriction, guild_id)
            if restriction is None:
                db.add(GuildRestriction(guild_id=guild_id, restricted=True))
            else:
                restriction.restricted = True

            stmt = (
                dialect_insert(db, AllowedChannel)
                .values(guild_id=guild_id, channel_id=channel_id)
                .on_conflict_do_nothing(index_elements=["guild_id", "channel_id"])
                .returning(AllowedChannel.id)
            )
            result = await db.execute(stmt)
            added = result.scalar_one_or_none() is not None
            await db.commit()

        logger.info("restriction_channel_added", guild_id=guild_id, channel_id=channel_id, added=added)
        return added

    async def remove_channel(self, guild_id: str, channel_id: str) -> bool:
        """Drop a channel from the allow-list. The guild stays restricted."""
        async with self.session_factory() as db:
            result = await db.execute(
                delete(AllowedChannel).where(
                    AllowedChannel.guild_id == guild_id,
                    AllowedChannel.channel_id == channel_id,
                )
            )
            await db.commit()
        removed = result.rowcount > 0
        logger.info("restriction_channel_removed", guild_id=guild_id, channel_id=channel_id, removed=removed)
        return removed

    async def clear(self, guild_id: str) -> int:
        """Remove every allowed channel and lift the restriction."""
        async with self.session_factory() as db:
            result = await db.execute(delete(AllowedChannel).where(AllowedChannel.guild_id == guild_id))
            restriction = await db.get(GuildRestriction, guild_id)
            if restriction is not None:
                restriction.restricted = False
            await db.commit()
        logger.info("restriction_cleared", guild_id=guild_id, removed=result.rowcount)
        return result.rowcount

    async def list_channels(self, guild_id: str) -> list[str]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(AllowedChannel.channel_id)
                .where(AllowedChannel.guild_id == guild_id)
                .order_by(AllowedChannel.created_at, AllowedChannel.id)
            )
            return list(result.scalars().all())
