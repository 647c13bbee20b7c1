"""ORM models for linked users, earned trophies, and per-guild settings.

Discord and PSN identifiers are opaque strings. All timestamps are stored
as timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from trophybot.db.base import Base

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

TROPHY_RANKS = ("bronze", "silver", "gold", "platinum")
LEGENDARY_TYPE = TROPHY_RANKS[-1]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator[datetime]):
    """DateTime that always round-trips as an aware UTC value.

    SQLite drops tzinfo on read; Postgres keeps it. Normalising here keeps
    watermark comparisons valid on both.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: object) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """A Discord user linked to a PSN account."""

    __tablename__ = "users"

    discord_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    psn_username: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    psn_account_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # --- Credential bundle (absent when linked without auth) ---
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    notifications_enabled: Mapped[bool] = mapped_column(Boolean, default=True, server_default="1")
    last_trophy_check: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=EPOCH)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    trophies: Mapped[list[Trophy]] = relationship("Trophy", back_populates="user", cascade="all, delete-orphan")
    notification_settings: Mapped[NotificationSettings | None] = relationship(
        "NotificationSettings", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    @property
    def has_credentials(self) -> bool:
        return bool(self.access_token or self.refresh_token)


# ---------------------------------------------------------------------------
# Trophies
# ---------------------------------------------------------------------------


class Trophy(Base):
    """An earned trophy. Immutable after insert except for ``notified``."""

    __tablename__ = "trophies"
    __table_args__ = (UniqueConstraint("discord_id", "trophy_id", "game_id", name="uq_trophies_user_trophy_game"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    discord_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.discord_id", ondelete="CASCADE"), nullable=False, index=True
    )
    trophy_id: Mapped[str] = mapped_column(String(16), nullable=False)
    trophy_name: Mapped[str] = mapped_column(String(256), nullable=False)
    trophy_description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    trophy_type: Mapped[str] = mapped_column(String(16), nullable=False)
    trophy_icon_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    game_id: Mapped[str] = mapped_column(String(32), nullable=False)
    game_title: Mapped[str] = mapped_column(String(256), nullable=False)
    earned_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    is_platinum: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    notified: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    user: Mapped[User] = relationship("User", back_populates="trophies")


# ---------------------------------------------------------------------------
# Notification settings
# ---------------------------------------------------------------------------


class NotificationSettings(Base):
    """Per-user delivery preferences. Read-only to the tracking pipeline."""

    __tablename__ = "notification_settings"

    discord_id: Mapped[str] = mapped_column(
        String(32), ForeignKey("users.discord_id", ondelete="CASCADE"), primary_key=True
    )
    trophy_notifications: Mapped[bool] = mapped_column(Boolean, default=True, server_default="1")
    platinum_notifications: Mapped[bool] = mapped_column(Boolean, default=True, server_default="1")
    channel_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    user: Mapped[User] = relationship("User", back_populates="notification_settings")


# ---------------------------------------------------------------------------
# Channel restrictions
# ---------------------------------------------------------------------------


class GuildRestriction(Base):
    """Whether a guild has switched into allow-list mode."""

    __tablename__ = "guild_restrictions"

    guild_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    restricted: Mapped[bool] = mapped_column(Boolean, default=False, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class AllowedChannel(Base):
    """A channel in which commands may run once its guild is restricted."""

    __tablename__ = "allowed_channels"
    __table_args__ = (UniqueConstraint("guild_id", "channel_id", name="uq_allowed_channels_guild_channel"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    guild_id: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    channel_id: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
