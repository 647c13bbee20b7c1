"""Baseline: users, trophies, notification settings, channel restrictions.

Revision ID: 001_baseline
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

revision: str = "001_baseline"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create all tables."""
    op.create_table(
        "users",
        sa.Column("discord_id", sa.String(32), primary_key=True),
        sa.Column("psn_username", sa.String(32), nullable=False, unique=True),
        sa.Column("psn_account_id", sa.String(32), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("refresh_token", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notifications_enabled", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column(
            "last_trophy_check",
            sa.DateTime(timezone=True),
            server_default=sa.text("'1970-01-01 00:00:00+00'"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "trophies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "discord_id",
            sa.String(32),
            sa.ForeignKey("users.discord_id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("trophy_id", sa.String(16), nullable=False),
        sa.Column("trophy_name", sa.String(256), nullable=False),
        sa.Column("trophy_description", sa.Text(), server_default="", nullable=False),
        sa.Column("trophy_type", sa.String(16), nullable=False),
        sa.Column("trophy_icon_url", sa.Text(), server_default="", nullable=False),
        sa.Column("game_id", sa.String(32), nullable=False),
        sa.Column("game_title", sa.String(256), nullable=False),
        sa.Column("earned_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_platinum", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("notified", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("discord_id", "trophy_id", "game_id", name="uq_trophies_user_trophy_game"),
    )
    op.create_index("ix_trophies_discord_id", "trophies", ["discord_id"])
    op.create_index("ix_trophies_discord_earned", "trophies", ["discord_id", sa.text("earned_at DESC")])

    op.create_table(
        "notification_settings",
        sa.Column(
            "discord_id",
            sa.String(32),
            sa.ForeignKey("users.discord_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("trophy_notifications", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("platinum_notifications", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=True),
    )

    op.create_table(
        "guild_restrictions",
        sa.Column("guild_id", sa.String(32), primary_key=True),
        sa.Column("restricted", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "allowed_channels",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("guild_id", sa.String(32), nullable=False),
        sa.Column("channel_id", sa.String(32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("guild_id", "channel_id", name="uq_allowed_channels_guild_channel"),
    )
    op.create_index("ix_allowed_channels_guild_id", "allowed_channels", ["guild_id"])


def downgrade() -> None:
    op.drop_index("ix_allowed_channels_guild_id", table_name="allowed_channels")
    op.drop_table("allowed_channels")
    op.drop_table("guild_restrictions")
    op.drop_table("notification_settings")
    op.drop_index("ix_trophies_discord_earned", table_name="trophies")
    op.drop_index("ix_trophies_discord_id", table_name="trophies")
    op.drop_table("trophies")
    op.drop_table("users")
