"""Trophy notification dispatch.

Newly discovered trophies are delivered to the channel configured in the
user's notification settings:

1. Platinum trophies: one message each.
2. Everything else: one batched message grouped by game, capped per game
   and in total number of games.

Each send is its own task with its own error boundary. Delivery is
at-most-once: attempted trophies are flagged ``notified`` whether or not the
send reached the channel.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError

from trophybot.db.models import NotificationSettings, User
from trophybot.psn.schemas import EarnedTrophy

logger = structlog.get_logger()

PLATINUM_COLOR = 0xFFD700
BATCH_COLOR = 0x0099FF

# Discord embed limits
EMBED_TOTAL_LIMIT = 6000
FIELD_NAME_LIMIT = 256
FIELD_VALUE_LIMIT = 1024
FOOTER_LIMIT = 2048
TROPHY_NAME_LIMIT = 100
OVERFLOW_RESERVE = 32

TROPHY_ICONS = {
    "platinum": "\U0001f3c6",
    "gold": "\U0001f947",
    "silver": "\U0001f948",
    "bronze": "\U0001f949",
}


class ChannelUnavailable(Exception):
    """The configured channel was deleted or the bot cannot access it."""


@dataclass
class MessageField:
    name: str
    value: str


@dataclass
class TrophyMessage:
    """Transport-neutral notification; the bot renders it as an embed."""

    title: str
    description: str
    color: int
    fields: list[MessageField] = field(default_factory=list)
    thumbnail_url: str | None = None
    footer_text: str | None = None
    footer_icon_url: str | None = None
    timestamp_unix: int | None = None


@dataclass
class DispatchResult:
    sent: int = 0
    failed: int = 0
    notified: int = 0


class Sendable(Protocol):
    async def send(self, message: TrophyMessage) -> None: ...


class ChannelResolver(Protocol):
    async def resolve(self, channel_id: str) -> Sendable: ...


class NotificationStore(Protocol):
    async def get_notification_settings(self, discord_id: str) -> NotificationSettings | None: ...

    async def mark_notified(self, discord_id: str, trophies: Sequence[EarnedTrophy]) -> int: ...


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def build_platinum_message(username: str, trophy: EarnedTrophy) -> TrophyMessage:
    earned = int(trophy.earned_at.timestamp())
    return TrophyMessage(
        title=f"{TROPHY_ICONS['platinum']} PLATINUM TROPHY EARNED!",
        description=f"**{username}** just earned a Platinum Trophy!",
        color=PLATINUM_COLOR,
        fields=[
            MessageField("Trophy", _truncate(trophy.trophy_name, FIELD_VALUE_LIMIT)),
            MessageField("Game", _truncate(trophy.game_title, FIELD_VALUE_LIMIT)),
            MessageField("Earned", f"<t:{earned}:R>"),
        ],
        thumbnail_url=trophy.trophy_icon_url or None,
        footer_text=_truncate(trophy.game_title, FOOTER_LIMIT) if trophy.game_icon_url else None,
        footer_icon_url=trophy.game_icon_url or None,
        timestamp_unix=earned,
    )


def group_by_game(trophies: Sequence[EarnedTrophy]) -> dict[str, list[EarnedTrophy]]:
    """Group trophies by game id, keeping first-seen order."""
    groups: dict[str, list[EarnedTrophy]] = {}
    for trophy in trophies:
        groups.setdefault(trophy.game_id, []).append(trophy)
    return groups


def build_batch_message(
    username: str,
    trophies: Sequence[EarnedTrophy],
    max_per_game: int = 5,
    max_games: int = 25,
) -> TrophyMessage:
    count = len(trophies)
    message = TrophyMessage(
        title=f"{TROPHY_ICONS['platinum']} New Trophy Achievements!",
        description=f"**{username}** earned {count} new {'trophy' if count == 1 else 'trophies'}",
        color=BATCH_COLOR,
    )

    groups = list(group_by_game(trophies).values())
    budget = EMBED_TOTAL_LIMIT - OVERFLOW_RESERVE - len(message.title) - len(message.description)
    shown = 0
    for game_trophies in groups[:max_games]:
        lines = [
            f"{TROPHY_ICONS.get(t.trophy_type, TROPHY_ICONS['platinum'])} "
            f"{_truncate(t.trophy_name, TROPHY_NAME_LIMIT)}"
            for t in game_trophies[:max_per_game]
        ]
        hidden = len(game_trophies) - max_per_game
        if hidden > 0:
            lines.append(f"+{hidden} more")
        name = _truncate(f"\U0001f3ae {game_trophies[0].game_title}", FIELD_NAME_LIMIT)
        value = _truncate("\n".join(lines), FIELD_VALUE_LIMIT)
        if len(name) + len(value) > budget:
            break
        budget -= len(name) + len(value)
        message.fields.append(MessageField(name, value))
        shown += 1

    omitted = len(groups) - shown
    if omitted > 0:
        message.description += f"\n+{omitted} more {'game' if omitted == 1 else 'games'}"
    return message


class NotificationDispatcher:
    """Sends trophy notifications to a user's configured channel. Never raises."""

    def __init__(
        self,
        store: NotificationStore,
        resolver: ChannelResolver,
        max_per_game: int = 5,
        max_games: int = 25,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.max_per_game = max_per_game
        self.max_games = max_games

    async def dispatch(self, user: User, trophies: Sequence[EarnedTrophy]) -> DispatchResult:
        result = DispatchResult()
        if not trophies:
            return result

        try:
            settings = await self.store.get_notification_settings(user.discord_id)
        except SQLAlchemyError:
            logger.exception("notification_settings_lookup_failed", discord_id=user.discord_id)
            return result

        if settings is None or not settings.channel_id:
            logger.debug("notification_channel_not_set", discord_id=user.discord_id)
            return result

        try:
            channel = await self.resolver.resolve(settings.channel_id)
        except Exception as exc:
            logger.warning(
                "notification_channel_unavailable",
                discord_id=user.discord_id,
                channel_id=settings.channel_id,
                error=str(exc),
            )
            return result

        platinums = [t for t in trophies if t.is_platinum]
        others = [t for t in trophies if not t.is_platinum]

        outgoing: list[tuple[TrophyMessage, list[EarnedTrophy]]] = []
        if platinums and settings.platinum_notifications:
            outgoing.extend((build_platinum_message(user.psn_username, t), [t]) for t in platinums)
        if others and settings.trophy_notifications:
            batch = build_batch_message(user.psn_username, others, self.max_per_game, self.max_games)
            outgoing.append((batch, others))

        if not outgoing:
            return result

        outcomes = await asyncio.gather(
            *(self._send(channel, user, message) for message, _ in outgoing),
            return_exceptions=True,
        )
        attempted: list[EarnedTrophy] = []
        for (_, covered), outcome in zip(outgoing, outcomes, strict=True):
            attempted.extend(covered)
            if outcome is True:
                result.sent += 1
            else:
                result.failed += 1

        try:
            result.notified = await self.store.mark_notified(user.discord_id, attempted)
        except SQLAlchemyError:
            logger.exception("notification_mark_failed", discord_id=user.discord_id)

        logger.info(
            "notifications_dispatched",
            discord_id=user.discord_id,
            sent=result.sent,
            failed=result.failed,
            platinum=len(platinums),
            others=len(others),
        )
        return result

    async def _send(self, channel: Sendable, user: User, message: TrophyMessage) -> bool:
        try:
            await channel.send(message)
        except Exception as exc:
            logger.warning(
                "notification_send_failed",
                discord_id=user.discord_id,
                title=message.title,
                error=str(exc),
            )
            return False
        return True
