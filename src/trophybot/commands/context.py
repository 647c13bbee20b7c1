"""Inputs shared by every command handler."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from trophybot.access.gate import RestrictionGate
from trophybot.psn.client import PSNClient
from trophybot.tracking.repository import TrophyRepository
from trophybot.tracking.scheduler import SyncScheduler
from trophybot.tracking.sync_engine import SyncEngine


class BotRuntime(Protocol):
    """Process facts reported by ``/status``."""

    @property
    def started_at(self) -> datetime: ...

    @property
    def guild_count(self) -> int: ...


@dataclass
class CommandServices:
    """Handles passed to every command handler."""

    repository: TrophyRepository
    engine: SyncEngine
    gate: RestrictionGate
    psn: PSNClient
    runtime: BotRuntime | None = None
    scheduler: SyncScheduler | None = None


@dataclass
class Invocation:
    """A parsed command call."""

    user_id: str
    guild_id: str | None = None
    channel_id: str | None = None
    options: dict[str, object] = field(default_factory=dict)
    can_manage_guild: bool = False

    def option(self, name: str, default: object = None) -> object:
        value = self.options.get(name)
        return default if value is None else value
