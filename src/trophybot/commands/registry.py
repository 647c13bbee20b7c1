"""Static command table.

Every slash command maps to exactly one handler, fixed at import time.
The Discord layer only parses arguments into an ``Invocation`` and calls
``execute``; handlers never touch Discord objects.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum

from trophybot.commands import handlers
from trophybot.commands.context import CommandServices, Invocation


class CommandKind(str, Enum):
    CHECK = "check"
    NOTIFICATIONS = "notifications"
    RESTRICT = "restrict"
    LINK = "link"
    UNLINK = "unlink"
    PROFILE = "profile"
    STATUS = "status"
    HELP = "help"
    SEARCH_PLAYER = "search-player"
    BROWSE_PLAYER = "browse-player"


Handler = Callable[[CommandServices, Invocation], Awaitable[str]]

HANDLERS: dict[CommandKind, Handler] = {
    CommandKind.CHECK: handlers.check,
    CommandKind.NOTIFICATIONS: handlers.notifications,
    CommandKind.RESTRICT: handlers.restrict,
    CommandKind.LINK: handlers.link,
    CommandKind.UNLINK: handlers.unlink,
    CommandKind.PROFILE: handlers.profile,
    CommandKind.STATUS: handlers.status,
    CommandKind.HELP: handlers.show_help,
    CommandKind.SEARCH_PLAYER: handlers.search_player,
    CommandKind.BROWSE_PLAYER: handlers.browse_player,
}

# Runs even in channels outside a guild's allow-list.
GATE_EXEMPT: frozenset[CommandKind] = frozenset({CommandKind.RESTRICT})


def is_gate_exempt(name: str) -> bool:
    """Whether the command named ``name`` skips the channel allow-list."""
    return name in {kind.value for kind in GATE_EXEMPT}


async def execute(kind: CommandKind, services: CommandServices, invocation: Invocation) -> str:
    """Run the handler registered for ``kind``."""
    return await HANDLERS[kind](services, invocation)
