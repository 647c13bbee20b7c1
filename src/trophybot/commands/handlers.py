"""Command handlers. Each takes the shared services and a parsed invocation
and returns the reply text."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy.exc import SQLAlchemyError

from trophybot.commands.context import CommandServices, Invocation
from trophybot.psn.client import PSNAuthError, PSNError, is_valid_npsso
from trophybot.tracking.notifier import TROPHY_ICONS
from trophybot.tracking.sync_engine import CHECKED, SKIPPED

logger = structlog.get_logger()

NOT_LINKED = "❌ You haven't linked a PlayStation Network account yet. Use `/link` to get started."
DATABASE_ERROR = "❌ Database error occurred. Please try again later."
GUILD_ONLY = "❌ This command can only be used in a server."
MANAGE_REQUIRED = "❌ You need the **Manage Server** permission to change channel restrictions."

RESTRICT_ACTIONS = ("add", "remove", "clear", "list")
RECENT_TROPHY_LIMIT = 5
MIN_SEARCH_LENGTH = 3
SEARCH_RESULT_LIMIT = 10
BROWSE_RECENT_GAMES = 3


def _plural(count: int, singular: str, plural: str) -> str:
    return f"{count} {singular if count == 1 else plural}"


async def check(services: CommandServices, invocation: Invocation) -> str:
    """Manual trophy check for the calling user."""
    try:
        user = await services.repository.get_user(invocation.user_id)
    except SQLAlchemyError:
        logger.exception("command_check_db_error", discord_id=invocation.user_id)
        return DATABASE_ERROR
    if user is None:
        return NOT_LINKED

    outcome = await services.engine.sync_one(user)
    if outcome.status == SKIPPED:
        return (
            f"⚠️ Could not check **{user.psn_username}**: {outcome.reason}. "
            "Re-link with `/link` if your PSN sign-in has expired."
        )
    if outcome.status != CHECKED:
        return f"❌ Trophy check for **{user.psn_username}** failed. Please try again later."
    if outcome.fetch_error:
        return f"⚠️ PlayStation Network did not respond for **{user.psn_username}**. Try again later."
    if outcome.inserted == 0:
        return f"✅ Checked **{user.psn_username}**: no new trophies."
    return f"✅ Checked **{user.psn_username}**: {_plural(outcome.inserted, 'new trophy', 'new trophies')} found!"


async def notifications(services: CommandServices, invocation: Invocation) -> str:
    """Set the notification channel and per-kind toggles."""
    channel_id = invocation.option("channel")
    trophies = invocation.option("trophies")
    platinum = invocation.option("platinum")
    disable_channel = bool(invocation.option("disable", False))
    tracking = invocation.option("tracking")

    try:
        user = await services.repository.get_user(invocation.user_id)
        if user is None:
            return NOT_LINKED
        settings = await services.repository.update_notification_settings(
            invocation.user_id,
            channel_id=str(channel_id) if channel_id is not None else None,
            trophy_notifications=trophies if isinstance(trophies, bool) else None,
            platinum_notifications=platinum if isinstance(platinum, bool) else None,
            clear_channel=disable_channel,
        )
        tracking_enabled = user.notifications_enabled
        if isinstance(tracking, bool) and tracking != tracking_enabled:
            await services.repository.set_notifications_enabled(invocation.user_id, tracking)
            tracking_enabled = tracking
    except SQLAlchemyError:
        logger.exception("command_notifications_db_error", discord_id=invocation.user_id)
        return DATABASE_ERROR

    channel = f"<#{settings.channel_id}>" if settings.channel_id else "not set"
    return (
        "🔔 Notification settings updated.\n"
        f"Channel: {channel}\n"
        f"Trophy notifications: {'on' if settings.trophy_notifications else 'off'}\n"
        f"Platinum notifications: {'on' if settings.platinum_notifications else 'off'}\n"
        f"Automatic checks: {'on' if tracking_enabled else 'paused'}"
    )


async def restrict(services: CommandServices, invocation: Invocation) -> str:
    """Manage the guild's command channel allow-list."""
    guild_id = invocation.guild_id
    if guild_id is None:
        return GUILD_ONLY
    if not invocation.can_manage_guild:
        return MANAGE_REQUIRED

    action = str(invocation.option("action", "list")).lower()
    if action not in RESTRICT_ACTIONS:
        return f"❌ Unknown action `{action}`. Use one of: {', '.join(RESTRICT_ACTIONS)}."

    target = invocation.option("channel", invocation.channel_id)
    gate = services.gate
    try:
        if action == "add":
            if target is None:
                return "❌ Pick a channel to allow."
            added = await gate.add_channel(guild_id, str(target))
            if not added:
                return f"ℹ️ <#{target}> is already an allowed channel."
            return f"✅ Commands are now allowed in <#{target}>."

        if action == "remove":
            if target is None:
                return "❌ Pick a channel to remove."
            removed = await gate.remove_channel(guild_id, str(target))
            if not removed:
                return f"ℹ️ <#{target}> was not an allowed channel."
            remaining = await gate.list_channels(guild_id)
            if not remaining:
                return (
                    f"✅ Removed <#{target}>. No channels are allowed now; "
                    "use `/restrict clear` to lift the restriction."
                )
            return f"✅ Removed <#{target}> from the allowed channels."

        if action == "clear":
            await gate.clear(guild_id)
            return "✅ Channel restrictions cleared. Commands work in every channel again."

        channels = await gate.list_channels(guild_id)
        restricted = await gate.is_restricted(guild_id)
    except SQLAlchemyError:
        logger.exception("command_restrict_db_error", guild_id=guild_id, action=action)
        return DATABASE_ERROR

    if not restricted:
        return "🌐 Commands are allowed in every channel."
    if not channels:
        return "🔒 Commands are restricted, but no channels are allowed yet."
    listed = "\n".join(f"• <#{channel}>" for channel in channels)
    return f"🔒 Commands are restricted to:\n{listed}"


async def link(services: CommandServices, invocation: Invocation) -> str:
    """Link a PSN account using an NPSSO token."""
    username = str(invocation.option("username", "")).strip()
    npsso = str(invocation.option("npsso", "")).strip()
    if not username:
        return "❌ Provide your PlayStation Network username."
    if not is_valid_npsso(npsso):
        return "❌ That NPSSO token doesn't look right. It should be 64 hexadecimal characters."

    try:
        existing = await services.repository.get_user_by_psn_username(username)
    except SQLAlchemyError:
        logger.exception("command_link_db_error", discord_id=invocation.user_id)
        return DATABASE_ERROR
    if existing is not None and existing.discord_id != invocation.user_id:
        return f"❌ **{username}** is already linked to another Discord account."

    try:
        tokens = await services.psn.authenticate_with_npsso(npsso)
        profile = await services.psn.get_profile(tokens.access_token, username)
    except PSNAuthError as exc:
        logger.warning("command_link_auth_failed", discord_id=invocation.user_id, error=str(exc))
        return "❌ PlayStation Network rejected that NPSSO token. Grab a fresh one and try again."
    except PSNError as exc:
        logger.warning("command_link_psn_failed", discord_id=invocation.user_id, error=str(exc))
        return "❌ Could not reach PlayStation Network. Please try again later."

    try:
        await services.repository.link_user(invocation.user_id, profile.online_id, profile.account_id, tokens)
    except SQLAlchemyError:
        logger.exception("command_link_db_error", discord_id=invocation.user_id)
        return DATABASE_ERROR

    logger.info("user_linked", discord_id=invocation.user_id, psn_username=profile.online_id)
    return (
        f"✅ Linked **{profile.online_id}**. New trophies will be checked automatically.\n"
        "Use `/notifications` to choose where they are announced."
    )


async def unlink(services: CommandServices, invocation: Invocation) -> str:
    try:
        removed = await services.repository.unlink_user(invocation.user_id)
    except SQLAlchemyError:
        logger.exception("command_unlink_db_error", discord_id=invocation.user_id)
        return DATABASE_ERROR
    if not removed:
        return NOT_LINKED
    logger.info("user_unlinked", discord_id=invocation.user_id)
    return "✅ Your PlayStation Network account has been unlinked and its trophy history removed."


async def profile(services: CommandServices, invocation: Invocation) -> str:
    """Stored trophy totals and latest trophies for the caller or another member."""
    target = str(invocation.option("user", invocation.user_id))
    try:
        user = await services.repository.get_user(target)
        if user is None:
            if target == invocation.user_id:
                return NOT_LINKED
            return f"❌ <@{target}> hasn't linked a PlayStation Network account."
        stats = await services.repository.get_trophy_stats(target)
        recent = await services.repository.get_recent_trophies(target, limit=RECENT_TROPHY_LIMIT)
    except SQLAlchemyError:
        logger.exception("command_profile_db_error", discord_id=target)
        return DATABASE_ERROR

    totals = f"{_plural(stats.total, 'trophy', 'trophies')} across {_plural(stats.games, 'game', 'games')}"
    lines = [
        f"🎮 **{user.psn_username}**: {totals}",
        f"{TROPHY_ICONS['platinum']} {stats.platinum}  "
        f"{TROPHY_ICONS['gold']} {stats.gold}  "
        f"{TROPHY_ICONS['silver']} {stats.silver}  "
        f"{TROPHY_ICONS['bronze']} {stats.bronze}",
    ]
    if recent:
        lines.append("")
        lines.append("**Recent trophies**")
        for trophy in recent:
            icon = TROPHY_ICONS.get(trophy.trophy_type, "🏆")
            lines.append(
                f"{icon} **{trophy.trophy_name}** ({trophy.game_title}) <t:{int(trophy.earned_at.timestamp())}:R>"
            )
    return "\n".join(lines)


def _format_duration(delta: timedelta) -> str:
    seconds = max(int(delta.total_seconds()), 0)
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes = seconds // 60
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


async def status(services: CommandServices, invocation: Invocation) -> str:
    """Bot and tracking statistics."""
    try:
        totals = await services.repository.get_tracking_totals()
    except SQLAlchemyError:
        logger.exception("command_status_db_error", discord_id=invocation.user_id)
        return DATABASE_ERROR

    lines = ["📊 **Trophy Bot status**"]
    runtime = services.runtime
    if runtime is not None:
        uptime = _format_duration(datetime.now(timezone.utc) - runtime.started_at)
        lines.append(f"Uptime: {uptime}")
        lines.append(f"Servers: {runtime.guild_count}")
    lines.append(f"Linked accounts: {totals.linked} ({totals.tracked} tracked automatically)")
    lines.append(f"Trophies recorded: {totals.trophies} across {_plural(totals.games, 'game', 'games')}")

    scheduler = services.scheduler
    if scheduler is not None:
        lines.append(f"Check interval: every {_format_duration(timedelta(seconds=scheduler.interval_seconds))}")
        summary = scheduler.last_summary
        if scheduler.is_running:
            lines.append("Trophy check: running now")
        elif summary is not None:
            lines.append(
                f"Last check: <t:{int(summary.started_at.timestamp())}:R>, "
                f"{summary.checked}/{summary.users} users, "
                f"{_plural(summary.new_trophies, 'new trophy', 'new trophies')}"
            )
        else:
            lines.append("Last check: none yet")
    return "\n".join(lines)


HELP_TOPICS: dict[str, str] = {
    "getting-started": (
        "**Getting started**\n"
        "1. Sign in at playstation.com and open `https://ca.account.sony.com/api/v1/ssocookie`.\n"
        "2. Copy the 64 character `npsso` value.\n"
        "3. Run `/link username:<PSN name> npsso:<token>`.\n"
        "4. Run `/notifications channel:#channel` to pick where trophies are announced."
    ),
    "linking": (
        "**Linking**\n"
        "`/link` stores a PSN sign-in so your trophies can be checked. The NPSSO token is exchanged once "
        "and never stored.\n"
        "`/unlink` removes the account and its trophy history.\n"
        "If checks report an expired sign-in, run `/link` again with a fresh token."
    ),
    "notifications": (
        "**Notifications**\n"
        "`/notifications channel:#channel` sets the announcement channel.\n"
        "`trophies` and `platinum` switch each kind of announcement on or off.\n"
        "`tracking:false` pauses automatic checks and announcements.\n"
        "`disable:true` clears the channel."
    ),
    "restrictions": (
        "**Channel restrictions**\n"
        "Members with **Manage Server** can limit where commands run.\n"
        "`/restrict action:add channel:#channel` allows a channel.\n"
        "`/restrict action:remove` and `/restrict action:clear` undo it; `/restrict action:list` shows them."
    ),
    "commands": (
        "**Commands**\n"
        "`/link` `/unlink` `/check` `/profile` `/notifications`\n"
        "`/search-player` `/browse-player` `/status` `/restrict` `/help`"
    ),
}


async def show_help(services: CommandServices, invocation: Invocation) -> str:
    """Usage guide, optionally for a single topic."""
    topic = invocation.option("topic")
    if topic is not None:
        text = HELP_TOPICS.get(str(topic).lower())
        if text is None:
            return f"❌ Unknown help topic `{topic}`. Topics: {', '.join(HELP_TOPICS)}."
        return text
    return (
        "🏆 **Trophy Bot** announces the PlayStation trophies you earn.\n\n"
        + HELP_TOPICS["commands"]
        + f"\n\nUse `/help topic:<name>` for details. Topics: {', '.join(HELP_TOPICS)}."
    )


async def search_player(services: CommandServices, invocation: Invocation) -> str:
    """Search public PSN profiles by name."""
    query = str(invocation.option("query", "")).strip()
    if len(query) < MIN_SEARCH_LENGTH:
        return f"❌ Search terms need at least {MIN_SEARCH_LENGTH} characters."

    try:
        players = await services.psn.search_players(query, limit=SEARCH_RESULT_LIMIT)
    except PSNError as exc:
        logger.warning("command_search_player_failed", query=query, error=str(exc))
        return "❌ Player search failed. PlayStation Network may be unavailable, try again later."

    if not players:
        return f"🔍 No players found matching **{query}**."
    lines = [f"🔍 **Players matching {query}**"]
    for index, player in enumerate(players, start=1):
        lines.append(f"{index}. **{player.online_id}** (`{player.account_id}`)")
    lines.append("")
    lines.append("Use `/browse-player` to view a profile or `/link` to track your own account.")
    return "\n".join(lines)


async def browse_player(services: CommandServices, invocation: Invocation) -> str:
    """Public trophy summary for any PSN player."""
    username = str(invocation.option("username", "")).strip()
    if len(username) < MIN_SEARCH_LENGTH:
        return f"❌ PSN usernames have at least {MIN_SEARCH_LENGTH} characters."

    try:
        player = await services.psn.find_player(username)
    except PSNError as exc:
        logger.warning("command_browse_player_lookup_failed", username=username, error=str(exc))
        return "❌ Player lookup failed. PlayStation Network may be unavailable, try again later."
    if player is None:
        return f"❌ No PlayStation Network player named **{username}** was found."

    try:
        summary = await services.psn.get_trophy_summary(player.account_id)
    except PSNError as exc:
        logger.warning("command_browse_player_private", account_id=player.account_id, error=str(exc))
        return f"🔒 **{player.online_id}**'s trophies are not publicly accessible."

    stats = None
    try:
        stats = await services.psn.get_game_stats(player.account_id)
    except PSNError as exc:
        logger.warning("command_browse_player_titles_failed", account_id=player.account_id, error=str(exc))

    earned = summary.earned
    level = f"Level {summary.trophy_level} ({summary.progress}% to next)"
    if summary.tier is not None:
        level += f", tier {summary.tier}"
    lines = [
        f"🎮 **{player.online_id}**",
        level,
        f"{_plural(earned.total, 'trophy', 'trophies')}: "
        f"{TROPHY_ICONS['platinum']} {earned.platinum}  "
        f"{TROPHY_ICONS['gold']} {earned.gold}  "
        f"{TROPHY_ICONS['silver']} {earned.silver}  "
        f"{TROPHY_ICONS['bronze']} {earned.bronze}",
    ]
    if stats is not None and stats.total_games:
        lines.append(
            f"Recent games: {stats.total_games}, {stats.completed_games} completed, "
            f"{stats.games_with_platinum} with platinum, {stats.average_completion}% average completion"
        )
        for game in stats.recent_games[:BROWSE_RECENT_GAMES]:
            lines.append(f"• {game.title_name}: {game.progress}%")
    return "\n".join(lines)
