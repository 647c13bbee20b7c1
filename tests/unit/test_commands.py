"""Tests for the command table and handlers."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from tests.factories import T0, fresh_tokens, make_user
from trophybot.commands import handlers
from trophybot.commands.context import CommandServices, Invocation
from trophybot.commands.registry import HANDLERS, CommandKind, execute, is_gate_exempt
from trophybot.db.models import NotificationSettings, Trophy
from trophybot.psn.client import PSNAuthError, PSNUnavailableError
from trophybot.psn.schemas import (
    AccountProfile,
    GameStats,
    PlayerSummary,
    TrophyCounts,
    TrophySummary,
    TrophyTitle,
)
from trophybot.tracking.repository import TrackingTotals, TrophyStats
from trophybot.tracking.sync_engine import CHECKED, FAILED, SKIPPED, SyncOutcome, SyncRunSummary

NPSSO = "b" * 64


@pytest.fixture
def services() -> CommandServices:
    return CommandServices(repository=AsyncMock(), engine=AsyncMock(), gate=AsyncMock(), psn=AsyncMock())


class TestRegistry:
    def test_every_kind_has_a_handler(self) -> None:
        assert set(HANDLERS) == set(CommandKind)

    def test_only_restrict_bypasses_gate(self) -> None:
        assert is_gate_exempt("restrict") is True
        assert all(not is_gate_exempt(kind.value) for kind in CommandKind if kind is not CommandKind.RESTRICT)
        assert is_gate_exempt("unknown") is False

    async def test_execute_dispatches_to_handler(self, services: CommandServices) -> None:
        services.repository.unlink_user.return_value = True
        reply = await execute(CommandKind.UNLINK, services, Invocation(user_id="100"))
        assert "unlinked" in reply
        services.repository.unlink_user.assert_awaited_once_with("100")


class TestCheck:
    async def test_not_linked(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = None
        reply = await handlers.check(services, Invocation(user_id="100"))
        assert reply == handlers.NOT_LINKED
        services.engine.sync_one.assert_not_awaited()

    async def test_reports_new_trophies(self, services: CommandServices) -> None:
        user = make_user()
        services.repository.get_user.return_value = user
        services.engine.sync_one.return_value = SyncOutcome(discord_id="100", status=CHECKED, inserted=3)

        reply = await handlers.check(services, Invocation(user_id="100"))

        services.engine.sync_one.assert_awaited_once_with(user)
        assert "3 new trophies" in reply

    async def test_reports_nothing_new(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = make_user()
        services.engine.sync_one.return_value = SyncOutcome(discord_id="100", status=CHECKED)
        assert "no new trophies" in await handlers.check(services, Invocation(user_id="100"))

    async def test_reports_skip_reason(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = make_user()
        services.engine.sync_one.return_value = SyncOutcome(discord_id="100", status=SKIPPED, reason="no valid token")
        assert "no valid token" in await handlers.check(services, Invocation(user_id="100"))

    async def test_reports_failure(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = make_user()
        services.engine.sync_one.return_value = SyncOutcome(discord_id="100", status=FAILED)
        assert "failed" in await handlers.check(services, Invocation(user_id="100"))

    async def test_database_error(self, services: CommandServices) -> None:
        services.repository.get_user.side_effect = OperationalError("SELECT", {}, Exception("down"))
        assert await handlers.check(services, Invocation(user_id="100")) == handlers.DATABASE_ERROR


class TestNotifications:
    async def test_sets_channel_and_toggles(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = make_user()
        services.repository.update_notification_settings.return_value = NotificationSettings(
            discord_id="100", channel_id="555", trophy_notifications=False, platinum_notifications=True
        )
        invocation = Invocation(user_id="100", options={"channel": "555", "trophies": False, "platinum": None})

        reply = await handlers.notifications(services, invocation)

        services.repository.update_notification_settings.assert_awaited_once_with(
            "100",
            channel_id="555",
            trophy_notifications=False,
            platinum_notifications=None,
            clear_channel=False,
        )
        assert "<#555>" in reply
        assert "Trophy notifications: off" in reply
        assert "Automatic checks: on" in reply
        services.repository.set_notifications_enabled.assert_not_awaited()

    async def test_tracking_option_pauses_automatic_checks(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = make_user()
        services.repository.update_notification_settings.return_value = NotificationSettings(
            discord_id="100", channel_id=None, trophy_notifications=True, platinum_notifications=True
        )

        reply = await handlers.notifications(services, Invocation(user_id="100", options={"tracking": False}))

        services.repository.set_notifications_enabled.assert_awaited_once_with("100", False)
        assert "Automatic checks: paused" in reply

    async def test_requires_link(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = None
        assert await handlers.notifications(services, Invocation(user_id="100")) == handlers.NOT_LINKED
        services.repository.update_notification_settings.assert_not_awaited()


class TestRestrict:
    def _invocation(self, action: str, channel: str | None = None, manage: bool = True) -> Invocation:
        return Invocation(
            user_id="100",
            guild_id="1",
            channel_id="10",
            options={"action": action, "channel": channel},
            can_manage_guild=manage,
        )

    async def test_add_defaults_to_current_channel(self, services: CommandServices) -> None:
        services.gate.add_channel.return_value = True
        reply = await handlers.restrict(services, self._invocation("add"))
        services.gate.add_channel.assert_awaited_once_with("1", "10")
        assert "<#10>" in reply

    async def test_remove_last_channel_mentions_clear(self, services: CommandServices) -> None:
        services.gate.remove_channel.return_value = True
        services.gate.list_channels.return_value = []
        reply = await handlers.restrict(services, self._invocation("remove", "20"))
        services.gate.remove_channel.assert_awaited_once_with("1", "20")
        assert "/restrict clear" in reply

    async def test_clear(self, services: CommandServices) -> None:
        await handlers.restrict(services, self._invocation("clear"))
        services.gate.clear.assert_awaited_once_with("1")

    async def test_list_restricted(self, services: CommandServices) -> None:
        services.gate.list_channels.return_value = ["10", "20"]
        services.gate.is_restricted.return_value = True
        reply = await handlers.restrict(services, self._invocation("list"))
        assert "<#10>" in reply and "<#20>" in reply

    async def test_list_unrestricted(self, services: CommandServices) -> None:
        services.gate.list_channels.return_value = []
        services.gate.is_restricted.return_value = False
        assert "every channel" in await handlers.restrict(services, self._invocation("list"))

    async def test_requires_manage_permission(self, services: CommandServices) -> None:
        reply = await handlers.restrict(services, self._invocation("add", manage=False))
        assert reply == handlers.MANAGE_REQUIRED
        services.gate.add_channel.assert_not_awaited()

    async def test_guild_only(self, services: CommandServices) -> None:
        reply = await handlers.restrict(services, Invocation(user_id="100", options={"action": "list"}))
        assert reply == handlers.GUILD_ONLY

    async def test_unknown_action(self, services: CommandServices) -> None:
        assert "Unknown action" in await handlers.restrict(services, self._invocation("explode"))


class TestLink:
    def _invocation(self, npsso: str = NPSSO) -> Invocation:
        return Invocation(user_id="100", options={"username": "Kratos", "npsso": npsso})

    async def test_links_account(self, services: CommandServices) -> None:
        tokens = fresh_tokens()
        services.repository.get_user_by_psn_username.return_value = None
        services.psn.authenticate_with_npsso.return_value = tokens
        services.psn.get_profile.return_value = AccountProfile(account_id="42", online_id="Kratos")

        reply = await handlers.link(services, self._invocation())

        services.psn.get_profile.assert_awaited_once_with(tokens.access_token, "Kratos")
        services.repository.link_user.assert_awaited_once_with("100", "Kratos", "42", tokens)
        assert "Linked" in reply

    async def test_rejects_malformed_npsso(self, services: CommandServices) -> None:
        reply = await handlers.link(services, self._invocation("short"))
        assert "64 hexadecimal" in reply
        services.psn.authenticate_with_npsso.assert_not_awaited()

    async def test_rejects_username_owned_by_someone_else(self, services: CommandServices) -> None:
        services.repository.get_user_by_psn_username.return_value = make_user(discord_id="999")
        reply = await handlers.link(services, self._invocation())
        assert "already linked" in reply
        services.psn.authenticate_with_npsso.assert_not_awaited()

    async def test_psn_rejection(self, services: CommandServices) -> None:
        services.repository.get_user_by_psn_username.return_value = None
        services.psn.authenticate_with_npsso.side_effect = PSNAuthError("bad npsso")
        assert "rejected" in await handlers.link(services, self._invocation())
        services.repository.link_user.assert_not_awaited()

    async def test_psn_unavailable(self, services: CommandServices) -> None:
        services.repository.get_user_by_psn_username.return_value = None
        services.psn.authenticate_with_npsso.side_effect = PSNUnavailableError("down")
        assert "Could not reach" in await handlers.link(services, self._invocation())


class TestUnlinkAndProfile:
    async def test_unlink_when_not_linked(self, services: CommandServices) -> None:
        services.repository.unlink_user.return_value = False
        assert await handlers.unlink(services, Invocation(user_id="100")) == handlers.NOT_LINKED

    async def test_profile_shows_totals(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = make_user()
        services.repository.get_trophy_stats.return_value = TrophyStats(
            total=12, platinum=1, gold=2, silver=3, bronze=6, games=2
        )
        services.repository.get_recent_trophies.return_value = []
        reply = await handlers.profile(services, Invocation(user_id="100"))
        assert "12 trophies across 2 games" in reply
        assert "**Kratos**" in reply
        assert "Recent trophies" not in reply

    async def test_profile_lists_recent_trophies(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = make_user()
        services.repository.get_trophy_stats.return_value = TrophyStats(total=1, bronze=1, games=1)
        services.repository.get_recent_trophies.return_value = [
            Trophy(trophy_name="First Steps", trophy_type="gold", game_title="Astro Bot", earned_at=T0)
        ]

        reply = await handlers.profile(services, Invocation(user_id="100"))

        services.repository.get_recent_trophies.assert_awaited_once_with("100", limit=handlers.RECENT_TROPHY_LIMIT)
        assert "**First Steps** (Astro Bot)" in reply
        assert f"<t:{int(T0.timestamp())}:R>" in reply

    async def test_profile_of_another_member(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = make_user(discord_id="200", psn_username="Atreus")
        services.repository.get_trophy_stats.return_value = TrophyStats()
        services.repository.get_recent_trophies.return_value = []

        reply = await handlers.profile(services, Invocation(user_id="100", options={"user": "200"}))

        services.repository.get_user.assert_awaited_once_with("200")
        assert "**Atreus**" in reply

    async def test_profile_of_unlinked_member(self, services: CommandServices) -> None:
        services.repository.get_user.return_value = None
        reply = await handlers.profile(services, Invocation(user_id="100", options={"user": "200"}))
        assert reply.startswith("❌ <@200>")
        services.repository.get_trophy_stats.assert_not_awaited()


class TestStatus:
    async def test_reports_totals_runtime_and_last_run(self, services: CommandServices) -> None:
        services.repository.get_tracking_totals.return_value = TrackingTotals(
            users=4, linked=3, tracked=2, trophies=40, games=5
        )
        services.runtime = MagicMock(started_at=T0 - timedelta(hours=3), guild_count=7)
        scheduler = MagicMock(interval_seconds=1800, is_running=False)
        scheduler.last_summary = SyncRunSummary(started_at=T0, users=3, checked=2, new_trophies=4)
        services.scheduler = scheduler

        reply = await handlers.status(services, Invocation(user_id="100"))

        assert "Servers: 7" in reply
        assert "Linked accounts: 3 (2 tracked automatically)" in reply
        assert "Trophies recorded: 40 across 5 games" in reply
        assert "every 30m" in reply
        assert "2/3 users, 4 new trophies" in reply

    async def test_without_runtime_or_scheduler(self, services: CommandServices) -> None:
        services.repository.get_tracking_totals.return_value = TrackingTotals(
            users=0, linked=0, tracked=0, trophies=0, games=0
        )
        reply = await handlers.status(services, Invocation(user_id="100"))
        assert "Uptime" not in reply
        assert "Last check" not in reply

    async def test_running_check(self, services: CommandServices) -> None:
        services.repository.get_tracking_totals.return_value = TrackingTotals(
            users=1, linked=1, tracked=1, trophies=0, games=0
        )
        services.scheduler = MagicMock(interval_seconds=600, is_running=True)
        assert "running now" in await handlers.status(services, Invocation(user_id="100"))

    async def test_database_error(self, services: CommandServices) -> None:
        services.repository.get_tracking_totals.side_effect = OperationalError("SELECT", {}, Exception("down"))
        assert await handlers.status(services, Invocation(user_id="100")) == handlers.DATABASE_ERROR

    def test_format_duration(self) -> None:
        assert handlers._format_duration(timedelta(minutes=5)) == "5m"
        assert handlers._format_duration(timedelta(hours=2, minutes=1)) == "2h 1m"
        assert handlers._format_duration(timedelta(days=1, hours=3)) == "1d 3h 0m"


class TestHelp:
    async def test_overview_lists_commands_and_topics(self, services: CommandServices) -> None:
        reply = await handlers.show_help(services, Invocation(user_id="100"))
        assert "/search-player" in reply
        assert all(topic in reply for topic in handlers.HELP_TOPICS)

    async def test_topic(self, services: CommandServices) -> None:
        reply = await handlers.show_help(services, Invocation(user_id="100", options={"topic": "linking"}))
        assert reply == handlers.HELP_TOPICS["linking"]

    async def test_unknown_topic(self, services: CommandServices) -> None:
        reply = await handlers.show_help(services, Invocation(user_id="100", options={"topic": "cheats"}))
        assert "Unknown help topic" in reply


class TestSearchPlayer:
    async def test_lists_matches(self, services: CommandServices) -> None:
        services.psn.search_players.return_value = [
            PlayerSummary(account_id="1", online_id="Kratos"),
            PlayerSummary(account_id="2", online_id="Kratos_Jr"),
        ]

        reply = await handlers.search_player(services, Invocation(user_id="100", options={"query": "krat"}))

        services.psn.search_players.assert_awaited_once_with("krat", limit=handlers.SEARCH_RESULT_LIMIT)
        assert "1. **Kratos** (`1`)" in reply
        assert "2. **Kratos_Jr** (`2`)" in reply
        assert "/browse-player" in reply

    async def test_no_matches(self, services: CommandServices) -> None:
        services.psn.search_players.return_value = []
        reply = await handlers.search_player(services, Invocation(user_id="100", options={"query": "zzzz"}))
        assert "No players found" in reply

    async def test_query_too_short(self, services: CommandServices) -> None:
        reply = await handlers.search_player(services, Invocation(user_id="100", options={"query": "ab"}))
        assert "at least 3" in reply
        services.psn.search_players.assert_not_awaited()

    async def test_psn_failure(self, services: CommandServices) -> None:
        services.psn.search_players.side_effect = PSNUnavailableError("down")
        reply = await handlers.search_player(services, Invocation(user_id="100", options={"query": "krat"}))
        assert "search failed" in reply


class TestBrowsePlayer:
    def _invocation(self) -> Invocation:
        return Invocation(user_id="100", options={"username": "Kratos"})

    async def test_shows_summary_and_recent_games(self, services: CommandServices) -> None:
        services.psn.find_player.return_value = PlayerSummary(account_id="42", online_id="Kratos")
        services.psn.get_trophy_summary.return_value = TrophySummary(
            account_id="42",
            trophy_level=321,
            progress=40,
            tier=4,
            earned=TrophyCounts(bronze=10, silver=5, gold=2, platinum=1),
        )
        titles = [
            TrophyTitle(np_communication_id=f"NPWR{i}", title_name=f"Game {i}", progress=100 if i == 0 else 50)
            for i in range(4)
        ]
        services.psn.get_game_stats.return_value = GameStats.from_titles(titles)

        reply = await handlers.browse_player(services, self._invocation())

        services.psn.get_trophy_summary.assert_awaited_once_with("42")
        assert "Level 321 (40% to next), tier 4" in reply
        assert "18 trophies" in reply
        assert "Recent games: 4, 1 completed" in reply
        assert "• Game 2: 50%" in reply
        assert "Game 3" not in reply

    async def test_unknown_player(self, services: CommandServices) -> None:
        services.psn.find_player.return_value = None
        assert "was found" in await handlers.browse_player(services, self._invocation())
        services.psn.get_trophy_summary.assert_not_awaited()

    async def test_private_trophies(self, services: CommandServices) -> None:
        services.psn.find_player.return_value = PlayerSummary(account_id="42", online_id="Kratos")
        services.psn.get_trophy_summary.side_effect = PSNAuthError("forbidden")
        assert "not publicly accessible" in await handlers.browse_player(services, self._invocation())

    async def test_title_failure_still_shows_summary(self, services: CommandServices) -> None:
        services.psn.find_player.return_value = PlayerSummary(account_id="42", online_id="Kratos")
        services.psn.get_trophy_summary.return_value = TrophySummary(account_id="42", trophy_level=5)
        services.psn.get_game_stats.side_effect = PSNUnavailableError("down")

        reply = await handlers.browse_player(services, self._invocation())

        assert "Level 5" in reply
        assert "Recent games" not in reply

    async def test_lookup_failure(self, services: CommandServices) -> None:
        services.psn.find_player.side_effect = PSNUnavailableError("down")
        assert "lookup failed" in await handlers.browse_player(services, self._invocation())
