"""Repository tests against a real SQLite database."""

from __future__ import annotations

from datetime import timedelta

from sqlalchemy import select

from tests.factories import T0, fresh_tokens, make_trophy
from trophybot.db.models import EPOCH, Trophy, User
from trophybot.tracking.repository import TrophyRepository


class TestUsers:
    async def test_link_creates_user_at_epoch(self, repository: TrophyRepository) -> None:
        await repository.link_user("1", "Aloy", "acct-1", fresh_tokens())
        user = await repository.get_user("1")

        assert user is not None
        assert user.psn_account_id == "acct-1"
        assert user.access_token == "access"
        assert user.last_trophy_check == EPOCH
        assert user.has_credentials is True

    async def test_relink_resets_watermark(self, repository: TrophyRepository, linked_user: User) -> None:
        await repository.link_user(linked_user.discord_id, "Kratos", "acct-100")
        assert await repository.get_watermark(linked_user.discord_id) == EPOCH

    async def test_lookup_by_username_is_case_insensitive(
        self, repository: TrophyRepository, linked_user: User
    ) -> None:
        found = await repository.get_user_by_psn_username("kratos")
        assert found is not None
        assert found.discord_id == linked_user.discord_id

    async def test_sync_candidates_need_account_and_notifications(self, repository: TrophyRepository) -> None:
        await repository.link_user("1", "Aloy", "acct-1")
        await repository.link_user("2", "Joel", None)
        await repository.link_user("3", "Ellie", "acct-3")
        await repository.set_notifications_enabled("3", False)

        candidates = await repository.list_sync_candidates()
        assert [u.discord_id for u in candidates] == ["1"]

    async def test_save_credentials(self, repository: TrophyRepository, linked_user: User) -> None:
        tokens = fresh_tokens(T0 + timedelta(days=2), access_token="rotated")
        await repository.save_credentials(linked_user.discord_id, tokens)

        user = await repository.get_user(linked_user.discord_id)
        assert user is not None
        assert user.access_token == "rotated"
        assert user.token_expires_at == tokens.expires_at

    async def test_unlink_removes_trophies_and_settings(
        self, repository: TrophyRepository, linked_user: User, session_factory
    ) -> None:
        await repository.insert_trophies(linked_user.discord_id, [make_trophy("1")])
        await repository.update_notification_settings(linked_user.discord_id, channel_id="555")

        assert await repository.unlink_user(linked_user.discord_id) is True
        assert await repository.get_user(linked_user.discord_id) is None
        assert await repository.get_notification_settings(linked_user.discord_id) is None
        async with session_factory() as db:
            remaining = (await db.execute(select(Trophy))).scalars().all()
        assert remaining == []
        assert await repository.unlink_user(linked_user.discord_id) is False


class TestWatermark:
    async def test_advance_never_moves_backwards(self, repository: TrophyRepository, linked_user: User) -> None:
        discord_id = linked_user.discord_id
        await repository.advance_watermark(discord_id, T0 + timedelta(hours=1))
        await repository.advance_watermark(discord_id, T0)
        assert await repository.get_watermark(discord_id) == T0 + timedelta(hours=1)

        await repository.advance_watermark(discord_id, T0 + timedelta(hours=2))
        assert await repository.get_watermark(discord_id) == T0 + timedelta(hours=2)

    async def test_unknown_user_has_no_watermark(self, repository: TrophyRepository) -> None:
        assert await repository.get_watermark("nobody") is None


class TestTrophies:
    async def test_insert_ignores_duplicates(self, repository: TrophyRepository, linked_user: User) -> None:
        first = await repository.insert_trophies(linked_user.discord_id, [make_trophy("1"), make_trophy("2")])
        second = await repository.insert_trophies(linked_user.discord_id, [make_trophy("2"), make_trophy("3")])

        assert [t.trophy_id for t in first] == ["1", "2"]
        assert [t.trophy_id for t in second] == ["3"]
        stats = await repository.get_trophy_stats(linked_user.discord_id)
        assert stats.total == 3

    async def test_same_trophy_id_in_different_games_is_distinct(
        self, repository: TrophyRepository, linked_user: User
    ) -> None:
        inserted = await repository.insert_trophies(
            linked_user.discord_id,
            [make_trophy("1", game_id="A"), make_trophy("1", game_id="B")],
        )
        assert len(inserted) == 2

    async def test_platinum_flag_and_notified_default(
        self, repository: TrophyRepository, linked_user: User, session_factory
    ) -> None:
        await repository.insert_trophies(linked_user.discord_id, [make_trophy("0", trophy_type="platinum")])
        async with session_factory() as db:
            row = (await db.execute(select(Trophy))).scalar_one()
        assert row.is_platinum is True
        assert row.notified is False
        assert row.earned_at == T0

    async def test_mark_notified(self, repository: TrophyRepository, linked_user: User, session_factory) -> None:
        trophies = [make_trophy("1"), make_trophy("2")]
        await repository.insert_trophies(linked_user.discord_id, trophies)

        assert await repository.mark_notified(linked_user.discord_id, trophies[:1]) == 1
        assert await repository.mark_notified(linked_user.discord_id, trophies[:1]) == 0

        async with session_factory() as db:
            rows = (await db.execute(select(Trophy).order_by(Trophy.trophy_id))).scalars().all()
        assert [r.notified for r in rows] == [True, False]

    async def test_recent_and_stats(self, repository: TrophyRepository, linked_user: User) -> None:
        await repository.insert_trophies(
            linked_user.discord_id,
            [
                make_trophy("0", game_id="A", trophy_type="platinum", earned_at=T0 + timedelta(hours=3)),
                make_trophy("1", game_id="A", trophy_type="gold", earned_at=T0 + timedelta(hours=1)),
                make_trophy("2", game_id="B", trophy_type="bronze", earned_at=T0 + timedelta(hours=2)),
            ],
        )

        recent = await repository.get_recent_trophies(linked_user.discord_id, limit=2)
        assert [t.trophy_id for t in recent] == ["0", "2"]

        stats = await repository.get_trophy_stats(linked_user.discord_id)
        assert (stats.total, stats.platinum, stats.gold, stats.silver, stats.bronze, stats.games) == (3, 1, 1, 0, 1, 2)

    async def test_tracking_totals(self, repository: TrophyRepository, linked_user: User) -> None:
        await repository.link_user("2", "Joel", None)
        await repository.link_user("3", "Ellie", "acct-3")
        await repository.set_notifications_enabled("3", False)
        await repository.insert_trophies(
            linked_user.discord_id,
            [make_trophy("0", game_id="A"), make_trophy("1", game_id="A"), make_trophy("2", game_id="B")],
        )
        await repository.insert_trophies("3", [make_trophy("0", game_id="A")])

        totals = await repository.get_tracking_totals()

        assert (totals.users, totals.linked, totals.tracked) == (3, 2, 1)
        assert (totals.trophies, totals.games) == (4, 2)

    async def test_tracking_totals_empty(self, repository: TrophyRepository) -> None:
        totals = await repository.get_tracking_totals()
        assert (totals.users, totals.linked, totals.tracked, totals.trophies, totals.games) == (0, 0, 0, 0, 0)


class TestNotificationSettings:
    async def test_defaults_on_first_update(self, repository: TrophyRepository, linked_user: User) -> None:
        settings = await repository.update_notification_settings(linked_user.discord_id, channel_id="555")
        assert settings.channel_id == "555"
        assert settings.trophy_notifications is True
        assert settings.platinum_notifications is True

    async def test_partial_update_and_clear(self, repository: TrophyRepository, linked_user: User) -> None:
        await repository.update_notification_settings(linked_user.discord_id, channel_id="555")
        await repository.update_notification_settings(linked_user.discord_id, platinum_notifications=False)

        stored = await repository.get_notification_settings(linked_user.discord_id)
        assert stored is not None
        assert stored.channel_id == "555"
        assert stored.platinum_notifications is False

        cleared = await repository.update_notification_settings(linked_user.discord_id, clear_channel=True)
        assert cleared.channel_id is None
