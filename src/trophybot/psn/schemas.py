"""Pydantic models for data returned by the PSN trophy API."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field


class AuthTokens(BaseModel):
    """Access/refresh token pair issued by the PSN OAuth endpoint."""

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime

    @classmethod
    def from_token_response(cls, data: dict, now: datetime | None = None) -> AuthTokens:
        issued = now or datetime.now(timezone.utc)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=issued + timedelta(seconds=int(data.get("expires_in", 0))),
        )


class TrophyCounts(BaseModel):
    bronze: int = 0
    silver: int = 0
    gold: int = 0
    platinum: int = 0

    @property
    def total(self) -> int:
        return self.bronze + self.silver + self.gold + self.platinum


class TrophyTitle(BaseModel):
    """A game in the user's trophy list."""

    np_communication_id: str
    title_name: str
    icon_url: str = ""
    np_service_name: str = "trophy"
    last_updated: datetime | None = None
    progress: int = Field(default=0, description="Completion percentage")
    earned: TrophyCounts = Field(default_factory=TrophyCounts)


class EarnedTrophy(BaseModel):
    """One trophy the user has earned, joined with its title metadata."""

    trophy_id: str
    trophy_name: str = "Unknown Trophy"
    trophy_detail: str = ""
    trophy_type: str
    trophy_icon_url: str = ""
    game_id: str
    game_title: str = "Unknown Game"
    game_icon_url: str = ""
    earned_at: datetime
    earned_rate: float | None = Field(default=None, description="Percent of players holding it")

    @property
    def is_platinum(self) -> bool:
        return self.trophy_type == "platinum"


class AccountProfile(BaseModel):
    """Minimal profile used while linking."""

    account_id: str
    online_id: str


class PlayerSummary(BaseModel):
    """A search hit from the public player directory."""

    account_id: str
    online_id: str
    avatar_url: str | None = None


class TrophySummary(BaseModel):
    """Account-wide trophy level and counts."""

    account_id: str
    trophy_level: int = 0
    progress: int = 0
    tier: int | None = None
    earned: TrophyCounts = Field(default_factory=TrophyCounts)
    last_updated: datetime | None = None


class GameStats(BaseModel):
    """Aggregates over a player's most recent titles."""

    total_games: int = 0
    completed_games: int = 0
    games_with_platinum: int = 0
    average_completion: int = 0
    recent_games: list[TrophyTitle] = Field(default_factory=list)

    @classmethod
    def from_titles(cls, titles: list[TrophyTitle], recent: int = 5) -> GameStats:
        if not titles:
            return cls()
        return cls(
            total_games=len(titles),
            completed_games=sum(1 for t in titles if t.progress >= 100),
            games_with_platinum=sum(1 for t in titles if t.earned.platinum > 0),
            average_completion=round(sum(t.progress for t in titles) / len(titles)),
            recent_games=titles[:recent],
        )
