"""PlayStation Network trophy API client.

Wraps the handful of PSN endpoints the bot needs:

1. NPSSO -> authorization code -> access/refresh tokens (account linking)
2. Refresh-token exchange (credential renewal)
3. Trophy titles + earned trophies per title (recent trophy feed)
4. Public lookups: player search, trophy summary, title list

Calls made without a user token fall back to the shared service token
(``psn_service_npsso``) when one is configured, and go out unauthenticated
otherwise.

Every failure surfaces as a ``PSNError`` subclass. Callers in the tracking
pipeline catch these and degrade; nothing here retries.
"""

from __future__ import annotations

import asyncio
import re
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import structlog

from trophybot.config import Settings
from trophybot.psn.schemas import (
    AccountProfile,
    AuthTokens,
    EarnedTrophy,
    GameStats,
    PlayerSummary,
    TrophyCounts,
    TrophySummary,
    TrophyTitle,
)

logger = structlog.get_logger()

PROFILE_URL = "https://us-prof.np.community.playstation.net/userProfile/v1/users/{online_id}/profile2"
AUTH_SCOPE = "psn:mobile.v2.core psn:clientapp"
NPSSO_PATTERN = re.compile(r"^[a-fA-F0-9]{64}$")
TOKEN_VALIDITY_MARGIN = timedelta(minutes=5)


class PSNError(Exception):
    """Base error for PSN API failures."""


class PSNAuthError(PSNError):
    """Credentials rejected (expired, revoked, or malformed)."""


class PSNRateLimitError(PSNError):
    """PSN answered 429."""


class PSNUnavailableError(PSNError):
    """Timeout, connection failure, or 5xx."""


TRANSIENT_ERRORS = (PSNRateLimitError, PSNUnavailableError)


def is_token_valid(
    access_token: str | None,
    expires_at: datetime | None,
    now: datetime | None = None,
    margin: timedelta = TOKEN_VALIDITY_MARGIN,
) -> bool:
    """True if the token exists and stays valid for longer than ``margin`` (five minutes by default)."""
    if not access_token or expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    return expires_at > now + margin


def is_valid_npsso(npsso: str | None) -> bool:
    """NPSSO tokens are 64 hex characters."""
    return bool(npsso) and NPSSO_PATTERN.match(npsso) is not None


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _counts(data: dict | None) -> TrophyCounts:
    data = data or {}
    return TrophyCounts(
        bronze=int(data.get("bronze", 0)),
        silver=int(data.get("silver", 0)),
        gold=int(data.get("gold", 0)),
        platinum=int(data.get("platinum", 0)),
    )


class PSNClient:
    """Async HTTP client for the PSN trophy API."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self.settings = settings
        self._http = http or httpx.AsyncClient(timeout=settings.psn_request_timeout_seconds)
        self._service_tokens: AuthTokens | None = None
        self._service_lock = asyncio.Lock()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)  # type: ignore[arg-type]
        except httpx.TimeoutException as exc:
            raise PSNUnavailableError(f"PSN request timed out: {url}") from exc
        except httpx.HTTPError as exc:
            raise PSNUnavailableError(f"PSN request failed: {exc}") from exc

        status = response.status_code
        if status in (401, 403):
            raise PSNAuthError(f"PSN rejected credentials ({status})")
        if status == 429:
            raise PSNRateLimitError("PSN rate limit hit")
        if status >= 500:
            raise PSNUnavailableError(f"PSN server error ({status})")
        if status >= 400:
            raise PSNError(f"PSN request failed ({status}): {response.text[:200]}")
        return response

    async def _auth_headers(self, access_token: str | None) -> dict[str, str]:
        token = access_token or await self.service_token()
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _get_json(self, url: str, access_token: str | None, params: dict | None = None) -> dict:
        response = await self._request(
            "GET",
            url,
            params=params,
            headers=await self._auth_headers(access_token),
        )
        return response.json()

    async def _post_json(self, url: str, access_token: str | None, body: dict) -> dict:
        response = await self._request("POST", url, json=body, headers=await self._auth_headers(access_token))
        return response.json()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def _token_request(self, form: dict[str, str]) -> AuthTokens:
        response = await self._request(
            "POST",
            f"{self.settings.psn_auth_url}/token",
            data=form,
            headers={
                "Authorization": f"Basic {self.settings.psn_client_auth}",
                "Content-Type": "application/x-www-form-urlencoded",
            },
        )
        return AuthTokens.from_token_response(response.json())

    async def authenticate_with_npsso(self, npsso: str) -> AuthTokens:
        """Exchange an NPSSO cookie for an access/refresh token pair."""
        if not is_valid_npsso(npsso):
            raise PSNAuthError("NPSSO token must be 64 hexadecimal characters")

        response = await self._request(
            "GET",
            f"{self.settings.psn_auth_url}/authorize",
            params={
                "access_type": "offline",
                "client_id": self.settings.psn_client_id,
                "redirect_uri": self.settings.psn_redirect_uri,
                "response_type": "code",
                "scope": AUTH_SCOPE,
            },
            headers={"Cookie": f"npsso={npsso}"},
            follow_redirects=False,
        )
        location = response.headers.get("location", "")
        code = parse_qs(urlparse(location).query).get("code")
        if not code:
            raise PSNAuthError("NPSSO exchange returned no authorization code")

        tokens = await self._token_request({
            "code": code[0],
            "redirect_uri": self.settings.psn_redirect_uri,
            "grant_type": "authorization_code",
            "token_format": "jwt",
        })
        logger.info("psn_npsso_authenticated")
        return tokens

    async def refresh_access_token(self, refresh_token: str) -> AuthTokens:
        """Exchange a refresh token for a new token pair."""
        tokens = await self._token_request({
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "token_format": "jwt",
            "scope": AUTH_SCOPE,
        })
        if tokens.refresh_token is None:
            tokens.refresh_token = refresh_token
        return tokens

    async def service_token(self) -> str | None:
        """Shared token for lookups made on nobody's behalf. ``None`` when unconfigured."""
        npsso = self.settings.psn_service_npsso
        if not npsso:
            return None

        async with self._service_lock:
            tokens = self._service_tokens
            if tokens is not None and is_token_valid(tokens.access_token, tokens.expires_at):
                return tokens.access_token
            if tokens is not None and tokens.refresh_token:
                try:
                    tokens = await self.refresh_access_token(tokens.refresh_token)
                except PSNAuthError:
                    tokens = await self.authenticate_with_npsso(npsso)
            else:
                tokens = await self.authenticate_with_npsso(npsso)
            self._service_tokens = tokens
            logger.info("psn_service_token_renewed", expires_at=tokens.expires_at.isoformat())
            return tokens.access_token

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    async def get_profile(self, access_token: str, online_id: str) -> AccountProfile:
        """Resolve a PSN online id to its account id."""
        data = await self._get_json(
            PROFILE_URL.format(online_id=online_id),
            access_token,
            params={"fields": "accountId,onlineId"},
        )
        profile = data.get("profile", data)
        return AccountProfile(account_id=str(profile["accountId"]), online_id=profile["onlineId"])

    # ------------------------------------------------------------------
    # Trophies
    # ------------------------------------------------------------------

    async def get_trophy_titles(
        self, access_token: str | None, account_id: str, limit: int = 100
    ) -> list[TrophyTitle]:
        """List the user's games, most recently updated first."""
        data = await self._get_json(
            f"{self.settings.psn_base_url}/trophy/v1/users/{account_id}/trophyTitles",
            access_token,
            params={"limit": limit, "offset": 0},
        )
        return [
            TrophyTitle(
                np_communication_id=t["npCommunicationId"],
                title_name=t.get("trophyTitleName") or "Unknown Game",
                icon_url=t.get("trophyTitleIconUrl") or "",
                np_service_name=t.get("npServiceName") or "trophy",
                last_updated=_parse_datetime(t.get("lastUpdatedDateTime")),
                progress=int(t.get("progress") or 0),
                earned=_counts(t.get("earnedTrophies")),
            )
            for t in data.get("trophyTitles", [])
        ]

    async def get_earned_trophies_for_title(
        self, access_token: str | None, account_id: str, title: TrophyTitle
    ) -> list[EarnedTrophy]:
        """Earned trophies for one title, joined with the title's trophy metadata."""
        params = {"npServiceName": title.np_service_name}
        earned_data, meta_data = await asyncio.gather(
            self._get_json(
                f"{self.settings.psn_base_url}/trophy/v1/users/{account_id}"
                f"/npCommunicationIds/{title.np_communication_id}/trophyGroups/all/trophies",
                access_token,
                params=params,
            ),
            self._get_json(
                f"{self.settings.psn_base_url}/trophy/v1"
                f"/npCommunicationIds/{title.np_communication_id}/trophyGroups/all/trophies",
                access_token,
                params=params,
            ),
        )
        meta = {str(t["trophyId"]): t for t in meta_data.get("trophies", [])}

        trophies: list[EarnedTrophy] = []
        for entry in earned_data.get("trophies", []):
            earned_at = _parse_datetime(entry.get("earnedDateTime"))
            if not entry.get("earned") or earned_at is None:
                continue
            trophy_id = str(entry["trophyId"])
            info = meta.get(trophy_id, {})
            rate = entry.get("trophyEarnedRate")
            trophies.append(EarnedTrophy(
                trophy_id=trophy_id,
                trophy_name=info.get("trophyName") or "Unknown Trophy",
                trophy_detail=info.get("trophyDetail") or "",
                trophy_type=entry.get("trophyType") or info.get("trophyType") or "bronze",
                trophy_icon_url=info.get("trophyIconUrl") or "",
                game_id=title.np_communication_id,
                game_title=title.title_name,
                game_icon_url=title.icon_url,
                earned_at=earned_at,
                earned_rate=float(rate) if rate is not None else None,
            ))
        return trophies

    async def fetch_recent_trophies(
        self, access_token: str | None, account_id: str, limit: int = 50
    ) -> list[EarnedTrophy]:
        """Most recently earned trophies across the user's recent titles, newest first.

        Without ``access_token`` only publicly visible trophy lists can be read.
        """
        titles = await self.get_trophy_titles(access_token, account_id, limit=limit)

        recent: list[EarnedTrophy] = []
        for title in titles[: self.settings.psn_recent_titles]:
            try:
                recent.extend(await self.get_earned_trophies_for_title(access_token, account_id, title))
            except PSNAuthError:
                raise
            except PSNError as exc:
                logger.warning(
                    "psn_title_trophies_failed",
                    game_id=title.np_communication_id,
                    error=str(exc),
                )

        recent.sort(key=lambda t: t.earned_at, reverse=True)
        return recent[:limit]

    # ------------------------------------------------------------------
    # Public player lookups
    # ------------------------------------------------------------------

    async def search_players(self, query: str, limit: int = 10) -> list[PlayerSummary]:
        """Search the public player directory by online id."""
        data = await self._post_json(
            f"{self.settings.psn_base_url}/search/v1/universalSearch",
            None,
            {"searchTerm": query, "domainRequests": [{"domain": "SocialAllAccounts"}]},
        )
        players: list[PlayerSummary] = []
        for domain in data.get("domainResponses", []):
            for result in domain.get("results", []):
                meta = result.get("socialMetadata") or {}
                if not meta.get("accountId") or not meta.get("onlineId"):
                    continue
                players.append(PlayerSummary(
                    account_id=str(meta["accountId"]),
                    online_id=meta["onlineId"],
                    avatar_url=meta.get("avatarUrl") or None,
                ))
        return players[:limit]

    async def find_player(self, online_id: str) -> PlayerSummary | None:
        """Exact, case-insensitive online id match."""
        wanted = online_id.lower()
        for player in await self.search_players(online_id, limit=50):
            if player.online_id.lower() == wanted:
                return player
        return None

    async def get_trophy_summary(self, account_id: str) -> TrophySummary:
        data = await self._get_json(
            f"{self.settings.psn_base_url}/trophy/v1/users/{account_id}/trophySummary",
            None,
        )
        tier = data.get("tier")
        return TrophySummary(
            account_id=str(data.get("accountId", account_id)),
            trophy_level=int(data.get("trophyLevel") or 0),
            progress=int(data.get("progress") or 0),
            tier=int(tier) if tier is not None else None,
            earned=_counts(data.get("earnedTrophies")),
            last_updated=_parse_datetime(data.get("lastUpdatedDateTime")),
        )

    async def get_game_stats(self, account_id: str, limit: int = 50) -> GameStats:
        """Completion statistics over the player's ``limit`` most recent titles."""
        titles = await self.get_trophy_titles(None, account_id, limit=limit)
        return GameStats.from_titles(titles)
