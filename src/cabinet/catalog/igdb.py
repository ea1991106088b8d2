"""Game metadata via the IGDB API."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

import httpx

from cabinet.shared.enums import ScraperType
from cabinet.shared.exceptions import ScraperError
from cabinet.shared.models import GameDetail, GameSearchResult

logger = logging.getLogger(__name__)

# IGDB API docs: https://api-docs.igdb.com/
_TOKEN_URL = "https://id.twitch.tv/oauth2/token"
_API_URL = "https://api.igdb.com/v4"

# Refresh a little before Twitch says the token expires
_TOKEN_SLACK_SECONDS = 60

_SEARCH_FIELDS = "name, first_release_date, platforms.name, cover.url, summary"
_DETAIL_FIELDS = (
    "name, slug, summary, storyline, first_release_date, platforms.name, genres.name, "
    "involved_companies.company.name, involved_companies.developer, involved_companies.publisher, "
    "aggregated_rating, cover.url, screenshots.url"
)


class IgdbScraper:
    """Metadata scraper implementation using IGDB (Twitch client credentials).

    Implements the ``MetadataScraper`` protocol.
    """

    scraper_type = ScraperType.IGDB

    def __init__(self, client_id: str, client_secret: str, *, timeout: int = 15) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._token: str | None = None
        self._token_expiry = 0.0
        self._token_lock = asyncio.Lock()

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        async with self._token_lock:
            if self._token is not None and time.monotonic() < self._token_expiry:
                return self._token

            resp = await client.post(
                _TOKEN_URL,
                params={
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                    "grant_type": "client_credentials",
                },
            )
            if resp.status_code != 200:
                raise ScraperError(f"IGDB authentication failed: {resp.status_code} {resp.text[:200]}")
            data = resp.json()
            self._token = data["access_token"]
            self._token_expiry = time.monotonic() + max(int(data.get("expires_in", 0)) - _TOKEN_SLACK_SECONDS, 0)
            logger.info("IGDB token refreshed")
            return self._token

    async def _query(self, endpoint: str, body: str) -> list[dict[str, Any]]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                token = await self._access_token(client)
                resp = await client.post(
                    f"{_API_URL}/{endpoint}",
                    content=body,
                    headers={
                        "Client-ID": self._client_id,
                        "Authorization": f"Bearer {token}",
                        "Content-Type": "text/plain",
                    },
                )
                if resp.status_code == 401:
                    # Token revoked early; drop it so the next call re-authenticates
                    self._token = None
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            raise ScraperError(f"IGDB returned {exc.response.status_code}: {exc.response.text[:200]}") from exc
        except httpx.HTTPError as exc:
            raise ScraperError(f"IGDB request failed: {exc}") from exc
        except (KeyError, ValueError) as exc:
            raise ScraperError(f"IGDB returned an unexpected payload: {exc}") from exc

        if not isinstance(data, list):
            raise ScraperError("IGDB returned an unexpected payload")
        return data

    async def search(self, query: str, *, limit: int = 10) -> list[GameSearchResult]:
        escaped = query.replace("\\", "\\\\").replace('"', '\\"')
        body = f'search "{escaped}"; fields {_SEARCH_FIELDS}; limit {limit};'
        games = await self._query("games", body)
        logger.debug("IGDB search %r returned %d results", query, len(games))
        return [
            GameSearchResult(
                scraper_id=str(game["id"]),
                scraper_type=self.scraper_type,
                title=game.get("name", ""),
                release_date=_release_date(game.get("first_release_date")),
                platforms=tuple(p["name"] for p in game.get("platforms", []) if "name" in p),
                cover_url=_image_url(game.get("cover"), "t_cover_big"),
                summary=game.get("summary"),
            )
            for game in games
            if "id" in game
        ]

    async def get_game_detail(self, scraper_id: str) -> GameDetail:
        if not scraper_id.isdigit():
            raise ScraperError(f"invalid IGDB id: {scraper_id!r}")
        games = await self._query("games", f"fields {_DETAIL_FIELDS}; where id = {scraper_id};")
        if not games:
            raise ScraperError(f"IGDB game {scraper_id} not found")

        game = games[0]
        developers: list[str] = []
        publishers: list[str] = []
        for involved in game.get("involved_companies", []):
            name = (involved.get("company") or {}).get("name")
            if not name:
                continue
            if involved.get("developer"):
                developers.append(name)
            if involved.get("publisher"):
                publishers.append(name)

        logger.info("IGDB detail fetched for %s (%s)", scraper_id, game.get("name"))
        return GameDetail(
            scraper_id=str(game.get("id", scraper_id)),
            scraper_type=self.scraper_type,
            title=game.get("name", ""),
            slug=game.get("slug"),
            summary=game.get("summary"),
            storyline=game.get("storyline"),
            release_date=_release_date(game.get("first_release_date")),
            platforms=tuple(p["name"] for p in game.get("platforms", []) if "name" in p),
            genres=tuple(g["name"] for g in game.get("genres", []) if "name" in g),
            developers=tuple(developers),
            publishers=tuple(publishers),
            rating=game.get("aggregated_rating"),
            cover_url=_image_url(game.get("cover"), "t_cover_big"),
            screenshots=tuple(
                url for s in game.get("screenshots", []) if (url := _image_url(s, "t_screenshot_big")) is not None
            ),
        )


def _release_date(epoch: int | None) -> str | None:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def _image_url(image: dict[str, Any] | None, size: str) -> str | None:
    """IGDB hands out protocol-relative thumbnail urls; upgrade to ``size``."""
    if not image or not image.get("url"):
        return None
    url = str(image["url"]).replace("t_thumb", size)
    return f"https:{url}" if url.startswith("//") else url
