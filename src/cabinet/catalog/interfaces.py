"""Protocol interfaces for metadata sources."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from cabinet.shared.enums import ScraperType
from cabinet.shared.models import GameDetail, GameSearchResult


@runtime_checkable
class MetadataScraper(Protocol):
    """Protocol for looking up game metadata in an online catalog."""

    scraper_type: ScraperType

    async def search(self, query: str, *, limit: int = 10) -> list[GameSearchResult]:
        """Search the catalog by title.

        Raises:
            ScraperError: If the catalog request fails.
        """
        ...

    async def get_game_detail(self, scraper_id: str) -> GameDetail:
        """Fetch full metadata for one catalog entry.

        Raises:
            ScraperError: If the request fails or the entry does not exist.
        """
        ...
