"""Static scraper lookup built once at startup."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from types import MappingProxyType

from cabinet.catalog.interfaces import MetadataScraper
from cabinet.shared.enums import ScraperType
from cabinet.shared.exceptions import ConfigurationError


class ScraperRegistry:
    """Read-only mapping of scraper type to implementation."""

    def __init__(self, scrapers: Iterable[MetadataScraper] = ()) -> None:
        table: dict[ScraperType, MetadataScraper] = {}
        for scraper in scrapers:
            if scraper.scraper_type in table:
                raise ValueError(f"duplicate scraper for {scraper.scraper_type.value}")
            table[scraper.scraper_type] = scraper
        self._scrapers = MappingProxyType(table)

    def get(self, scraper_type: ScraperType | str) -> MetadataScraper:
        try:
            key = ScraperType(scraper_type)
            return self._scrapers[key]
        except (ValueError, KeyError):
            raise ConfigurationError(f"scraper {scraper_type!s} is not configured") from None

    def available(self) -> list[ScraperType]:
        return list(self._scrapers)

    def __contains__(self, scraper_type: object) -> bool:
        return scraper_type in self._scrapers

    def __iter__(self) -> Iterator[MetadataScraper]:
        return iter(self._scrapers.values())

    def __len__(self) -> int:
        return len(self._scrapers)
