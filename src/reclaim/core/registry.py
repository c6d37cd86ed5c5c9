"""Central registry of storage sources."""

from __future__ import annotations

import logging
from typing import Iterator

from reclaim.models.source import StorageSource

log = logging.getLogger(__name__)

CATEGORIES = ("system", "development", "applications")


class SourceRegistry:
    """Stores and retrieves registered storage sources."""

    def __init__(self) -> None:
        self._sources: dict[str, StorageSource] = {}

    def register(self, source: StorageSource) -> None:
        """Register a source instance."""
        if source.id in self._sources:
            log.warning("Source '%s' already registered, skipping duplicate", source.id)
            return
        self._sources[source.id] = source
        log.debug("Registered source: %s (%s)", source.id, source.name)

    def get(self, source_id: str) -> StorageSource | None:
        return self._sources.get(source_id)

    def get_all(self) -> list[StorageSource]:
        """All sources, ordered by category then sort order."""
        return sorted(self._sources.values(), key=_display_key)

    def get_available(self) -> list[StorageSource]:
        """Sources that exist on this system."""
        available = []
        for source in self.get_all():
            try:
                if source.is_available():
                    available.append(source)
            except OSError:
                log.exception("Error checking availability for source '%s'", source.id)
        return available

    def __len__(self) -> int:
        return len(self._sources)

    def __iter__(self) -> Iterator[StorageSource]:
        return iter(self.get_all())

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._sources


def _display_key(source: StorageSource) -> tuple[int, int, str]:
    category = CATEGORIES.index(source.category) if source.category in CATEGORIES else len(CATEGORIES)
    return (category, source.sort_order, source.name)
