"""Base storage source interface."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from reclaim.models.results import CleanOutcome

log = logging.getLogger(__name__)


@dataclass(slots=True)
class SourceItem:
    """One measured path belonging to a source."""

    path: Path
    size_bytes: int
    file_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {"path": str(self.path), "size_bytes": self.size_bytes, "file_count": self.file_count}


@dataclass(slots=True)
class SourceReport:
    """Result of measuring a source."""

    source_id: str
    source_name: str
    items: list[SourceItem] = field(default_factory=list)
    total_bytes: int = 0
    summary: str = ""
    error: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_name": self.source_name,
            "total_bytes": self.total_bytes,
            "item_count": len(self.items),
            "summary": self.summary,
            "error": self.error,
            "items": [i.as_dict() for i in self.items],
        }


class StorageSource(ABC):
    """Base class for a categorized place where disk space accumulates.

    Sources measure.  Removing their items goes through the safety layer
    like any other selection, so home-owned items land in the session
    trash and protected items need elevation.  :class:`ActionSource`
    subclasses are the exception and reclaim space with their own tool.
    """

    @property
    @abstractmethod
    def id(self) -> str:
        """Unique identifier, e.g. 'pacman_cache'."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name, e.g. 'Pacman Package Cache'."""

    @property
    @abstractmethod
    def description(self) -> str:
        """What lives here and whether removing it is safe."""

    @property
    @abstractmethod
    def category(self) -> str:
        """Category: 'system', 'development' or 'applications'."""

    @property
    def requires_root(self) -> bool:
        """Whether removing this source's items needs elevated privileges."""
        return False

    @property
    def removable(self) -> bool:
        """Whether items may be offered for removal, or are shown for information only."""
        return True

    @property
    def sort_order(self) -> int:
        """Display order within category (lower = first). Default 50."""
        return 50

    @abstractmethod
    def paths(self) -> tuple[Path, ...]:
        """Directories this source measures."""

    @abstractmethod
    def measure(self) -> SourceReport:
        """Measure the source. MUST NOT delete anything."""

    @property
    def unavailable_reason(self) -> str | None:
        """Why this source does not exist on this system, or None if present."""
        if not any(p.is_dir() for p in self.paths()):
            return f"{self.name} not found"
        return None

    def is_available(self) -> bool:
        return self.unavailable_reason is None


class ActionSource(StorageSource, ABC):
    """Source cleaned by its own action instead of per-path removal.

    Package managers and daemons keep their own bookkeeping, so their
    space is reclaimed by asking the tool (``pacman -Rns``, ``docker
    system prune``).  Actions are permanent; the engine only runs them
    after an explicit confirmation.
    """

    @abstractmethod
    def clean(self, items: list[SourceItem]) -> CleanOutcome:
        """Reclaim the space of *items* from the last measurement."""


class DirectorySource(StorageSource, ABC):
    """Source whose items are the entries inside one or more directories.

    Subclasses define metadata and ``paths()``.  With ``_whole_dirs`` set,
    each directory is reported as a single item instead.
    """

    _whole_dirs: bool = False

    def measure(self) -> SourceReport:
        from reclaim.utils import dir_info

        items: list[SourceItem] = []
        for directory in self.paths():
            if not directory.is_dir():
                continue
            if self._whole_dirs:
                size, fcount = dir_info(directory)
                if size > 0:
                    items.append(SourceItem(path=directory, size_bytes=size, file_count=fcount))
                continue
            try:
                children = sorted(directory.iterdir())
            except OSError as e:
                log.debug("Cannot read %s: %s", directory, e)
                size, fcount = dir_info(directory)
                if size > 0:
                    items.append(SourceItem(path=directory, size_bytes=size, file_count=fcount))
                continue
            for child in children:
                try:
                    if child.is_dir() and not child.is_symlink():
                        size, fcount = dir_info(child)
                    else:
                        size, fcount = child.lstat().st_size, 1
                except OSError:
                    log.debug("Cannot access: %s", child)
                    continue
                if size > 0:
                    items.append(SourceItem(path=child, size_bytes=size, file_count=fcount))

        items.sort(key=lambda i: (-i.size_bytes, i.path.name))
        total = sum(i.size_bytes for i in items)
        return SourceReport(
            source_id=self.id,
            source_name=self.name,
            items=items,
            total_bytes=total,
            summary=f"Found {len(items)} items in {self.name} totaling {total} bytes",
        )
