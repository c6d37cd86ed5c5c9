"""Outcome dataclasses for removal operations."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from reclaim.models.trash_entry import TrashEntry


@dataclass(slots=True)
class TrashOutcome:
    """Result of moving one path to the trash."""

    path: Path
    entry: TrashEntry | None = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.entry is not None

    def as_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "ok": self.ok,
            "entry": self.entry.as_dict() if self.entry else None,
            "error": self.error,
        }


@dataclass(slots=True)
class DeleteOutcome:
    """Result of permanently deleting one protected path."""

    path: Path
    deleted: bool = False
    freed_bytes: int = 0
    error: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "deleted": self.deleted,
            "freed_bytes": self.freed_bytes,
            "error": self.error,
        }


@dataclass(slots=True)
class ElevatedDeleteResult:
    """Result of one elevated batch.

    ``error`` is set when the batch as a whole failed (authentication
    dismissed, gateway unavailable, no confirmation); in that case no
    outcome reports ``deleted``.
    """

    outcomes: list[DeleteOutcome] = field(default_factory=list)
    error: str = ""

    @property
    def freed_bytes(self) -> int:
        return sum(o.freed_bytes for o in self.outcomes if o.deleted)

    @property
    def deleted(self) -> list[DeleteOutcome]:
        return [o for o in self.outcomes if o.deleted]

    def as_dict(self) -> dict[str, Any]:
        return {
            "outcomes": [o.as_dict() for o in self.outcomes],
            "error": self.error,
            "freed_bytes": self.freed_bytes,
        }


@dataclass(slots=True)
class RemovalPlan:
    """A selection partitioned by how each path may be removed."""

    home_owned: list[Path] = field(default_factory=list)
    protected: list[Path] = field(default_factory=list)
    refused: list[Path] = field(default_factory=list)


@dataclass(slots=True)
class RemovalReport:
    """Everything that happened for one user removal request."""

    trashed: list[TrashOutcome] = field(default_factory=list)
    elevated: ElevatedDeleteResult | None = None
    refused: list[DeleteOutcome] = field(default_factory=list)

    @property
    def errors(self) -> list[str]:
        errors = [o.error for o in self.trashed if o.error]
        if self.elevated is not None:
            if self.elevated.error:
                errors.append(self.elevated.error)
            errors.extend(o.error for o in self.elevated.outcomes if o.error)
        errors.extend(o.error for o in self.refused)
        return errors

    def as_dict(self) -> dict[str, Any]:
        return {
            "trashed": [o.as_dict() for o in self.trashed],
            "elevated": self.elevated.as_dict() if self.elevated else None,
            "refused": [o.as_dict() for o in self.refused],
            "errors": self.errors,
        }


@dataclass(slots=True)
class CleanOutcome:
    """Result of running one source's own cleaning action."""

    source_id: str
    freed_bytes: int = 0
    items_removed: int = 0
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error

    def as_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "ok": self.ok,
            "freed_bytes": self.freed_bytes,
            "items_removed": self.items_removed,
            "error": self.error,
        }
