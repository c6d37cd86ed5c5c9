"""Session trash journal entry."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from reclaim.models.tree import EntryKind


class TrashState(str, Enum):
    """Lifecycle of a trashed item. ``TRASHED`` is the only initial state."""

    TRASHED = "trashed"
    RESTORED = "restored"
    PERMANENTLY_DELETED = "permanently_deleted"


@dataclass(slots=True, frozen=True)
class TrashEntry:
    """One item moved into the trash during this run.

    Instances are immutable; state changes produce a new entry that
    replaces the old one inside the journal.
    """

    id: str
    original_path: Path
    trashed_path: Path
    size_bytes: int
    trashed_at: datetime
    kind: EntryKind
    state: TrashState = TrashState.TRASHED

    @property
    def name(self) -> str:
        return self.original_path.name

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "original_path": str(self.original_path),
            "trashed_path": str(self.trashed_path),
            "size_bytes": self.size_bytes,
            "trashed_at": self.trashed_at.isoformat(),
            "kind": self.kind.value,
            "state": self.state.value,
        }
