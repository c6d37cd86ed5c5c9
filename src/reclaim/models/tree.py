"""Scan tree dataclasses."""

from __future__ import annotations

import dataclasses
import stat
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any


class EntryKind(str, Enum):
    """What kind of filesystem object a node represents."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    OTHER = "other"

    @classmethod
    def from_mode(cls, mode: int) -> EntryKind:
        if stat.S_ISLNK(mode):
            return cls.SYMLINK
        if stat.S_ISDIR(mode):
            return cls.DIRECTORY
        if stat.S_ISREG(mode):
            return cls.FILE
        return cls.OTHER


class ScanState(str, Enum):
    """Progress of a node through a scan."""

    UNSCANNED = "unscanned"
    SCANNING = "scanning"
    SCANNED = "scanned"
    FAILED = "failed"


@dataclass(slots=True)
class TreeNode:
    """One filesystem entry inside a scan session.

    ``children`` is ``None`` until the node has been expanded; once
    loaded it holds child ids sorted by size descending, then name.
    ``reason`` is only set when ``state`` is ``FAILED``.
    """

    id: int
    path: Path
    name: str
    kind: EntryKind
    size: int = 0
    state: ScanState = ScanState.UNSCANNED
    reason: str = ""
    parent_id: int | None = None
    children: list[int] | None = None

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIRECTORY

    @property
    def expanded(self) -> bool:
        return self.children is not None

    def snapshot(self) -> TreeNode:
        """Return a detached copy safe to hand to another thread."""
        children = list(self.children) if self.children is not None else None
        return dataclasses.replace(self, children=children)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "path": str(self.path),
            "name": self.name,
            "kind": self.kind.value,
            "size_bytes": self.size,
            "state": self.state.value,
            "reason": self.reason,
            "parent_id": self.parent_id,
            "expanded": self.expanded,
        }


def sort_key(node: TreeNode) -> tuple[int, str]:
    """Size descending, ties broken by name ascending."""
    return (-node.size, node.name)


@dataclass(slots=True, frozen=True)
class NodeUpdate:
    """Incremental change to one node, delivered over a session channel."""

    node_id: int
    parent_id: int | None
    path: Path
    size: int
    delta: int
    kind: EntryKind
    state: ScanState
    reason: str = ""


@dataclass(slots=True, frozen=True)
class ScanError:
    """A path that could not be read during a scan (non-fatal)."""

    path: Path
    reason: str

    def as_dict(self) -> dict[str, str]:
        return {"path": str(self.path), "reason": self.reason}
