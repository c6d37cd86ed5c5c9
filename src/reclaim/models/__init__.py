"""Reclaim data models."""

from reclaim.models.results import (
    CleanOutcome,
    DeleteOutcome,
    ElevatedDeleteResult,
    RemovalPlan,
    RemovalReport,
    TrashOutcome,
)
from reclaim.models.source import ActionSource, DirectorySource, SourceItem, SourceReport, StorageSource
from reclaim.models.trash_entry import TrashEntry, TrashState
from reclaim.models.tree import EntryKind, NodeUpdate, ScanError, ScanState, TreeNode

__all__ = [
    "ActionSource",
    "CleanOutcome",
    "DeleteOutcome",
    "DirectorySource",
    "ElevatedDeleteResult",
    "EntryKind",
    "NodeUpdate",
    "RemovalPlan",
    "RemovalReport",
    "ScanError",
    "ScanState",
    "SourceItem",
    "SourceReport",
    "StorageSource",
    "TrashEntry",
    "TrashOutcome",
    "TrashState",
    "TreeNode",
]
