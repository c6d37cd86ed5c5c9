"""Reversible trash with a session-scoped undo journal.

Items are moved into the freedesktop.org trash (``$XDG_DATA_HOME/Trash``)
with a ``.trashinfo`` file recording the original path and deletion
date.  Every move is recorded in a :class:`TrashJournal`; an entry can
later be restored (undo) or deleted for good (commit), exactly once.
"""

from __future__ import annotations

import configparser
import dataclasses
import errno
import logging
import os
import shutil
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator
from urllib.parse import quote, unquote_to_bytes

from reclaim.models.results import TrashOutcome
from reclaim.models.trash_entry import TrashEntry, TrashState
from reclaim.models.tree import EntryKind
from reclaim.utils import bytes_to_human, path_size, xdg_data_home

log = logging.getLogger(__name__)

# Upper bound on the numeric suffix tried when names collide.
_MAX_SUFFIX = 10_000

_INFO_SECTION = "Trash Info"
_INFO_SUFFIX = ".trashinfo"


class TrashError(Exception):
    """Raised when a trash, undo or commit operation fails."""


class InvalidStateError(TrashError):
    """Raised when undo or commit is attempted on a finished entry."""


class RestoreConflictError(TrashError):
    """Raised when the original path of an entry is occupied again."""


class UnknownEntryError(TrashError):
    """Raised for an entry id the journal has never seen."""


def trash_name(name: str, counter: int) -> str:
    """Return the *counter*-th candidate trash name for *name*.

    ``a.txt`` becomes ``a.2.txt``, ``a.3.txt`` ...; names without an
    extension and dotfiles get the counter appended (``.bashrc.2``).
    """
    if counter <= 1:
        return name
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        return f"{name}.{counter}"
    return f"{stem}.{counter}.{ext}"


class TrashStore:
    """The on-disk trash directory (``files/`` plus ``info/``)."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or (xdg_data_home() / "Trash")

    @property
    def files_dir(self) -> Path:
        return self.root / "files"

    @property
    def info_dir(self) -> Path:
        return self.root / "info"

    def info_path(self, name: str) -> Path:
        return self.info_dir / f"{name}{_INFO_SUFFIX}"

    def contains(self, path: Path) -> bool:
        resolved = Path(os.path.realpath(path.parent)) / path.name
        root = Path(os.path.realpath(self.root))
        return resolved == root or root in resolved.parents

    def reserve(self, original: Path, deleted_at: datetime) -> str:
        """Claim a free trash name for *original* and write its metadata.

        The ``.trashinfo`` file is created with ``O_EXCL`` so two
        concurrent reservations can never end up with the same name.
        """
        self.files_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
        self.info_dir.mkdir(parents=True, exist_ok=True, mode=0o700)

        content = (
            f"[{_INFO_SECTION}]\n"
            f"Path={quote(os.fsencode(original))}\n"
            f"DeletionDate={deleted_at.astimezone().strftime('%Y-%m-%dT%H:%M:%S')}\n"
        )
        for counter in range(1, _MAX_SUFFIX + 1):
            name = trash_name(original.name, counter)
            if os.path.lexists(self.files_dir / name):
                continue
            try:
                fd = os.open(self.info_path(name), os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                continue
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
            except OSError:
                self.info_path(name).unlink(missing_ok=True)
                raise
            return name
        raise TrashError(f"{original}: no free name left in the trash")

    def release(self, name: str) -> None:
        """Drop the metadata for *name*."""
        self.info_path(name).unlink(missing_ok=True)

    def read_info(self, name: str) -> tuple[Path, datetime]:
        """Read back the original path and deletion date stored for *name*."""
        parser = configparser.ConfigParser(interpolation=None)
        parser.optionxform = str  # type: ignore[assignment]
        try:
            with open(self.info_path(name), encoding="utf-8") as f:
                parser.read_file(f)
            section = parser[_INFO_SECTION]
            original = Path(os.fsdecode(unquote_to_bytes(section["Path"])))
            deleted_at = datetime.fromisoformat(section["DeletionDate"])
        except (OSError, configparser.Error, KeyError, ValueError) as exc:
            raise TrashError(f"Unreadable trash metadata for {name}: {exc}") from exc
        return original, deleted_at


class TrashJournal:
    """Ordered record of everything trashed during this run.

    Most recent entry last.  Entries are never removed, only moved into
    a terminal state, so the full history of the run stays visible.
    Interfaces read it; only :class:`TrashManager` changes it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._order: list[str] = []
        self._entries: dict[str, TrashEntry] = {}

    def entries(self) -> list[TrashEntry]:
        with self._lock:
            return [self._entries[i] for i in self._order]

    def get(self, entry_id: str) -> TrashEntry:
        with self._lock:
            try:
                return self._entries[entry_id]
            except KeyError:
                raise UnknownEntryError(f"No trash entry with id {entry_id!r}") from None

    def pending(self) -> list[TrashEntry]:
        """Entries that can still be restored or committed."""
        return [e for e in self.entries() if e.state is TrashState.TRASHED]

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)

    def __iter__(self) -> Iterator[TrashEntry]:
        return iter(self.entries())

    def _append(self, entry: TrashEntry) -> None:
        with self._lock:
            self._order.append(entry.id)
            self._entries[entry.id] = entry

    def _transition(self, entry_id: str, state: TrashState) -> TrashEntry:
        with self._lock:
            current = self._entries[entry_id]
            if current.state is not TrashState.TRASHED:
                raise InvalidStateError(f"Entry {entry_id} is already {current.state.value}")
            updated = dataclasses.replace(current, state=state)
            self._entries[entry_id] = updated
            return updated


class TrashManager:
    """Moves home-owned paths to the trash and reverses or finalizes them."""

    def __init__(self, journal: TrashJournal | None = None, store: TrashStore | None = None) -> None:
        self.journal = journal if journal is not None else TrashJournal()
        self.store = store or TrashStore()
        self._op_lock = threading.Lock()

    def trash(self, paths: Iterable[Path | str]) -> list[TrashOutcome]:
        """Move each path to the trash, independently and in order.

        A failure on one path never blocks the rest; every path gets an
        outcome, and the journal receives entries in selection order.
        """
        outcomes: list[TrashOutcome] = []
        for raw in paths:
            path = Path(raw).absolute()
            try:
                entry = self._trash_one(path)
            except TrashError as exc:
                log.warning("Could not trash %s: %s", path, exc)
                outcomes.append(TrashOutcome(path=path, error=str(exc)))
                continue
            outcomes.append(TrashOutcome(path=path, entry=entry))
        return outcomes

    def _trash_one(self, path: Path) -> TrashEntry:
        if self.store.contains(path):
            raise TrashError(f"{path}: already in the trash")
        try:
            st = os.lstat(path)
            size = path_size(path)
        except FileNotFoundError:
            raise TrashError(f"{path}: no such file or directory") from None
        except OSError as e:
            raise TrashError(f"{path}: {e.strerror or e}") from e

        deleted_at = datetime.now(timezone.utc)
        with self._op_lock:
            try:
                name = self.store.reserve(path, deleted_at)
            except OSError as e:
                raise TrashError(f"{path}: cannot write trash metadata: {e.strerror or e}") from e
            destination = self.store.files_dir / name
            try:
                os.rename(path, destination)
            except OSError as e:
                self.store.release(name)
                if e.errno == errno.EXDEV:
                    raise TrashError(f"{path}: cannot move across filesystems into the trash") from e
                raise TrashError(f"{path}: {e.strerror or e}") from e

            entry = TrashEntry(
                id=uuid.uuid4().hex,
                original_path=path,
                trashed_path=destination,
                size_bytes=size,
                trashed_at=deleted_at,
                kind=EntryKind.from_mode(st.st_mode),
            )
            self.journal._append(entry)
        log.info("Trashed %s (%s) as %s", path, bytes_to_human(size), name)
        return entry

    def undo(self, entry_id: str) -> TrashEntry:
        """Move a trashed item back to where it came from.

        Raises:
            UnknownEntryError: If the id is not in the journal.
            InvalidStateError: If the entry was already restored or committed.
            RestoreConflictError: If something now occupies the original path.
            TrashError: If the move itself fails.
        """
        with self._op_lock:
            entry = self._require_trashed(entry_id)
            name = entry.trashed_path.name
            original = entry.original_path
            try:
                recorded, _ = self.store.read_info(name)
            except TrashError as exc:
                log.warning("%s; restoring to journal path %s", exc, original)
            else:
                if recorded != original:
                    log.warning("Trash metadata for %s points at %s, journal says %s", name, recorded, original)
                original = recorded

            if os.path.lexists(original):
                raise RestoreConflictError(f"{original}: path is occupied, cannot restore")
            if not os.path.lexists(entry.trashed_path):
                raise TrashError(f"{entry.trashed_path}: trashed copy is missing")

            try:
                original.parent.mkdir(parents=True, exist_ok=True)
                os.rename(entry.trashed_path, original)
            except OSError as e:
                raise TrashError(f"{original}: {e.strerror or e}") from e

            self.store.release(name)
            restored = self.journal._transition(entry_id, TrashState.RESTORED)
        log.info("Restored %s", original)
        return restored

    def commit(self, entry_id: str) -> TrashEntry:
        """Permanently delete a trashed item.

        Raises:
            UnknownEntryError: If the id is not in the journal.
            InvalidStateError: If the entry was already restored or committed.
            TrashError: If the trashed copy cannot be removed.
        """
        with self._op_lock:
            entry = self._require_trashed(entry_id)
            target = entry.trashed_path
            try:
                if target.is_dir() and not target.is_symlink():
                    shutil.rmtree(target)
                else:
                    target.unlink()
            except FileNotFoundError:
                log.warning("Trashed copy already gone: %s", target)
            except OSError as e:
                raise TrashError(f"{target}: {e.strerror or e}") from e

            self.store.release(target.name)
            deleted = self.journal._transition(entry_id, TrashState.PERMANENTLY_DELETED)
        log.info("Permanently deleted %s (%s)", entry.original_path, bytes_to_human(entry.size_bytes))
        return deleted

    def _require_trashed(self, entry_id: str) -> TrashEntry:
        entry = self.journal.get(entry_id)
        if entry.state is not TrashState.TRASHED:
            raise InvalidStateError(f"Entry {entry_id} is already {entry.state.value}")
        return entry
