"""Tests for the session trash and its undo journal."""

from __future__ import annotations

import errno
import os
from datetime import datetime, timezone
from urllib.parse import quote

import pytest

from conftest import make_file
from reclaim.core.trash import (
    InvalidStateError,
    RestoreConflictError,
    TrashError,
    TrashJournal,
    TrashManager,
    TrashStore,
    UnknownEntryError,
    trash_name,
)
from reclaim.models.trash_entry import TrashState
from reclaim.models.tree import EntryKind


@pytest.fixture
def manager(fake_home):
    return TrashManager(TrashJournal(), TrashStore(fake_home / ".local" / "share" / "Trash"))


class TestTrashName:
    @pytest.mark.parametrize(
        ("name", "counter", "expected"),
        [
            ("a.txt", 1, "a.txt"),
            ("a.txt", 2, "a.2.txt"),
            ("archive.tar.gz", 3, "archive.tar.3.gz"),
            ("Makefile", 2, "Makefile.2"),
            (".bashrc", 2, ".bashrc.2"),
        ],
    )
    def test_suffixing(self, name, counter, expected):
        assert trash_name(name, counter) == expected


class TestTrashStore:
    def test_reserve_writes_info(self, fake_home):
        store = TrashStore(fake_home / "Trash")
        original = fake_home / "my file.txt"
        when = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)

        name = store.reserve(original, when)

        text = store.info_path(name).read_text(encoding="utf-8")
        assert text.startswith("[Trash Info]\n")
        assert f"Path={quote(str(original))}" in text
        assert store.read_info(name)[0] == original

    def test_reserve_skips_taken_names(self, fake_home):
        store = TrashStore(fake_home / "Trash")
        when = datetime.now(timezone.utc)
        first = store.reserve(fake_home / "a" / "report.pdf", when)
        second = store.reserve(fake_home / "b" / "report.pdf", when)
        assert (first, second) == ("report.pdf", "report.2.pdf")

    def test_release_frees_name(self, fake_home):
        store = TrashStore(fake_home / "Trash")
        when = datetime.now(timezone.utc)
        name = store.reserve(fake_home / "x", when)
        store.release(name)
        assert store.reserve(fake_home / "x", when) == name

    def test_unreadable_info(self, fake_home):
        store = TrashStore(fake_home / "Trash")
        store.info_dir.mkdir(parents=True)
        store.info_path("broken").write_text("garbage", encoding="utf-8")
        with pytest.raises(TrashError):
            store.read_info("broken")


class TestTrashAndUndo:
    def test_round_trip(self, manager, fake_home):
        target = make_file(fake_home / "docs" / "report.pdf", 2048)

        [outcome] = manager.trash([target])

        assert outcome.ok
        entry = outcome.entry
        assert not target.exists()
        assert entry.trashed_path.exists()
        assert entry.size_bytes == 2048
        assert entry.kind is EntryKind.FILE
        assert manager.store.info_path(entry.trashed_path.name).exists()

        restored = manager.undo(entry.id)

        assert target.exists()
        assert target.stat().st_size == 2048
        assert restored.state is TrashState.RESTORED
        assert not manager.store.info_path(entry.trashed_path.name).exists()

    def test_undo_then_commit_is_invalid(self, manager, fake_home):
        target = make_file(fake_home / "notes.txt", 10)
        [outcome] = manager.trash([target])

        manager.undo(outcome.entry.id)

        with pytest.raises(InvalidStateError):
            manager.commit(outcome.entry.id)
        assert target.exists()
        assert manager.journal.get(outcome.entry.id).state is TrashState.RESTORED

    def test_directory_round_trip(self, manager, fake_home):
        folder = fake_home / "project"
        make_file(folder / "a.bin", 100)
        make_file(folder / "nested" / "b.bin", 50)

        [outcome] = manager.trash([folder])
        assert outcome.entry.kind is EntryKind.DIRECTORY
        assert outcome.entry.size_bytes == 150

        manager.undo(outcome.entry.id)
        assert (folder / "nested" / "b.bin").exists()

    def test_undo_conflict_leaves_everything_in_place(self, manager, fake_home):
        target = make_file(fake_home / "a.txt", 10)
        [outcome] = manager.trash([target])
        make_file(target, 5)

        with pytest.raises(RestoreConflictError):
            manager.undo(outcome.entry.id)

        assert target.stat().st_size == 5
        assert outcome.entry.trashed_path.exists()
        assert manager.journal.get(outcome.entry.id).state is TrashState.TRASHED

    def test_undo_recreates_missing_parent(self, manager, fake_home):
        target = make_file(fake_home / "tmpdir" / "keep.txt", 10)
        [outcome] = manager.trash([target])
        os.rmdir(fake_home / "tmpdir")

        manager.undo(outcome.entry.id)
        assert target.exists()

    def test_same_name_twice_gets_distinct_slots(self, manager, fake_home):
        first = make_file(fake_home / "one" / "a.txt", 1)
        second = make_file(fake_home / "two" / "a.txt", 2)

        outcomes = manager.trash([first, second])

        names = [o.entry.trashed_path.name for o in outcomes]
        assert names == ["a.txt", "a.2.txt"]
        manager.undo(outcomes[1].entry.id)
        assert second.stat().st_size == 2
        assert not first.exists()

    def test_symlink_is_trashed_not_its_target(self, manager, fake_home):
        target = make_file(fake_home / "real.bin", 4096)
        link = fake_home / "link"
        link.symlink_to(target)

        [outcome] = manager.trash([link])

        assert outcome.entry.kind is EntryKind.SYMLINK
        assert target.exists()
        assert not os.path.lexists(link)


class TestCommit:
    def test_commit_removes_trashed_copy(self, manager, fake_home):
        target = make_file(fake_home / "big.iso", 4096)
        [outcome] = manager.trash([target])

        committed = manager.commit(outcome.entry.id)

        assert committed.state is TrashState.PERMANENTLY_DELETED
        assert not outcome.entry.trashed_path.exists()
        assert not manager.store.info_path(outcome.entry.trashed_path.name).exists()
        with pytest.raises(InvalidStateError):
            manager.undo(outcome.entry.id)

    def test_commit_directory(self, manager, fake_home):
        folder = fake_home / "build"
        make_file(folder / "out" / "x.o", 10)
        [outcome] = manager.trash([folder])
        manager.commit(outcome.entry.id)
        assert not outcome.entry.trashed_path.exists()

    def test_unknown_entry(self, manager):
        with pytest.raises(UnknownEntryError):
            manager.undo("nope")
        with pytest.raises(UnknownEntryError):
            manager.commit("nope")


class TestBatches:
    def test_failures_are_per_item(self, manager, fake_home):
        good = make_file(fake_home / "good.txt", 1)
        missing = fake_home / "missing.txt"
        also_good = make_file(fake_home / "also.txt", 1)

        outcomes = manager.trash([good, missing, also_good])

        assert [o.ok for o in outcomes] == [True, False, True]
        assert "no such file" in outcomes[1].error
        assert len(manager.journal) == 2

    def test_journal_keeps_selection_order(self, manager, fake_home):
        paths = [make_file(fake_home / name, 1) for name in ("c", "a", "b")]
        manager.trash(paths)
        assert [e.original_path for e in manager.journal] == paths

    def test_journal_records_every_transition_once(self, manager, fake_home):
        paths = [make_file(fake_home / name, 1) for name in ("x", "y", "z")]
        outcomes = manager.trash(paths)
        manager.undo(outcomes[0].entry.id)
        manager.commit(outcomes[1].entry.id)

        states = [e.state for e in manager.journal.entries()]
        assert states == [TrashState.RESTORED, TrashState.PERMANENTLY_DELETED, TrashState.TRASHED]
        assert [e.id for e in manager.journal.pending()] == [outcomes[2].entry.id]

    def test_item_inside_trash_is_refused(self, manager, fake_home):
        target = make_file(fake_home / "a.txt", 1)
        [outcome] = manager.trash([target])

        [again] = manager.trash([outcome.entry.trashed_path])

        assert not again.ok
        assert "already in the trash" in again.error

    def test_unusable_trash_directory_fails_each_item(self, manager, fake_home):
        first = make_file(fake_home / "a.txt", 1)
        second = make_file(fake_home / "b.txt", 1)
        manager.store.root.mkdir(parents=True)
        manager.store.info_dir.write_text("not a directory", encoding="utf-8")

        outcomes = manager.trash([first, second])

        assert [o.ok for o in outcomes] == [False, False]
        assert all("trash metadata" in o.error for o in outcomes)
        assert first.exists() and second.exists()
        assert len(manager.journal) == 0

    def test_failed_metadata_write_leaves_no_info_file(self, manager, fake_home, monkeypatch):
        target = make_file(fake_home / "a.txt", 1)
        real_fdopen = os.fdopen

        class FullDisk:
            def __init__(self, fd, *args, **kwargs):
                self._file = real_fdopen(fd, *args, **kwargs)

            def __enter__(self):
                return self

            def __exit__(self, *exc):
                self._file.close()

            def write(self, data):
                raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(os, "fdopen", FullDisk)
        [outcome] = manager.trash([target])

        assert not outcome.ok
        assert "No space left" in outcome.error
        assert target.exists()
        assert list(manager.store.info_dir.iterdir()) == []

    def test_undecodable_name_round_trip(self, manager, fake_home):
        odd = fake_home / os.fsdecode(b"caf\xe9.txt")
        odd.write_bytes(b"x")
        good = make_file(fake_home / "good.txt", 1)

        outcomes = manager.trash([odd, good])

        assert [o.ok for o in outcomes] == [True, True]
        info = manager.store.info_path(outcomes[0].entry.trashed_path.name).read_bytes()
        assert b"Path=" in info and b"%E9.txt" in info
        assert manager.store.read_info(outcomes[0].entry.trashed_path.name)[0] == odd

        manager.undo(outcomes[0].entry.id)
        assert odd.exists()
