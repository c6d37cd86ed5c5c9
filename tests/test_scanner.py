"""Tests for the incremental scan engine."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from conftest import make_file
from reclaim.core.scanner import (
    CANCELLED,
    InvalidRootError,
    NodeBusyError,
    ScanEngine,
    ScanOptions,
    ScanSession,
    _Walker,
)
from reclaim.models.tree import EntryKind, ScanState, TreeNode

MB = 1024 * 1024


def _names(nodes: list[TreeNode]) -> list[str]:
    return [n.name for n in nodes]


def _assert_aggregates(session: ScanSession, node_id: int) -> None:
    """Every expanded directory weighs exactly the sum of its children."""
    node = session.node(node_id)
    if node.children is None:
        return
    children = session.children(node_id)
    assert node.size == sum(c.size for c in children), node.path
    for child in children:
        _assert_aggregates(session, child.id)


@pytest.fixture
def workdir(tmp_path):
    """The temp directory with symlinks resolved, as scan paths are."""
    return Path(os.path.realpath(tmp_path))


@pytest.fixture
def scanner():
    return ScanEngine(ScanOptions(step_budget=2))


@pytest.fixture
def tree(workdir):
    root = workdir / "root"
    make_file(root / "ten.bin", 10 * MB)
    make_file(root / "thirty.bin", 30 * MB)
    make_file(root / "sub" / "two.bin", 2 * MB)
    make_file(root / "sub" / "deeper" / "three.bin", 3 * MB)
    return root


class TestScan:
    def test_sizes_and_order(self, scanner, tree):
        session = scanner.scan(tree, background=False)

        root = session.root
        assert root.state is ScanState.SCANNED
        assert root.size == 45 * MB
        children = session.children(root.id)
        assert _names(children) == ["thirty.bin", "ten.bin", "sub"]
        assert [c.size for c in children] == [30 * MB, 10 * MB, 5 * MB]

    def test_background_scan(self, scanner, tree):
        session = scanner.scan(tree)
        assert session.wait(timeout=10)
        assert session.root.size == 45 * MB

    def test_ties_break_by_name(self, scanner, workdir):
        for name in ("b", "a", "c"):
            make_file(workdir / name, 100)
        session = scanner.scan(workdir, background=False)
        assert _names(session.children(session.root_id)) == ["a", "b", "c"]

    def test_ordering_is_stable_across_reads(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        first = _names(session.children(session.root_id))
        assert _names(session.children(session.root_id)) == first

    def test_empty_directory(self, scanner, workdir):
        session = scanner.scan(workdir, background=False)
        assert session.root.size == 0
        assert session.children(session.root_id) == []

    def test_directory_inode_size_not_counted(self, scanner, workdir):
        for i in range(5):
            (workdir / f"empty{i}").mkdir()
        session = scanner.scan(workdir, background=False)
        assert session.root.size == 0

    def test_symlinks_are_not_followed(self, scanner, workdir):
        target = workdir / "target"
        make_file(target / "big.bin", 8 * MB)
        root = workdir / "root"
        root.mkdir()
        (root / "link").symlink_to(target)

        session = scanner.scan(root, background=False)
        [link] = session.children(session.root_id)
        assert link.kind is EntryKind.SYMLINK
        assert link.size == os.lstat(root / "link").st_size
        assert session.root.size == link.size

    def test_invalid_root(self, scanner, workdir):
        with pytest.raises(InvalidRootError):
            scanner.scan(workdir / "missing")
        make_file(workdir / "file", 1)
        with pytest.raises(InvalidRootError):
            scanner.scan(workdir / "file")

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores permissions")
    def test_unreadable_directory_is_reported(self, scanner, workdir):
        make_file(workdir / "ok.bin", 100)
        locked = workdir / "locked"
        make_file(locked / "secret.bin", 100)
        locked.chmod(0)
        try:
            session = scanner.scan(workdir, background=False)
        finally:
            locked.chmod(0o755)

        assert session.root.state is ScanState.SCANNED
        assert session.root.size == 100
        node = session.find(locked)
        assert node.state is ScanState.FAILED
        assert node.reason == "permission denied"
        assert any(e.path == locked for e in session.errors)

    def test_aggregate_invariant_after_expanding(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        sub = session.find(tree / "sub")
        session.expand(sub.id)
        session.expand(session.find(tree / "sub" / "deeper").id)
        _assert_aggregates(session, session.root_id)

    def test_expanding_root_before_walk_starts(self, tree):
        session = ScanSession(tree, options=ScanOptions(step_budget=2))
        assert session.expand(session.root_id) == []

        session.run()

        assert session.root.size == 45 * MB
        assert _names(session.children(session.root_id)) == ["thirty.bin", "ten.bin", "sub"]
        _assert_aggregates(session, session.root_id)

    def test_mount_points_skipped_by_default(self, tree):
        session = ScanSession(tree)
        session._device = -1
        session.run()

        sub = session.find(tree / "sub")
        assert sub.state is ScanState.SCANNED
        assert sub.size == 0
        assert session.root.size == 40 * MB

    def test_mount_points_crossed_when_enabled(self, tree):
        session = ScanSession(tree, options=ScanOptions(cross_filesystem_boundaries=True))
        session._device = -1
        session.run()

        assert session.find(tree / "sub").size == 5 * MB
        assert session.root.size == 45 * MB

    @pytest.mark.parametrize(("cross", "expected"), [(False, 2 * MB), (True, 5 * MB)])
    def test_walk_stops_at_nested_mounts(self, tree, cross, expected):
        walker = _Walker(str(tree / "sub"), -1, cross, lambda path, reason: None)
        assert walker.run() == expected


class TestExpand:
    def test_children_come_from_scan_totals(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        sub = session.find(tree / "sub")
        assert sub.children is None

        children = session.expand(sub.id)
        assert _names(children) == ["deeper", "two.bin"]
        assert [c.size for c in children] == [3 * MB, 2 * MB]
        assert all(c.state is ScanState.SCANNED for c in children)

    def test_expand_twice_returns_same_nodes(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        sub = session.find(tree / "sub")
        first = session.expand(sub.id)
        assert [c.id for c in session.expand(sub.id)] == [c.id for c in first]

    def test_expand_file_returns_nothing(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        assert session.expand(session.find(tree / "ten.bin").id) == []

    def test_expand_reconciles_changes_since_scan(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        make_file(tree / "sub" / "late.bin", 1 * MB)

        session.expand(session.find(tree / "sub").id)
        assert session.find(tree / "sub").size == 6 * MB
        assert session.root.size == 46 * MB


class TestRescan:
    def test_rescan_after_removal(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        old = session.find(tree / "sub")
        (tree / "sub" / "two.bin").unlink()

        fresh = session.rescan(old.id)

        assert fresh.id != old.id
        assert fresh.size == 3 * MB
        assert session.root.size == 43 * MB
        assert _names(session.children(session.root_id)) == ["thirty.bin", "ten.bin", "sub"]
        with pytest.raises(KeyError):
            session.node(old.id)

    def test_rescan_of_vanished_path(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        node = session.find(tree / "ten.bin")
        (tree / "ten.bin").unlink()

        assert session.rescan(node.id) is None
        assert session.root.size == 35 * MB
        assert session.find(tree / "ten.bin") is None

    def test_rescan_reorders_parent(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        make_file(tree / "sub" / "huge.bin", 50 * MB)
        session.rescan(session.find(tree / "sub").id)
        assert _names(session.children(session.root_id))[0] == "sub"
        _assert_aggregates(session, session.root_id)

    def test_rescan_root_is_rejected(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        with pytest.raises(ValueError):
            session.rescan(session.root_id)

    def test_track_restored_path(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        make_file(tree / "restored.bin", 4 * MB)

        node = session.track(tree / "restored.bin")

        assert node is not None
        assert session.root.size == 49 * MB
        assert "restored.bin" in _names(session.children(session.root_id))

    def test_track_under_unexpanded_parent_is_ignored(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        make_file(tree / "sub" / "new.bin", 1)
        assert session.track(tree / "sub" / "new.bin") is None
        assert session.root.size == 45 * MB

    def test_track_waits_for_root_listing(self, tree):
        session = ScanSession(tree)
        make_file(tree / "restored.bin", 1)
        with pytest.raises(NodeBusyError):
            session.track(tree / "restored.bin")


class TestCancellation:
    def test_new_scan_cancels_previous_in_scope(self, scanner, tree, workdir):
        first = scanner.scan(tree, scope="left", background=False)
        other = scanner.scan(tree, scope="right", background=False)
        second = scanner.scan(tree, scope="left", background=False)

        assert first.cancelled
        assert not other.cancelled
        assert scanner.get(first.id) is None
        assert scanner.active("left") is second
        assert scanner.active("right") is other

    def test_cancel_keeps_finished_siblings(self, workdir):
        root = workdir / "root"
        big = root / "a_big"
        for i in range(20):
            make_file(big / f"d{i:02d}" / "payload.bin", 1000)
        make_file(root / "b_small" / "one.bin", 700)
        make_file(root / "b_small" / "two.bin", 300)
        make_file(root / "c_later" / "file.bin", 5)

        small = root / "b_small"

        def cancel_when_small_done(session, update):
            if update.path == small and update.state is ScanState.SCANNED:
                session.cancel()

        engine = ScanEngine(ScanOptions(step_budget=1))
        session = engine.scan(root, on_update=cancel_when_small_done, background=False)

        assert session.cancelled
        assert session.root.state is ScanState.FAILED
        assert session.root.reason == CANCELLED

        finished = session.find(small)
        assert finished.state is ScanState.SCANNED
        assert finished.size == 1000

        in_flight = session.find(big)
        assert in_flight.state is ScanState.FAILED
        assert in_flight.reason == CANCELLED
        assert in_flight.size < 20 * 1000

        assert session.find(root / "c_later").state is ScanState.UNSCANNED

    def test_cancelled_branch_can_be_expanded(self, workdir):
        root = workdir / "root"
        for i in range(5):
            make_file(root / "big" / f"d{i}" / "f.bin", 10)
        make_file(root / "small" / "f.bin", 1)

        def cancel_early(session, update):
            if update.path == root / "small" and update.state is ScanState.SCANNED:
                session.cancel()

        session = ScanEngine(ScanOptions(step_budget=1)).scan(root, on_update=cancel_early, background=False)
        big = session.find(root / "big")
        children = session.expand(big.id)

        assert sum(c.size for c in children) == 50
        assert session.find(root / "big").state is ScanState.SCANNED
        assert session.find(root / "big").size == 50

    def test_unstarted_branch_becomes_scanned_when_expanded(self, workdir):
        root = workdir / "root"
        for i in range(5):
            make_file(root / "a_big" / f"d{i}" / "f.bin", 10)
        make_file(root / "b_small" / "f.bin", 1)
        make_file(root / "c_later" / "f.bin", 7)

        def cancel_early(session, update):
            if update.path == root / "b_small" and update.state is ScanState.SCANNED:
                session.cancel()

        session = ScanEngine(ScanOptions(step_budget=1)).scan(root, on_update=cancel_early, background=False)
        later = session.find(root / "c_later")
        assert later.state is ScanState.UNSCANNED

        session.expand(later.id)

        later = session.find(root / "c_later")
        assert later.state is ScanState.SCANNED
        assert later.size == 7

    def test_discard_forgets_session(self, scanner, tree):
        session = scanner.scan(tree, scope="left", background=False)

        scanner.discard(session)

        assert session.cancelled
        assert scanner.get(session.id) is None
        assert scanner.active("left") is None
        assert session not in scanner.sessions()


class TestUpdates:
    def test_child_update_precedes_parent(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        updates = list(session.updates())
        assert updates

        for i, update in enumerate(updates):
            if update.delta and update.parent_id is not None:
                parent_update = updates[i + 1]
                assert parent_update.node_id == update.parent_id
                assert parent_update.delta == update.delta

    def test_final_update_is_root_scanned(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        updates = list(session.updates())
        assert updates[-1].node_id == session.root_id
        assert updates[-1].state is ScanState.SCANNED
        assert updates[-1].size == 45 * MB

    def test_drained_queue_is_empty(self, scanner, tree):
        session = scanner.scan(tree, background=False)
        list(session.updates())
        assert session.next_update(timeout=0.01) is None

    def test_unpublished_session_queues_nothing(self, scanner, tree):
        seen = []
        session = scanner.scan(tree, background=False, publish=False, on_update=lambda s, u: seen.append(u))

        assert session.next_update(timeout=0.01) is None
        assert seen[-1].node_id == session.root_id
        assert seen[-1].state is ScanState.SCANNED


class TestOptions:
    def test_from_settings(self, fake_home):
        from reclaim.settings import Settings

        settings = Settings()
        settings.set("scan.step_budget", 0)
        settings.set("scan.cross_filesystem_boundaries", True)
        options = ScanOptions.from_settings(settings)
        assert options.step_budget == 1
        assert options.cross_filesystem_boundaries is True
