"""Incremental, cancellable directory-size scanning.

A scan materializes the root and its immediate children as
:class:`~reclaim.models.tree.TreeNode` objects and measures every child
directory on a background thread.  Child directories are walked
round-robin, a few directories per turn, so every sibling gets a size
estimate early instead of one deep branch finishing first.  Deeper
levels are only materialized on :meth:`ScanSession.expand`, reusing the
per-directory totals gathered by the walk.

Progress is published on a per-session queue.  A child's update is
always queued before the parent update that includes its delta.
"""

from __future__ import annotations

import itertools
import logging
import os
import queue
import stat
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

from reclaim.models.tree import EntryKind, NodeUpdate, ScanError, ScanState, TreeNode, sort_key

log = logging.getLogger(__name__)

UpdateCallback = Callable[["ScanSession", NodeUpdate], None]

CANCELLED = "cancelled"


class InvalidRootError(Exception):
    """Raised when a scan is requested for a path that is not a readable directory."""


class NodeBusyError(Exception):
    """Raised when expanding or rescanning a node the worker is still measuring."""


@dataclass(slots=True)
class ScanOptions:
    """Tunables for a scan session."""

    cross_filesystem_boundaries: bool = False
    step_budget: int = 64

    @classmethod
    def from_settings(cls, settings: Any) -> ScanOptions:
        return cls(
            cross_filesystem_boundaries=bool(settings.get("scan.cross_filesystem_boundaries", False)),
            step_budget=max(1, int(settings.get("scan.step_budget", 64))),
        )


class CancelToken:
    """Cooperative cancellation flag shared with the worker."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _describe(exc: OSError) -> str:
    if isinstance(exc, PermissionError):
        return "permission denied"
    if isinstance(exc, FileNotFoundError):
        return "vanished during scan"
    return exc.strerror or str(exc)


class _Walker:
    """Iterative walk of one directory subtree, one directory per step.

    Tracks the aggregate size of every directory it lists so that later
    expansions need not walk the same subtree again.
    """

    def __init__(
        self,
        root: str,
        device: int,
        cross_devices: bool,
        on_error: Callable[[str, str], None],
    ) -> None:
        self.root = root
        self.device = device
        self.cross_devices = cross_devices
        self.on_error = on_error
        self.stack: list[str] = [root]
        self.parent_of: dict[str, str] = {}
        self.totals: dict[str, int] = {}
        self.root_error = ""
        self.started = False

    @property
    def done(self) -> bool:
        return not self.stack

    def step(self) -> int:
        """List one directory; return the bytes found directly inside it."""
        self.started = True
        current = self.stack.pop()
        self.totals.setdefault(current, 0)
        local = 0
        try:
            with os.scandir(current) as it:
                for entry in it:
                    try:
                        st = entry.stat(follow_symlinks=False)
                    except OSError as e:
                        self.on_error(entry.path, _describe(e))
                        continue
                    if stat.S_ISDIR(st.st_mode):
                        if not self.cross_devices and st.st_dev != self.device:
                            log.debug("Not crossing filesystem boundary at %s", entry.path)
                            continue
                        self.parent_of[entry.path] = current
                        self.stack.append(entry.path)
                    else:
                        local += st.st_size
        except OSError as e:
            reason = _describe(e)
            if current == self.root:
                self.root_error = reason
            self.on_error(current, reason)

        if local:
            path: str | None = current
            while path is not None:
                self.totals[path] = self.totals.get(path, 0) + local
                path = self.parent_of.get(path)
        return local

    def run(self) -> int:
        while self.stack:
            self.step()
        return self.totals.get(self.root, 0)


class ScanSession:
    """One traversal rooted at a directory.

    Owns its tree nodes; callers only ever receive snapshots.
    """

    def __init__(
        self,
        root_path: Path,
        scope: str = "default",
        options: ScanOptions | None = None,
        on_update: UpdateCallback | None = None,
        publish: bool = True,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.scope = scope
        self.root_path = root_path
        self.options = options or ScanOptions()
        self.token = CancelToken()
        self._on_update = on_update
        self._publish = publish
        self._lock = threading.RLock()
        self._ids = itertools.count(1)
        self._nodes: dict[int, TreeNode] = {}
        self._errors: list[ScanError] = []
        self._dir_sizes: dict[str, int] = {}
        self._busy: set[int] = set()
        self._updates: queue.Queue[NodeUpdate] = queue.Queue()
        self._done = threading.Event()
        self._thread: threading.Thread | None = None
        self._device = os.stat(root_path).st_dev

        name = root_path.name or str(root_path)
        root = self._new_node(root_path, name, EntryKind.DIRECTORY, None)
        # The walk owns the root's child list from the start.
        root.children = []
        self._root_id = root.id

    # ── read access ─────────────────────────────────────────────────────

    @property
    def root(self) -> TreeNode:
        return self.node(self._root_id)

    @property
    def root_id(self) -> int:
        return self._root_id

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def errors(self) -> list[ScanError]:
        with self._lock:
            return list(self._errors)

    def node(self, node_id: int) -> TreeNode:
        with self._lock:
            return self._nodes[node_id].snapshot()

    def children(self, node_id: int) -> list[TreeNode]:
        """Sorted snapshots of a node's loaded children (empty if not expanded)."""
        with self._lock:
            node = self._nodes[node_id]
            return [self._nodes[c].snapshot() for c in node.children or ()]

    def find(self, path: Path | str) -> TreeNode | None:
        """Snapshot of the materialized node for *path*, if any."""
        target = Path(path)
        with self._lock:
            for node in self._nodes.values():
                if node.path == target:
                    return node.snapshot()
        return None

    def updates(self) -> Iterator[NodeUpdate]:
        """Drain the queued updates without blocking."""
        while True:
            try:
                yield self._updates.get_nowait()
            except queue.Empty:
                return

    def next_update(self, timeout: float | None = None) -> NodeUpdate | None:
        try:
            return self._updates.get(timeout=timeout)
        except queue.Empty:
            return None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the scan finishes; return whether it did."""
        return self._done.wait(timeout)

    # ── control ─────────────────────────────────────────────────────────

    def cancel(self) -> None:
        """Request early termination. Checked between directory steps."""
        if not self.token.cancelled:
            log.debug("Cancelling scan of %s", self.root_path)
        self.token.cancel()

    def start(self) -> None:
        """Run the scan on a background thread."""
        self._thread = threading.Thread(target=self.run, name=f"scan-{self.id[:8]}", daemon=True)
        self._thread.start()

    def run(self) -> None:
        """Run the scan in the calling thread."""
        try:
            self._scan()
        except Exception:
            log.exception("Scan of %s crashed", self.root_path)
            with self._lock:
                self._set_state(self._nodes[self._root_id], ScanState.FAILED, "internal error")
        finally:
            self._done.set()

    def _scan(self) -> None:
        with self._lock:
            self._set_state(self._nodes[self._root_id], ScanState.SCANNING)

        branches: deque[tuple[int, _Walker]] = deque()
        try:
            with os.scandir(self.root_path) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            reason = _describe(e)
            self._record_error(str(self.root_path), reason)
            with self._lock:
                self._set_state(self._nodes[self._root_id], ScanState.FAILED, reason)
            return

        for entry in entries:
            if self.token.cancelled:
                break
            walker = self._materialize(entry, self._root_id)
            if walker is not None:
                branches.append(walker)

        while branches and not self.token.cancelled:
            node_id, walker = branches.popleft()
            if not walker.started:
                with self._lock:
                    self._set_state(self._nodes[node_id], ScanState.SCANNING)
            for _ in range(self.options.step_budget):
                if self.token.cancelled or walker.done:
                    break
                found = walker.step()
                if found:
                    with self._lock:
                        self._grow(node_id, found)
            if self.token.cancelled:
                branches.appendleft((node_id, walker))
                break
            if walker.done:
                self._finish_branch(node_id, walker)
            else:
                branches.append((node_id, walker))

        with self._lock:
            if self.token.cancelled:
                # Branches never started stay UNSCANNED.
                for node_id, walker in branches:
                    self._busy.discard(node_id)
                    if walker.started:
                        self._set_state(self._nodes[node_id], ScanState.FAILED, CANCELLED)
                self._set_state(self._nodes[self._root_id], ScanState.FAILED, CANCELLED)
                log.info("Scan of %s cancelled", self.root_path)
            else:
                root = self._nodes[self._root_id]
                self._set_state(root, ScanState.SCANNED)
                log.info("Scanned %s: %d bytes, %d error(s)", self.root_path, root.size, len(self._errors))

    def _materialize(self, entry: os.DirEntry, parent_id: int) -> tuple[int, _Walker] | None:
        """Create the node for a root child; return a walker for directories."""
        try:
            st = entry.stat(follow_symlinks=False)
        except OSError as e:
            reason = _describe(e)
            self._record_error(entry.path, reason)
            with self._lock:
                node = self._new_node(Path(entry.path), entry.name, EntryKind.OTHER, parent_id)
                self._set_state(node, ScanState.FAILED, reason)
                self._attach(parent_id, node.id)
            return None

        kind = EntryKind.from_mode(st.st_mode)
        with self._lock:
            node = self._new_node(Path(entry.path), entry.name, kind, parent_id)
            self._attach(parent_id, node.id)
            if kind is not EntryKind.DIRECTORY:
                self._set_state(node, ScanState.SCANNED)
                self._grow(node.id, st.st_size)
                return None
            if not self.options.cross_filesystem_boundaries and st.st_dev != self._device:
                log.debug("Not crossing filesystem boundary at %s", entry.path)
                self._set_state(node, ScanState.SCANNED)
                return None
            self._emit(node, 0)
            self._busy.add(node.id)
        walker = _Walker(entry.path, st.st_dev, self.options.cross_filesystem_boundaries, self._record_error)
        return node.id, walker

    def _finish_branch(self, node_id: int, walker: _Walker) -> None:
        with self._lock:
            self._busy.discard(node_id)
            self._dir_sizes.update(walker.totals)
            node = self._nodes[node_id]
            if walker.root_error:
                self._set_state(node, ScanState.FAILED, walker.root_error)
            else:
                self._set_state(node, ScanState.SCANNED)

    # ── lazy expansion and re-scan ──────────────────────────────────────

    def expand(self, node_id: int) -> list[TreeNode]:
        """Materialize the immediate children of a directory node.

        Subdirectory sizes come from the totals the walk already gathered;
        directories that were never fully walked are measured now.  The
        node's own size is reconciled with the sum of its children.
        """
        with self._lock:
            node = self._nodes[node_id]
            if node.children is not None or not node.is_dir:
                return self.children(node_id)
            if node_id in self._busy:
                raise NodeBusyError(f"{node.path} is still being scanned")
            path = node.path
            self._busy.add(node_id)

        try:
            measured = self._measure_children(path)
        finally:
            with self._lock:
                self._busy.discard(node_id)

        with self._lock:
            node = self._nodes[node_id]
            node.children = []
            for child_path, kind, size, reason in measured:
                self._add_child(node, child_path, kind, size, reason)
            self._sort_children(node)
            total = sum(self._nodes[c].size for c in node.children)
            delta = total - node.size
            cancelled = node.state is ScanState.FAILED and node.reason == CANCELLED
            if cancelled or node.state is ScanState.UNSCANNED:
                node.state, node.reason = ScanState.SCANNED, ""
            self._dir_sizes[str(path)] = total
            self._adjust_cached(path, delta)
            self._grow(node_id, delta, force=True)
            return self.children(node_id)

    def _measure_children(self, path: Path) -> list[tuple[Path, EntryKind, int, str]]:
        measured: list[tuple[Path, EntryKind, int, str]] = []
        try:
            with os.scandir(path) as it:
                entries = list(it)
        except OSError as e:
            self._record_error(str(path), _describe(e))
            return measured

        for entry in entries:
            try:
                st = entry.stat(follow_symlinks=False)
            except OSError as e:
                reason = _describe(e)
                self._record_error(entry.path, reason)
                measured.append((Path(entry.path), EntryKind.OTHER, 0, reason))
                continue
            kind = EntryKind.from_mode(st.st_mode)
            if kind is EntryKind.DIRECTORY:
                size, reason = self._directory_size(entry.path, st.st_dev)
            else:
                size, reason = st.st_size, ""
            measured.append((Path(entry.path), kind, size, reason))
        return measured

    def _directory_size(self, path: str, device: int) -> tuple[int, str]:
        if not self.options.cross_filesystem_boundaries and device != self._device:
            return 0, ""
        with self._lock:
            cached = self._dir_sizes.get(path)
        if cached is not None:
            return cached, ""
        walker = _Walker(path, device, self.options.cross_filesystem_boundaries, self._record_error)
        size = walker.run()
        with self._lock:
            self._dir_sizes.update(walker.totals)
        return size, walker.root_error

    def rescan(self, node_id: int) -> TreeNode | None:
        """Discard a node and measure its path again from scratch.

        The replacement gets a new id and takes the old node's place in
        its parent; ancestors absorb the size difference.  Returns
        ``None`` when the path no longer exists.
        """
        with self._lock:
            node = self._nodes[node_id]
            if node.parent_id is None:
                raise ValueError("Rescan the root by starting a new scan")
            if node_id in self._busy:
                raise NodeBusyError(f"{node.path} is still being scanned")
            path, parent_id, old_size = node.path, node.parent_id, node.size
            self._invalidate(path)

        measured = self._measure_path(path)

        with self._lock:
            parent = self._nodes[parent_id]
            self._drop(node_id)
            if measured is None:
                self._adjust_cached(path, -old_size)
                self._grow(parent_id, -old_size, force=True)
                return None
            fresh = self._add_child(parent, path, *measured)
            self._sort_children(parent)
            self._adjust_cached(path, fresh.size - old_size)
            self._grow(parent_id, fresh.size - old_size, force=True)
            return fresh.snapshot()

    def track(self, path: Path | str) -> TreeNode | None:
        """Add a path that appeared under an expanded node, e.g. after an undo.

        Returns the new node, the existing node if *path* is already in the
        tree, or ``None`` when its parent is not loaded or it does not exist.
        Raises :class:`NodeBusyError` for root children while the walk runs.
        """
        path = Path(path)
        existing = self.find(path)
        if existing is not None:
            return existing
        parent_snapshot = self.find(path.parent)
        if parent_snapshot is None or not parent_snapshot.expanded:
            return None
        if parent_snapshot.id == self._root_id and not self.done:
            raise NodeBusyError(f"{self.root_path} is still being scanned")

        measured = self._measure_path(path)
        if measured is None:
            return None
        with self._lock:
            parent = self._nodes.get(parent_snapshot.id)
            if parent is None or parent.children is None:
                return None
            fresh = self._add_child(parent, path, *measured)
            self._sort_children(parent)
            self._adjust_cached(path, fresh.size)
            self._grow(parent.id, fresh.size, force=True)
            return fresh.snapshot()

    def _measure_path(self, path: Path) -> tuple[EntryKind, int, str] | None:
        try:
            st = os.lstat(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            self._record_error(str(path), _describe(e))
            return None
        kind = EntryKind.from_mode(st.st_mode)
        if kind is EntryKind.DIRECTORY:
            size, reason = self._directory_size(str(path), st.st_dev)
            return kind, size, reason
        return kind, st.st_size, ""

    # ── internals (call with the lock held) ─────────────────────────────

    def _new_node(self, path: Path, name: str, kind: EntryKind, parent_id: int | None) -> TreeNode:
        node = TreeNode(id=next(self._ids), path=path, name=name, kind=kind, parent_id=parent_id)
        self._nodes[node.id] = node
        return node

    def _add_child(self, parent: TreeNode, path: Path, kind: EntryKind, size: int, reason: str) -> TreeNode:
        """Create a measured child node and append it to *parent*."""
        child = self._new_node(path, path.name, kind, parent.id)
        child.size = size
        if reason:
            self._set_state(child, ScanState.FAILED, reason)
        else:
            self._set_state(child, ScanState.SCANNED)
        self._attach(parent.id, child.id)
        return child

    def _attach(self, parent_id: int, child_id: int) -> None:
        parent = self._nodes[parent_id]
        if parent.children is None:
            parent.children = []
        parent.children.append(child_id)

    def _drop(self, node_id: int) -> None:
        node = self._nodes.pop(node_id)
        for child_id in node.children or ():
            self._drop(child_id)
        if node.parent_id is not None and node.parent_id in self._nodes:
            parent = self._nodes[node.parent_id]
            if parent.children and node_id in parent.children:
                parent.children.remove(node_id)

    def _invalidate(self, path: Path) -> None:
        """Forget cached totals for *path* and everything below it."""
        key, prefix = str(path), str(path) + os.sep
        for stale in [k for k in self._dir_sizes if k == key or k.startswith(prefix)]:
            del self._dir_sizes[stale]

    def _adjust_cached(self, path: Path, delta: int) -> None:
        """Apply a size change below *path* to the cached totals of its ancestors."""
        if not delta:
            return
        for ancestor in path.parents:
            key = str(ancestor)
            if key in self._dir_sizes:
                self._dir_sizes[key] += delta
            if ancestor == self.root_path:
                break

    def _sort_children(self, node: TreeNode) -> None:
        if node.children:
            node.children.sort(key=lambda c: sort_key(self._nodes[c]))

    def _grow(self, node_id: int, delta: int, force: bool = False) -> None:
        """Add *delta* to a node and every ancestor, child first."""
        if not delta and not force:
            return
        current: int | None = node_id
        while current is not None:
            node = self._nodes[current]
            node.size += delta
            self._emit(node, delta)
            if node.parent_id is not None:
                self._sort_children(self._nodes[node.parent_id])
            current = node.parent_id

    def _set_state(self, node: TreeNode, state: ScanState, reason: str = "") -> None:
        node.state = state
        node.reason = reason if state is ScanState.FAILED else ""
        self._emit(node, 0)

    def _emit(self, node: TreeNode, delta: int) -> None:
        update = NodeUpdate(
            node_id=node.id,
            parent_id=node.parent_id,
            path=node.path,
            size=node.size,
            delta=delta,
            kind=node.kind,
            state=node.state,
            reason=node.reason,
        )
        if self._publish:
            self._updates.put(update)
        if self._on_update is not None:
            self._on_update(self, update)

    def _record_error(self, path: str, reason: str) -> None:
        log.debug("Scan error at %s: %s", path, reason)
        with self._lock:
            self._errors.append(ScanError(path=Path(path), reason=reason))


class ScanEngine:
    """Creates scan sessions, at most one active per scope."""

    def __init__(self, options: ScanOptions | None = None) -> None:
        self.options = options or ScanOptions()
        self._lock = threading.Lock()
        self._sessions: dict[str, ScanSession] = {}
        self._scopes: dict[str, str] = {}

    def scan(
        self,
        path: Path | str,
        scope: str = "default",
        *,
        options: ScanOptions | None = None,
        on_update: UpdateCallback | None = None,
        background: bool = True,
        publish: bool = True,
    ) -> ScanSession:
        """Start measuring *path* and return its session immediately.

        Starting a scan for a scope cancels and discards that scope's
        previous session.  With ``background=False`` the scan runs to
        completion before returning; with ``publish=False`` nothing is queued
        on the update channel, for callers that never drain it.

        Raises:
            InvalidRootError: If *path* is not an existing directory.
        """
        root = Path(os.path.realpath(os.path.expanduser(str(path))))
        if not root.is_dir():
            raise InvalidRootError(f"Not a directory: {path}")

        session = ScanSession(
            root, scope=scope, options=options or self.options, on_update=on_update, publish=publish
        )
        with self._lock:
            previous_id = self._scopes.get(scope)
            previous = self._sessions.pop(previous_id, None) if previous_id else None
            self._sessions[session.id] = session
            self._scopes[scope] = session.id
        if previous is not None:
            previous.cancel()

        log.info("Scanning %s (scope %s)", root, scope)
        if background:
            session.start()
        else:
            session.run()
        return session

    def expand(self, session: ScanSession, node_id: int) -> list[TreeNode]:
        return session.expand(node_id)

    def rescan(self, session: ScanSession, node_id: int) -> TreeNode | None:
        return session.rescan(node_id)

    def cancel(self, session: ScanSession) -> None:
        session.cancel()

    def get(self, session_id: str) -> ScanSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def active(self, scope: str = "default") -> ScanSession | None:
        with self._lock:
            session_id = self._scopes.get(scope)
            return self._sessions.get(session_id) if session_id else None

    def sessions(self) -> list[ScanSession]:
        with self._lock:
            return list(self._sessions.values())

    def discard(self, session: ScanSession) -> None:
        """Cancel a session and forget it, e.g. when the user navigates away."""
        session.cancel()
        with self._lock:
            self._sessions.pop(session.id, None)
            if self._scopes.get(session.scope) == session.id:
                del self._scopes[session.scope]
