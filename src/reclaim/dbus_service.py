"""D-Bus service for front-end communication.

D-Bus methods use PascalCase per D-Bus convention, and type signatures
like "as" and "(ss)" are D-Bus protocol types, not Python syntax.
Structured results travel as JSON strings.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from dbus_next.aio import MessageBus
from dbus_next.service import ServiceInterface, method, signal
from dbus_next import BusType

from reclaim.core.disks import get_disks
from reclaim.core.engine import ReclaimEngine
from reclaim.core.ownership import Identity, IdentityError, Verdict
from reclaim.core.registry import SourceRegistry
from reclaim.core.safety import confirmation_for
from reclaim.core.scanner import InvalidRootError, NodeBusyError, ScanEngine, ScanOptions, ScanSession
from reclaim.core.source_loader import load_sources
from reclaim.core.trash import TrashError
from reclaim.settings import Settings

log = logging.getLogger(__name__)

_BUS_NAME = "io.github.reclaim"
_OBJECT_PATH = "/io/github/reclaim"
_INTERFACE = "io.github.reclaim.Manager"

# How often queued scan updates are forwarded as signals (seconds).
_PUMP_INTERVAL = 0.1


def _error(message: str) -> str:
    return json.dumps({"error": message})


def _build_engine() -> ReclaimEngine:
    registry = SourceRegistry()
    load_sources(registry)
    scanner = ScanEngine(ScanOptions.from_settings(Settings.instance()))
    return ReclaimEngine(registry, Identity.current(), scanner=scanner)


# noinspection PyPep8Naming,DuplicatedCode
class ReclaimDBusService(ServiceInterface):
    """D-Bus service interface for Reclaim."""

    def __init__(self, engine: ReclaimEngine | None = None) -> None:
        super().__init__(_INTERFACE)
        self._engine = engine or _build_engine()
        self._finished: set[str] = set()

    # ── categorized sources ─────────────────────────────────────────────

    @method()
    def ListSources(self) -> "s":  # type: ignore[override]
        """List all available sources as JSON."""
        data = [
            {
                "id": s.id,
                "name": s.name,
                "description": s.description,
                "category": s.category,
                "requires_root": s.requires_root,
                "removable": s.removable,
            }
            for s in self._engine.registry.get_available()
        ]
        return json.dumps(data)

    @method()
    def Measure(self, source_ids: "as") -> "s":  # type: ignore[override]
        """Measure the given sources (all when empty), returning reports as JSON."""
        ids = list(source_ids) if source_ids else None
        reports = self._engine.measure(source_ids=ids)
        return json.dumps([r.as_dict() for r in reports])

    @method()
    def Clean(self, source_ids: "as", confirmed: "b") -> "s":  # type: ignore[override]
        """Run the permanent cleaning action of measured sources."""
        pending = len(self._engine.journal.pending())
        outcomes = self._engine.clean(list(source_ids), confirmed=confirmed)
        if len(self._engine.journal.pending()) != pending:
            self.JournalChanged(len(self._engine.journal))
        return json.dumps([o.as_dict() for o in outcomes])

    @method()
    def Disks(self) -> "s":  # type: ignore[override]
        return json.dumps([d.as_dict() for d in get_disks()])

    # ── folder scans ────────────────────────────────────────────────────

    @method()
    def Scan(self, path: "s", scope: "s") -> "s":  # type: ignore[override]
        """Start a background scan; progress arrives via NodeUpdated."""
        target = Path(path) if path else Settings.instance().scan_root()
        try:
            session = self._engine.scanner.scan(target, scope or "default")
        except InvalidRootError as exc:
            return _error(str(exc))
        return json.dumps({"session": session.id, "root": session.root.as_dict()})

    @method()
    def Expand(self, session_id: "s", node_id: "u") -> "s":  # type: ignore[override]
        session = self._engine.scanner.get(session_id)
        if session is None:
            return _error(f"Unknown scan session {session_id}")
        try:
            children = self._engine.scanner.expand(session, node_id)
        except KeyError:
            return _error(f"Unknown node {node_id}")
        except NodeBusyError as exc:
            return _error(str(exc))
        return json.dumps([c.as_dict() for c in children])

    @method()
    def Children(self, session_id: "s", node_id: "u") -> "s":  # type: ignore[override]
        """Already-loaded children of a node, without expanding it."""
        session = self._engine.scanner.get(session_id)
        if session is None:
            return _error(f"Unknown scan session {session_id}")
        try:
            children = session.children(node_id)
        except KeyError:
            return _error(f"Unknown node {node_id}")
        return json.dumps([c.as_dict() for c in children])

    @method()
    def Cancel(self, session_id: "s") -> "b":  # type: ignore[override]
        session = self._engine.scanner.get(session_id)
        if session is None:
            return False
        self._engine.scanner.cancel(session)
        return True

    @method()
    def Discard(self, session_id: "s") -> "b":  # type: ignore[override]
        """Cancel a session and forget its tree once the user has moved on."""
        session = self._engine.scanner.get(session_id)
        if session is None:
            return False
        self._engine.scanner.discard(session)
        self._finished.discard(session_id)
        return True

    @method()
    def Rescan(self, session_id: "s", node_id: "u") -> "s":  # type: ignore[override]
        """Measure a node again; returns the replacement node or null if it is gone."""
        session = self._engine.scanner.get(session_id)
        if session is None:
            return _error(f"Unknown scan session {session_id}")
        try:
            fresh = self._engine.scanner.rescan(session, node_id)
        except KeyError:
            return _error(f"Unknown node {node_id}")
        except (NodeBusyError, ValueError) as exc:
            return _error(str(exc))
        return json.dumps(fresh.as_dict() if fresh else None)

    @method()
    def ScanErrors(self, session_id: "s") -> "s":  # type: ignore[override]
        session = self._engine.scanner.get(session_id)
        if session is None:
            return _error(f"Unknown scan session {session_id}")
        return json.dumps([e.as_dict() for e in session.errors])

    # ── removal ─────────────────────────────────────────────────────────

    @method()
    def Classify(self, paths: "as") -> "s":  # type: ignore[override]
        safety = self._engine.safety
        data = [
            {"path": p, "verdict": safety.classify(p).value, "critical": safety.is_critical(p)}
            for p in paths
        ]
        return json.dumps(data)

    @method()
    def Confirmation(self, paths: "as") -> "s":  # type: ignore[override]
        """Prompts the front-end must show before Trash and DeletePermanently."""
        plan = self._engine.safety.plan(paths)
        data: dict[str, Any] = {"trash": None, "delete_permanently": None, "refused": [str(p) for p in plan.refused]}
        if plan.home_owned:
            data["trash"] = _confirmation_dict(Verdict.HOME_OWNED, plan.home_owned)
        if plan.protected:
            data["delete_permanently"] = _confirmation_dict(Verdict.PROTECTED, plan.protected)
        return json.dumps(data)

    @method()
    def Trash(self, paths: "as") -> "s":  # type: ignore[override]
        """Move the home-owned paths of a selection to the session trash.

        Protected paths are not touched; they are listed under
        ``needs_permanent_delete`` for a separate DeletePermanently call.
        """
        plan = self._engine.safety.plan(paths)
        report = self._engine.remove(plan.home_owned + plan.refused)
        data = report.as_dict()
        data["needs_permanent_delete"] = [str(p) for p in plan.protected]
        removed = [o.path for o in report.trashed if o.ok]
        if removed:
            self._refresh_sessions(removed)
            self.JournalChanged(len(self._engine.journal))
        return json.dumps(data)

    @method()
    def DeletePermanently(self, paths: "as", confirmed: "b") -> "s":  # type: ignore[override]
        """Delete protected paths with administrator rights, one prompt per batch."""
        plan = self._engine.safety.plan(paths)
        report = self._engine.remove(plan.protected + plan.refused, confirm_permanent=confirmed)
        data = report.as_dict()
        data["use_trash"] = [str(p) for p in plan.home_owned]
        if report.elevated is not None and report.elevated.deleted:
            self._refresh_sessions([o.path for o in report.elevated.deleted])
        return json.dumps(data)

    @method()
    def Undo(self, entry_id: "s") -> "s":  # type: ignore[override]
        try:
            entry = self._engine.trash.undo(entry_id)
        except TrashError as exc:
            return _error(str(exc))
        self._refresh_sessions([entry.original_path])
        self.JournalChanged(len(self._engine.journal))
        return json.dumps(entry.as_dict())

    @method()
    def Commit(self, entry_id: "s") -> "s":  # type: ignore[override]
        try:
            entry = self._engine.trash.commit(entry_id)
        except TrashError as exc:
            return _error(str(exc))
        self.JournalChanged(len(self._engine.journal))
        return json.dumps(entry.as_dict())

    @method()
    def Journal(self) -> "s":  # type: ignore[override]
        """Session trash history, most recent last."""
        return json.dumps([e.as_dict() for e in self._engine.journal.entries()])

    # ── signals ─────────────────────────────────────────────────────────

    @signal()
    def NodeUpdated(self, session_id: str, update: str) -> "(ss)":  # type: ignore[override]
        return [session_id, update]

    @signal()
    def ScanFinished(self, session_id: str, root: str) -> "(ss)":  # type: ignore[override]
        return [session_id, root]

    @signal()
    def JournalChanged(self, count: int) -> "u":  # type: ignore[override]
        return count

    # ── plumbing ────────────────────────────────────────────────────────

    def _refresh_sessions(self, paths: list[Path]) -> None:
        for session in self._engine.scanner.sessions():
            self._engine.refresh(session, paths)

    def pump_updates(self) -> None:
        """Forward queued scan updates as signals, child before parent."""
        sessions = self._engine.scanner.sessions()
        self._finished &= {s.id for s in sessions}
        for session in sessions:
            for update in session.updates():
                payload = {
                    "node_id": update.node_id,
                    "parent_id": update.parent_id,
                    "path": str(update.path),
                    "size_bytes": update.size,
                    "delta": update.delta,
                    "kind": update.kind.value,
                    "state": update.state.value,
                    "reason": update.reason,
                }
                self.NodeUpdated(session.id, json.dumps(payload))
            if session.done and session.id not in self._finished:
                self._finished.add(session.id)
                self._finish(session)

    def _finish(self, session: ScanSession) -> None:
        root = session.root
        log.info("Scan session %s finished: %s", session.id[:8], root.state.value)
        self.ScanFinished(session.id, json.dumps(root.as_dict()))


def _confirmation_dict(verdict: Verdict, paths: list[Path]) -> dict[str, Any]:
    prompt = confirmation_for(verdict, paths)
    return {
        "title": prompt.title,
        "message": prompt.message,
        "irreversible": prompt.irreversible,
        "paths": [str(p) for p in paths],
    }


async def _pump(service: ReclaimDBusService) -> None:
    while True:
        service.pump_updates()
        await asyncio.sleep(_PUMP_INTERVAL)


async def run_service() -> None:
    """Start the D-Bus service."""
    try:
        service = ReclaimDBusService()
    except IdentityError as exc:
        log.error("Cannot start service: %s", exc)
        raise SystemExit(1) from exc
    bus = await MessageBus(bus_type=BusType.SESSION).connect()
    bus.export(_OBJECT_PATH, service)
    await bus.request_name(_BUS_NAME)
    log.info("D-Bus service started on %s", _BUS_NAME)
    pump = asyncio.create_task(_pump(service))
    try:
        await bus.wait_for_disconnect()
    finally:
        pump.cancel()


def start_service() -> None:
    """Entry point to start the D-Bus service."""
    asyncio.run(run_service())
