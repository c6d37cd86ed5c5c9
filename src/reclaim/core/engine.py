"""Measuring and removal orchestration engine."""

from __future__ import annotations

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable

from reclaim.core.ownership import Identity
from reclaim.core.privileges import PrivilegeError
from reclaim.core.registry import SourceRegistry
from reclaim.core.safety import SafetyLayer
from reclaim.core.scanner import NodeBusyError, ScanEngine, ScanSession
from reclaim.core.trash import TrashError, TrashJournal, TrashManager
from reclaim.models.results import CleanOutcome, DeleteOutcome, RemovalReport
from reclaim.models.source import ActionSource, SourceReport, StorageSource

log = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], None]  # (source_id, status_message)
ReportCallback = Callable[[SourceReport], None]


class ReclaimEngine:
    """Ties the scanner, the safety layer and the trash together.

    One engine lives for the whole process; its trash journal is the
    session history interfaces display.
    """

    def __init__(
        self,
        registry: SourceRegistry,
        identity: Identity,
        *,
        scanner: ScanEngine | None = None,
        safety: SafetyLayer | None = None,
        trash: TrashManager | None = None,
    ) -> None:
        self.registry = registry
        self.identity = identity
        self.scanner = scanner or ScanEngine()
        self.safety = safety or SafetyLayer(identity)
        self.trash = trash or TrashManager()
        self._last_reports: dict[str, SourceReport] = {}

    @property
    def journal(self) -> TrashJournal:
        return self.trash.journal

    # ── categorized sources ─────────────────────────────────────────────

    def measure(
        self,
        source_ids: list[str] | None = None,
        category: str | None = None,
        on_progress: ProgressCallback | None = None,
        on_result: ReportCallback | None = None,
    ) -> list[SourceReport]:
        """Measure the given sources (all available ones by default).

        Uses a small thread pool (4 workers) so ``find`` subprocesses can
        overlap; single-core machines and single sources run inline.
        """
        sources = self._resolve_sources(source_ids, category)
        if not sources:
            return []

        reports: list[SourceReport] = []
        lock = threading.Lock()

        def _measure_one(source: StorageSource) -> None:
            if on_progress:
                on_progress(source.id, "measuring")
            try:
                report = source.measure()
            except Exception:
                log.exception("Source '%s' failed while measuring", source.id)
                if on_progress:
                    on_progress(source.id, "error")
                return
            with lock:
                self._last_reports[source.id] = report
                reports.append(report)
            if on_result:
                on_result(report)
            if on_progress:
                on_progress(source.id, "done")

        if (os.cpu_count() or 1) > 1 and len(sources) > 1:
            with ThreadPoolExecutor(max_workers=min(4, len(sources))) as executor:
                for future in [executor.submit(_measure_one, s) for s in sources]:
                    future.result()
        else:
            for source in sources:
                _measure_one(source)

        order = {s.id: i for i, s in enumerate(sources)}
        reports.sort(key=lambda r: order[r.source_id])
        return reports

    def get_last_report(self, source_id: str) -> SourceReport | None:
        return self._last_reports.get(source_id)

    def targets(self, source_ids: list[str]) -> list[Path]:
        """Removable item paths from the last measurement of *source_ids*."""
        paths: list[Path] = []
        for source_id in source_ids:
            source = self.registry.get(source_id)
            report = self._last_reports.get(source_id)
            if source is None or report is None:
                log.warning("Source '%s' has not been measured, skipping", source_id)
                continue
            if not source.removable:
                log.info("Source '%s' is informational only, skipping", source_id)
                continue
            if isinstance(source, ActionSource):
                log.info("Source '%s' is cleaned by its own action, skipping", source_id)
                continue
            paths.extend(item.path for item in report.items)
        return paths

    # ── removal ─────────────────────────────────────────────────────────

    def remove(self, paths: Iterable[Path | str], *, confirm_permanent: bool = False) -> RemovalReport:
        """Remove a selection the way the safety layer allows.

        Home-owned paths go to the trash (reversible).  Protected paths are
        deleted permanently in one elevated batch, and only when the
        permanent-deletion prompt was confirmed.
        """
        plan = self.safety.plan(paths)
        report = RemovalReport(
            refused=[DeleteOutcome(path=p, error=f"{p}: refusing to remove a critical path") for p in plan.refused]
        )

        if plan.home_owned:
            report.trashed = self.trash.trash(plan.home_owned)

        if plan.protected:
            report.elevated = self.safety.request_elevated_delete(plan.protected, confirmed=confirm_permanent)

        for outcome in report.trashed:
            if outcome.ok:
                self._forget(outcome.path)
        if report.elevated is not None:
            for deleted in report.elevated.deleted:
                self._forget(deleted.path)
        return report

    def clean(self, source_ids: list[str], *, confirmed: bool = False) -> list[CleanOutcome]:
        """Run the cleaning action of each action source on its last measurement.

        Actions are permanent, so nothing runs unless *confirmed*.  Trash
        journal entries whose trashed copy disappeared along the way are
        committed.
        """
        outcomes: list[CleanOutcome] = []
        for source_id in source_ids:
            source = self.registry.get(source_id)
            report = self._last_reports.get(source_id)
            if not isinstance(source, ActionSource):
                outcomes.append(CleanOutcome(source_id, error=f"Source '{source_id}' has no cleaning action"))
                continue
            if report is None:
                outcomes.append(CleanOutcome(source_id, error=f"Source '{source_id}' has not been measured"))
                continue
            if not confirmed:
                outcomes.append(CleanOutcome(source_id, error="Cleaning was not confirmed"))
                continue
            if not report.items:
                outcomes.append(CleanOutcome(source_id))
                continue

            try:
                outcome = source.clean(list(report.items))
            except PrivilegeError as exc:
                outcome = CleanOutcome(source_id, error=str(exc))
            except Exception:
                log.exception("Source '%s' failed while cleaning", source_id)
                outcome = CleanOutcome(source_id, error=f"Source '{source_id}' failed while cleaning")
            if outcome.items_removed:
                self._last_reports.pop(source_id, None)
            outcomes.append(outcome)

        self._settle_journal()
        return outcomes

    def _settle_journal(self) -> None:
        for entry in self.journal.pending():
            if not os.path.lexists(entry.trashed_path):
                try:
                    self.trash.commit(entry.id)
                except TrashError as exc:
                    log.warning("Cannot settle trash entry %s: %s", entry.id, exc)

    def refresh(self, session: ScanSession, paths: Iterable[Path | str]) -> None:
        """Bring a scan tree back in line after paths were removed or restored."""
        for path in paths:
            node = session.find(path)
            try:
                if node is not None and node.parent_id is not None:
                    session.rescan(node.id)
                elif node is None:
                    session.track(path)
            except NodeBusyError as e:
                log.warning("Cannot refresh %s: %s", path, e)

    def _forget(self, path: Path) -> None:
        """Drop a removed path from cached source reports."""
        for report in self._last_reports.values():
            before = len(report.items)
            report.items = [i for i in report.items if i.path != path]
            if len(report.items) != before:
                report.total_bytes = sum(i.size_bytes for i in report.items)

    def _resolve_sources(self, source_ids: list[str] | None, category: str | None) -> list[StorageSource]:
        if source_ids:
            result: list[StorageSource] = []
            for sid in source_ids:
                source = self.registry.get(sid)
                if source is None:
                    log.warning("Source '%s' not found, skipping", sid)
                elif not source.is_available():
                    log.info("Source '%s' not present on this system, skipping", sid)
                else:
                    result.append(source)
            return result

        available = self.registry.get_available()
        if category:
            available = [s for s in available if s.category == category]
        return available
