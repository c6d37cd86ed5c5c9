"""Routing of removal targets between the trash and elevated deletion."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable

from reclaim.core.ownership import Identity, Verdict, classify, is_critical_path
from reclaim.core.privileges import PrivilegeError, is_root, run_privileged_delete
from reclaim.models.results import DeleteOutcome, ElevatedDeleteResult, RemovalPlan
from reclaim.utils import bytes_to_human, remove_paths

log = logging.getLogger(__name__)

# Takes absolute path strings, returns per-path dicts (path, deleted, freed_bytes, error).
ElevationGateway = Callable[[list[str]], list[dict]]


@dataclass(frozen=True, slots=True)
class Confirmation:
    """Text an interface must show before a removal runs."""

    title: str
    message: str
    irreversible: bool


def confirmation_for(verdict: Verdict, paths: list[Path], total_bytes: int | None = None) -> Confirmation:
    """Build the confirmation prompt for removing *paths* under *verdict*."""
    count = len(paths)
    noun = "item" if count == 1 else "items"
    size = f" ({bytes_to_human(total_bytes)})" if total_bytes is not None else ""

    if verdict is Verdict.HOME_OWNED:
        return Confirmation(
            title="Move to trash",
            message=(
                f"Move {count} {noun}{size} to the trash? "
                "They can be restored from the session trash until you delete them permanently."
            ),
            irreversible=False,
        )
    return Confirmation(
        title="Permanently delete system files",
        message=(
            f"{count} {noun}{size} lie outside your home directory or belong to another user. "
            "Trashing them is not supported: they will be PERMANENTLY DELETED with administrator "
            "rights. This cannot be undone."
        ),
        irreversible=True,
    )


class SafetyLayer:
    """Decides how each target may be removed and mediates elevation.

    Home-owned paths are reversible and go to the trash; protected paths
    can only be deleted permanently through the elevation gateway, which
    is invoked once per batch.
    """

    def __init__(self, identity: Identity, gateway: ElevationGateway | None = None) -> None:
        self.identity = identity
        self._gateway = gateway or run_privileged_delete

    def classify(self, path: Path | str) -> Verdict:
        return classify(path, self.identity)

    def is_critical(self, path: Path | str) -> bool:
        return is_critical_path(path, self.identity.home)

    def plan(self, paths: Iterable[Path | str]) -> RemovalPlan:
        """Partition a selection, preserving selection order within each group."""
        plan = RemovalPlan()
        seen: set[Path] = set()
        for raw in paths:
            path = Path(raw).absolute()
            if path in seen:
                continue
            seen.add(path)
            if self.is_critical(path):
                log.warning("Refusing to remove critical path: %s", path)
                plan.refused.append(path)
            elif self.classify(path) is Verdict.HOME_OWNED:
                plan.home_owned.append(path)
            else:
                plan.protected.append(path)
        return plan

    def request_elevated_delete(self, paths: list[Path], *, confirmed: bool) -> ElevatedDeleteResult:
        """Permanently delete protected *paths* in one privileged unit of work.

        Args:
            paths: Paths previously classified as protected.
            confirmed: Whether the user accepted the permanent-deletion
                prompt. Without it nothing is attempted.

        Returns:
            Per-path outcomes plus a batch error when the whole batch failed.
        """
        if not confirmed:
            return ElevatedDeleteResult(
                outcomes=[DeleteOutcome(path=p) for p in paths],
                error="Permanent deletion was not confirmed",
            )

        outcomes: dict[Path, DeleteOutcome] = {}
        batch: list[Path] = []
        for raw in paths:
            path = Path(raw).absolute()
            if self.is_critical(path):
                outcomes[path] = DeleteOutcome(path=path, error=f"{path}: refusing to delete a critical path")
            elif self.classify(path) is not Verdict.PROTECTED:
                outcomes[path] = DeleteOutcome(path=path, error=f"{path}: not a protected path, move it to the trash instead")
            else:
                outcomes[path] = DeleteOutcome(path=path)
                batch.append(path)

        result = ElevatedDeleteResult(outcomes=list(outcomes.values()))
        if not batch:
            return result

        try:
            if is_root():
                raw_results = remove_paths([str(p) for p in batch])
            else:
                raw_results = self._gateway([str(p) for p in batch])
        except PrivilegeError as exc:
            log.warning("Privilege escalation failed: %s", exc)
            result.error = str(exc)
            return result

        reported: set[Path] = set()
        for raw in raw_results:
            path = Path(raw.get("path", ""))
            outcome = outcomes.get(path)
            if outcome is None or path not in batch:
                log.warning("Gateway reported an unrequested path: %s", path)
                continue
            reported.add(path)
            outcome.deleted = bool(raw.get("deleted", False))
            outcome.freed_bytes = int(raw.get("freed_bytes", 0)) if outcome.deleted else 0
            outcome.error = raw.get("error", "") or ("" if outcome.deleted else f"{path}: not deleted")

        for path in batch:
            if path not in reported:
                outcomes[path].error = f"{path}: no result reported by privileged process"

        log.info(
            "Elevated delete: %d of %d path(s) removed, %s freed",
            len(result.deleted), len(batch), bytes_to_human(result.freed_bytes),
        )
        return result
