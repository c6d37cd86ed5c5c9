"""System junk: package caches, journals, orphaned packages and the desktop trash."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

from reclaim.core.privileges import run_privileged_command
from reclaim.models.results import CleanOutcome
from reclaim.models.source import ActionSource, DirectorySource, SourceItem, SourceReport
from reclaim.utils import parse_size, remove_paths, xdg_cache_home, xdg_data_home

log = logging.getLogger(__name__)

_PACMAN_DB = Path("/var/lib/pacman/local")

# Output of pacman -Qi is parsed, so keep it untranslated.
_C_LOCALE = {**os.environ, "LC_ALL": "C"}


class PacmanCacheSource(DirectorySource):
    """Downloaded packages kept by pacman after installation."""

    id = "pacman_cache"
    name = "Pacman Package Cache"
    description = "Package archives kept by pacman; reinstalling or downgrading needs them again"
    category = "system"
    requires_root = True
    sort_order = 10

    def paths(self) -> tuple[Path, ...]:
        return (Path("/var/cache/pacman/pkg"),)


class YayCacheSource(DirectorySource):
    """AUR build directories left behind by yay."""

    id = "yay_cache"
    name = "Yay Build Cache"
    description = "Cloned AUR repositories and build artifacts from yay"
    category = "system"
    sort_order = 20

    def paths(self) -> tuple[Path, ...]:
        return (xdg_cache_home() / "yay",)


class JournalSource(DirectorySource):
    """Persistent systemd journal files."""

    id = "journal"
    name = "Systemd Journal"
    description = "Archived system logs; deleting them loses log history"
    category = "system"
    requires_root = True
    sort_order = 30

    def paths(self) -> tuple[Path, ...]:
        return (Path("/var/log/journal"),)


def _query_orphans() -> list[str]:
    """Names of packages installed as dependencies that nothing requires."""
    result = subprocess.run(
        ["pacman", "-Qtdq"], capture_output=True, text=True, timeout=60, env=_C_LOCALE
    )
    # pacman exits 1 with no output when there are no orphans.
    if result.returncode not in (0, 1):
        raise RuntimeError(f"pacman -Qtdq failed: {result.stderr.strip()}")
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _package_info(names: list[str]) -> list[tuple[str, str, int]]:
    """(name, version, installed size) for each package, in pacman's order."""
    result = subprocess.run(
        ["pacman", "-Qi", "--", *names], capture_output=True, text=True, timeout=60, env=_C_LOCALE
    )
    packages: list[tuple[str, str, int]] = []
    fields: dict[str, str] = {}
    for line in result.stdout.splitlines() + [""]:
        if not line.strip():
            if "Name" in fields:
                packages.append(
                    (fields["Name"], fields.get("Version", ""), parse_size(fields.get("Installed Size", "")))
                )
            fields = {}
            continue
        key, sep, value = line.partition(":")
        if sep and not line.startswith(" "):
            fields[key.strip()] = value.strip()
    return packages


def _package_name(item: SourceItem) -> str:
    """Package name from a ``<name>-<pkgver>-<pkgrel>`` database entry."""
    return item.path.name.rsplit("-", 2)[0]


class OrphanedPackagesSource(ActionSource):
    """Packages pulled in as dependencies that nothing needs any more."""

    id = "orphaned_packages"
    name = "Orphaned Packages"
    description = "Dependencies no installed package requires; removed with 'pacman -Rns'"
    category = "system"
    requires_root = True
    sort_order = 25

    def paths(self) -> tuple[Path, ...]:
        return (_PACMAN_DB,)

    @property
    def unavailable_reason(self) -> str | None:
        if shutil.which("pacman") is None:
            return "pacman not installed"
        return None

    def measure(self) -> SourceReport:
        names = _query_orphans()
        items = [
            SourceItem(path=_PACMAN_DB / f"{name}-{version}", size_bytes=size)
            for name, version, size in (_package_info(names) if names else [])
        ]
        items.sort(key=lambda i: (-i.size_bytes, i.path.name))
        total = sum(i.size_bytes for i in items)
        return SourceReport(
            source_id=self.id,
            source_name=self.name,
            items=items,
            total_bytes=total,
            summary=f"Found {len(items)} orphaned packages totaling {total} bytes",
        )

    def clean(self, items: list[SourceItem]) -> CleanOutcome:
        names = [_package_name(item) for item in items]
        if not names:
            return CleanOutcome(source_id=self.id)

        proc = run_privileged_command(["pacman", "-Rns", "--noconfirm", "--", *names])
        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            return CleanOutcome(source_id=self.id, error=f"pacman -Rns failed (exit {proc.returncode}): {stderr}")

        log.info("Removed %d orphaned package(s)", len(names))
        return CleanOutcome(
            source_id=self.id,
            freed_bytes=sum(i.size_bytes for i in items),
            items_removed=len(names),
        )


class UserTrashSource(DirectorySource, ActionSource):
    """The desktop trash, including items moved there by reclaim."""

    id = "user_trash"
    name = "User Trash"
    description = "Files already in the trash; emptying it deletes them for good"
    category = "system"
    sort_order = 40

    def _trash_dir(self) -> Path:
        return xdg_data_home() / "Trash"

    def paths(self) -> tuple[Path, ...]:
        return (self._trash_dir() / "files",)

    def clean(self, items: list[SourceItem]) -> CleanOutcome:
        files_dir = self._trash_dir() / "files"
        info_dir = self._trash_dir() / "info"
        targets = [item for item in items if item.path.parent == files_dir]
        if len(targets) != len(items):
            log.warning("Ignoring %d item(s) outside %s", len(items) - len(targets), files_dir)

        freed, removed, errors = 0, 0, []
        for result in remove_paths([str(item.path) for item in targets]):
            if not result["deleted"]:
                errors.append(result["error"])
                continue
            freed += result["freed_bytes"]
            removed += 1
            (info_dir / f"{Path(result['path']).name}.trashinfo").unlink(missing_ok=True)

        return CleanOutcome(
            source_id=self.id,
            freed_bytes=freed,
            items_removed=removed,
            error="; ".join(errors),
        )
