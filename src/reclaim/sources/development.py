"""Developer tool caches."""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from reclaim.core.privileges import run_privileged_command
from reclaim.models.results import CleanOutcome
from reclaim.models.source import ActionSource, DirectorySource, SourceItem
from reclaim.utils import parse_size

log = logging.getLogger(__name__)


class CargoRegistrySource(DirectorySource):
    """Downloaded crates and their index."""

    id = "cargo_registry"
    name = "Cargo Registry"
    description = "Crate sources and index downloaded by cargo; fetched again on the next build"
    category = "development"
    sort_order = 10

    def paths(self) -> tuple[Path, ...]:
        return (Path.home() / ".cargo" / "registry",)


class NpmCacheSource(DirectorySource):
    """npm's content-addressable package cache."""

    id = "npm_cache"
    name = "npm Cache"
    description = "npm package cache"
    category = "development"
    sort_order = 20

    def paths(self) -> tuple[Path, ...]:
        return (Path.home() / ".npm",)


class DockerDataSource(DirectorySource, ActionSource):
    """Images, containers and volumes managed by the Docker daemon."""

    id = "docker"
    name = "Docker Data"
    description = "Unused Docker images, stopped containers and build cache; pruned with 'docker system prune'"
    category = "development"
    requires_root = True
    sort_order = 30
    _whole_dirs = True

    def paths(self) -> tuple[Path, ...]:
        return (Path("/var/lib/docker"),)

    @property
    def unavailable_reason(self) -> str | None:
        if shutil.which("docker") is None:
            return "docker not installed"
        return super().unavailable_reason

    def clean(self, items: list[SourceItem]) -> CleanOutcome:
        proc = run_privileged_command(["docker", "system", "prune", "--force"])
        if proc.returncode != 0:
            stderr = proc.stderr.strip()
            return CleanOutcome(
                source_id=self.id, error=f"docker system prune failed (exit {proc.returncode}): {stderr}"
            )

        freed = 0
        for line in proc.stdout.splitlines():
            label, sep, value = line.partition(":")
            if sep and label.strip() == "Total reclaimed space":
                freed = parse_size(value)
        log.info("Docker prune reclaimed %d bytes", freed)
        return CleanOutcome(source_id=self.id, freed_bytes=freed, items_removed=len(items))
