"""Disk usage of the mounts users care about."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import psutil

log = logging.getLogger(__name__)

_MOUNT_POINTS = ("/", "/home")


@dataclass(slots=True, frozen=True)
class DiskUsage:
    """Capacity of one mounted filesystem."""

    mount_point: str
    total_bytes: int
    used_bytes: int
    free_bytes: int
    fstype: str = ""

    @property
    def percent_used(self) -> float:
        """Share of the space available to users that is taken, like ``df``."""
        available = self.used_bytes + self.free_bytes
        return 100.0 * self.used_bytes / available if available else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "mount_point": self.mount_point,
            "fstype": self.fstype,
            "total_bytes": self.total_bytes,
            "used_bytes": self.used_bytes,
            "free_bytes": self.free_bytes,
            "percent_used": round(self.percent_used, 1),
        }


def get_disks(mount_points: tuple[str, ...] = _MOUNT_POINTS) -> list[DiskUsage]:
    """Usage of each of *mount_points* that is actually a mount point."""
    try:
        fstypes = {p.mountpoint: p.fstype for p in psutil.disk_partitions(all=True)}
    except OSError as e:
        log.debug("Cannot list partitions: %s", e)
        fstypes = {}

    disks: list[DiskUsage] = []
    for mount in mount_points:
        if not os.path.ismount(mount):
            continue
        try:
            usage = psutil.disk_usage(mount)
        except OSError as e:
            log.warning("Cannot read disk usage of %s: %s", mount, e)
            continue
        disks.append(
            DiskUsage(
                mount_point=mount,
                total_bytes=int(usage.total),
                used_bytes=int(usage.used),
                free_bytes=int(usage.free),
                fstype=fstypes.get(mount, ""),
            )
        )
    disks.sort(key=lambda d: d.mount_point)
    return disks
