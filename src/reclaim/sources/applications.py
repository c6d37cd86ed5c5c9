"""Installed application data, shown for information."""

from __future__ import annotations

from pathlib import Path

from reclaim.models.source import DirectorySource
from reclaim.utils import xdg_data_home


class SteamSource(DirectorySource):
    """Steam client, installed games and shader caches."""

    id = "steam"
    name = "Steam"
    description = "Steam library and client data; uninstall games from Steam instead"
    category = "applications"
    removable = False
    sort_order = 10

    def paths(self) -> tuple[Path, ...]:
        return (xdg_data_home() / "Steam",)


class FlatpakSource(DirectorySource):
    """System-wide and per-user Flatpak installations."""

    id = "flatpak"
    name = "Flatpak"
    description = "Flatpak runtimes and applications; remove them with 'flatpak uninstall --unused'"
    category = "applications"
    removable = False
    sort_order = 20
    _whole_dirs = True

    def paths(self) -> tuple[Path, ...]:
        return (Path("/var/lib/flatpak"), xdg_data_home() / "flatpak")
