"""Shared utility functions."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

log = logging.getLogger(__name__)


def xdg_cache_home() -> Path:
    """Return XDG_CACHE_HOME, defaulting to ~/.cache."""
    return Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache"))


def xdg_config_home() -> Path:
    """Return XDG_CONFIG_HOME, defaulting to ~/.config."""
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def xdg_data_home() -> Path:
    """Return XDG_DATA_HOME, defaulting to ~/.local/share."""
    return Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))


def path_size(path: Path | str) -> int:
    """Apparent size of a file, symlink or whole directory tree."""
    st = os.lstat(path)
    if os.path.isdir(path) and not os.path.islink(path):
        return dir_info(path)[0]
    return st.st_size


def remove_paths(paths: list[str]) -> list[dict]:
    """Remove each path independently and report per-path outcomes.

    This is what the privileged side of the gateway runs.  Critical
    paths (``/``, top-level system directories, user homes) are refused.

    Returns:
        List of dicts with 'path', 'deleted', 'freed_bytes' and 'error'.
    """
    from reclaim.core.ownership import is_critical_path

    results: list[dict] = []
    for raw in paths:
        result = {"path": raw, "deleted": False, "freed_bytes": 0, "error": ""}
        path = Path(raw)
        if not path.is_absolute() or is_critical_path(path):
            result["error"] = "Refusing to delete a critical path"
            results.append(result)
            continue
        try:
            size = path_size(path)
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink()
            result["deleted"] = True
            result["freed_bytes"] = size
        except OSError as e:
            result["error"] = f"{path}: {e.strerror or e}"
        results.append(result)
    return results


def dir_info(path: Path | str) -> tuple[int, int]:
    """Calculate total size and file count of a directory tree.

    Uses GNU ``find`` (C-speed walk) when available, falling back to
    ``os.scandir`` on systems without it.

    Returns:
        (total_bytes, file_count) tuple.
    """
    try:
        return _dir_info_find(str(path))
    except (OSError, subprocess.SubprocessError, ValueError):
        return _dir_info_scandir(path)


def _dir_info_find(path_str: str) -> tuple[int, int]:
    """Walk a directory tree using GNU find (pure C, no Python per-file overhead)."""
    proc = subprocess.run(
        ["find", path_str, "-xdev", "-type", "f", "-printf", "%s\n"],
        capture_output=True, timeout=60,
    )
    total = count = 0
    for line in proc.stdout.split(b"\n"):
        if line:
            total += int(line)
            count += 1
    return total, count


def _dir_info_scandir(path: Path | str) -> tuple[int, int]:
    """Walk a directory tree using os.scandir (pure Python fallback)."""
    total = 0
    count = 0
    stack: list[Path | str] = [path]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                for entry in it:
                    try:
                        if entry.is_file(follow_symlinks=False):
                            total += entry.stat(follow_symlinks=False).st_size
                            count += 1
                        elif entry.is_dir(follow_symlinks=False):
                            stack.append(entry.path)
                    except OSError:
                        log.debug("Cannot stat: %s", entry.path)
        except OSError:
            log.debug("Cannot list: %s", current)
    return total, count


def bytes_to_human(size_bytes: int) -> str:
    """Convert byte count to a human-readable string."""
    if size_bytes < 0:
        return f"-{bytes_to_human(-size_bytes)}"
    if size_bytes == 0:
        return "0 B"

    units = ("B", "KB", "MB", "GB", "TB")
    value = float(size_bytes)
    for unit in units[:-1]:
        if abs(value) < 1024:
            return f"{value:.1f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.1f} {units[-1]}"


_SIZE_UNITS = {
    "b": 1,
    "kb": 1000, "mb": 1000**2, "gb": 1000**3, "tb": 1000**4,
    "kib": 1024, "mib": 1024**2, "gib": 1024**3, "tib": 1024**4,
}


def parse_size(text: str) -> int:
    """Parse a size printed by a package tool, e.g. ``12.5 MiB`` or ``1.2GB``.

    Binary (KiB) and decimal (kB) units are both accepted.  Returns 0 for
    text that is not a size.
    """
    text = text.strip()
    number = text.rstrip("kKMGTiBb ")
    unit = text[len(number):].strip().lower()
    try:
        value = float(number)
    except ValueError:
        return 0
    return int(value * _SIZE_UNITS.get(unit or "b", 0))
