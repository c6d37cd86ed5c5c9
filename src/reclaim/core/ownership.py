"""Ownership classification of removal targets."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

log = logging.getLogger(__name__)

# Top-level directories that are never removed, no matter who asks.
_SYSTEM_ROOTS = frozenset(
    Path(p)
    for p in (
        "/", "/bin", "/boot", "/dev", "/etc", "/home", "/lib", "/lib32", "/lib64",
        "/media", "/mnt", "/opt", "/proc", "/root", "/run", "/sbin", "/srv",
        "/sys", "/tmp", "/usr", "/var",
    )
)


class IdentityError(Exception):
    """Raised when the invoking user's identity or home cannot be resolved."""


class Verdict(str, Enum):
    """How a path may be removed."""

    HOME_OWNED = "home_owned"
    PROTECTED = "protected"


@dataclass(frozen=True, slots=True)
class Identity:
    """Effective uid and canonical home directory of the invoking user."""

    uid: int
    home: Path

    @classmethod
    def current(cls) -> Identity:
        """Resolve the identity of the running process.

        Raises:
            IdentityError: If the home directory is unknown or missing.
        """
        try:
            home = Path.home()
        except (KeyError, RuntimeError) as exc:
            raise IdentityError(f"Cannot determine home directory: {exc}") from exc
        if not home.is_dir():
            raise IdentityError(f"Home directory does not exist: {home}")
        return cls(uid=os.geteuid(), home=Path(os.path.realpath(home)))


def _within(path: Path, parent: Path) -> bool:
    return path == parent or parent in path.parents


def classify(path: Path | str, identity: Identity) -> Verdict:
    """Decide whether *path* may go to the trash or needs elevation.

    Symlinks are resolved first, so a link inside the home tree that
    points at a system file is classified by its target.  A path that no
    longer exists is classified by location alone.
    """
    resolved = Path(os.path.realpath(path))
    if not _within(resolved, identity.home):
        return Verdict.PROTECTED
    try:
        owner = os.lstat(resolved).st_uid
    except FileNotFoundError:
        return Verdict.HOME_OWNED
    except OSError as e:
        log.debug("Cannot stat %s for classification: %s", resolved, e)
        return Verdict.PROTECTED
    return Verdict.HOME_OWNED if owner == identity.uid else Verdict.PROTECTED


def is_critical_path(path: Path | str, home: Path | None = None) -> bool:
    """Whether *path* is a directory whose removal would wreck the system.

    Covers ``/``, top-level system directories, every ``/home/<user>``
    and, when *home* is given, the home directory and its ancestors.
    """
    resolved = Path(os.path.realpath(path))
    if resolved in _SYSTEM_ROOTS:
        return True
    if resolved.parent == Path("/home"):
        return True
    if home is not None and _within(home, resolved):
        return True
    return False
