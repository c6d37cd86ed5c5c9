"""Shared test fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from reclaim.core.ownership import Identity
from reclaim.settings import Settings


def make_file(path: Path, size: int) -> Path:
    """Create a (sparse) file of exactly *size* apparent bytes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.truncate(size)
    return path


@pytest.fixture
def fake_home(tmp_path, monkeypatch):
    """Point HOME and the XDG directories at a temp directory."""
    home = Path(os.path.realpath(tmp_path)) / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("XDG_DATA_HOME", str(home / ".local" / "share"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(home / ".config"))
    monkeypatch.setenv("XDG_CACHE_HOME", str(home / ".cache"))
    monkeypatch.setattr(Settings, "_instance", None)
    return home


@pytest.fixture
def identity(fake_home):
    return Identity(uid=os.geteuid(), home=fake_home)


@pytest.fixture
def outside(tmp_path):
    """A directory outside the fake home."""
    path = Path(os.path.realpath(tmp_path)) / "outside"
    path.mkdir()
    return path
