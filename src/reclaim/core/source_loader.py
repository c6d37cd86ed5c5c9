"""Discovery of built-in storage sources."""

from __future__ import annotations

import importlib
import inspect
import logging
import pkgutil
from types import ModuleType

from reclaim.core.registry import SourceRegistry
from reclaim.models.source import DirectorySource, StorageSource

log = logging.getLogger(__name__)

# Abstract base classes that should not be instantiated
_ABSTRACT_BASES = {StorageSource, DirectorySource}


def _find_sources_in_module(module: ModuleType) -> list[type[StorageSource]]:
    """Find all StorageSource subclasses defined in a module."""
    found: list[type[StorageSource]] = []
    for _, obj in inspect.getmembers(module, inspect.isclass):
        if (
            issubclass(obj, StorageSource)
            and obj not in _ABSTRACT_BASES
            and not inspect.isabstract(obj)
            and obj.__module__ == module.__name__
        ):
            found.append(obj)
    return found


def load_sources(registry: SourceRegistry) -> None:
    """Discover and register every source in the ``reclaim.sources`` package."""
    import reclaim.sources as sources_pkg

    classes: list[type[StorageSource]] = []
    for _importer, modname, _ispkg in pkgutil.iter_modules(sources_pkg.__path__):
        try:
            module = importlib.import_module(f"reclaim.sources.{modname}")
        except ImportError:
            log.exception("Failed to load source module: %s", modname)
            continue
        classes.extend(_find_sources_in_module(module))

    for cls in classes:
        try:
            registry.register(cls())
        except (TypeError, OSError):
            log.exception("Failed to instantiate source: %s", cls.__name__)

    log.info("Loaded %d sources", len(registry))
