"""Module cache invalidation before each reload.

Removes from ``sys.modules`` every module whose source file belongs to the
watched application code, so the next import re-reads it from disk. The
module cache is only ever shrunk here, never populated.
"""

import importlib
import sys
from types import ModuleType
from typing import Mapping, MutableMapping, Optional, Set

from loguru import logger

from .path_filter import PathFilter

# Never removed, whatever the watch set says: removing hot_keeper would
# re-create the persistent store on the next import.
PROTECTED_MODULES = ("hot_keeper", "__main__")


def _is_protected(name: str) -> bool:
    return any(name == p or name.startswith(p + ".") for p in PROTECTED_MODULES)


def module_file(module: Optional[ModuleType]) -> Optional[str]:
    """Return the source file of ``module``, or None for builtins and namespaces."""
    if module is None:
        return None
    path = getattr(module, "__file__", None)
    if not path or not isinstance(path, str):
        return None
    return path


def select_stale(path_filter: PathFilter, cache: Mapping[str, Optional[str]]) -> Set[str]:
    """Pick the cache keys eligible for removal.

    Args:
        path_filter: Watch/exclude rules.
        cache: Mapping of cache key (module name) to its file path.

    Returns:
        Keys whose path is watched and not excluded.
    """
    stale = set()
    for key, path in cache.items():
        if path is None or _is_protected(key):
            continue
        if path_filter.matches(path):
            stale.add(key)
    return stale


def invalidate(
    path_filter: PathFilter,
    modules: Optional[MutableMapping[str, ModuleType]] = None,
) -> Set[str]:
    """Forget every cached module that lives under the watched paths.

    Args:
        path_filter: Watch/exclude rules shared with the change bridge.
        modules: Module cache to prune (default: ``sys.modules``).

    Returns:
        The set of removed module names.
    """
    if modules is None:
        modules = sys.modules

    snapshot = {name: module_file(mod) for name, mod in list(modules.items())}
    removed = select_stale(path_filter, snapshot)
    for name in removed:
        modules.pop(name, None)

    # Finders cache directory listings; new files must be visible to the reload.
    importlib.invalidate_caches()

    logger.debug("Invalidated {} cached modules", len(removed))
    return removed
