"""Process-wide store for values that must survive hot reloads.

Application modules import this module directly:

    from hot_keeper.keeper import keep, kept

    counter = kept("counter", 0)
    keep("counter", counter + 1)

The module belongs to the ``hot_keeper`` package, which the module cache
invalidator never removes from ``sys.modules``. The store is created once,
on first import, and lives until the process exits. Nothing in here knows
about reloads.
"""

from typing import Any, Dict

_MISSING = object()

_store: Dict[str, Any] = {}


def keep(name: str, value: Any) -> None:
    """Keep a value under ``name`` so later generations can read it."""
    _store[name] = value


def kept(name: str, default: Any = None) -> Any:
    """Return the value kept under ``name``, or ``default`` if there is none.

    A value explicitly kept as ``None`` is returned as ``None``; ``default``
    only applies when the name was never kept.
    """
    value = _store.get(name, _MISSING)
    if value is _MISSING:
        return default
    return value
