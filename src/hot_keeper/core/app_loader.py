"""Entry module loading and the handler/listener adapter step.

The entry is a Python file plus an attribute name (``app.py:app``). Loading
imports the file by its dotted module name and looks up the attribute; the
adapter then decides, once per load, which variant the object is:

- ``HandlerOnly``: an ASGI callable. The listener manager binds the socket
  and dispatches requests to it.
- ``SelfListening``: an object with its own ``listen(port, ready)``. It binds
  and owns its socket; the manager only asks it to close.
"""

import importlib
import inspect
import os
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Optional, Tuple, Union

from loguru import logger

from .errors import AppContractError, ConfigInvalid, ReloadFailure
from .path_filter import PathFilter, normalize_path

DEFAULT_ATTRIBUTE = "app"


@dataclass(frozen=True)
class EntryPoint:
    """Resolved entry file and the attribute exposing the application."""

    path: Path
    attribute: str = DEFAULT_ATTRIBUTE

    @classmethod
    def parse(cls, value: str, cwd: Optional[Path] = None) -> "EntryPoint":
        """Parse ``path[:attribute]`` into an EntryPoint with an absolute path.

        Raises:
            ConfigInvalid: If the value is empty or the attribute is not an identifier.
        """
        if not value or not value.strip():
            raise ConfigInvalid("Entry file is required")

        path_part, attribute = value, DEFAULT_ATTRIBUTE
        head, sep, tail = value.rpartition(":")
        # "C:\app.py" has a colon too; only split when the tail looks like a name
        if sep and head and tail and not any(c in tail for c in "/\\."):
            path_part, attribute = head, tail
            if not attribute.isidentifier():
                raise ConfigInvalid(f"Invalid application attribute: {attribute!r}")

        return cls(path=Path(normalize_path(path_part, cwd)), attribute=attribute)

    def import_target(self) -> Tuple[str, Path]:
        """Return ``(dotted module name, sys.path root)`` for the entry file.

        Walks up through directories containing ``__init__.py`` so that an
        entry inside a package keeps working relative imports.
        """
        parts = [self.path.stem]
        directory = self.path.parent
        while (directory / "__init__.py").exists() and directory.parent != directory:
            parts.insert(0, directory.name)
            directory = directory.parent
        if parts[-1] == "__init__":
            parts.pop()
        return ".".join(parts), directory

    def __str__(self) -> str:
        return f"{self.path}:{self.attribute}"


class AppKind(Enum):
    """Which side owns the listen socket."""

    HANDLER_ONLY = "handler_only"
    SELF_LISTENING = "self_listening"


@dataclass(frozen=True)
class HandlerOnly:
    """ASGI application; the listener manager binds for it."""

    app: Callable[..., Any]
    kind = AppKind.HANDLER_ONLY


@dataclass(frozen=True)
class SelfListening:
    """Application object exposing ``listen(port, ready)``."""

    server: Any
    kind = AppKind.SELF_LISTENING


AppTarget = Union[HandlerOnly, SelfListening]


def adapt_app(obj: Any, secure: bool = False) -> AppTarget:
    """Classify a loaded application object.

    Without TLS a ``listen`` capability wins, so frameworks that run their own
    server keep doing so. With TLS the manager always owns the socket, so the
    object must be a request handler.

    Raises:
        AppContractError: If the object offers neither capability.
    """
    listen = getattr(obj, "listen", None)
    can_listen = callable(listen) and not inspect.isclass(obj)

    if secure:
        if callable(obj):
            return HandlerOnly(app=obj)
        raise AppContractError(
            f"Secure mode needs a request handler, got {type(obj).__name__} "
            "exposing only listen()"
        )

    if can_listen:
        return SelfListening(server=obj)
    if callable(obj):
        return HandlerOnly(app=obj)

    raise AppContractError(
        f"Entry object {type(obj).__name__} is neither an ASGI application "
        "nor an object with listen(port, ready)"
    )


def _ensure_on_sys_path(root: Path) -> None:
    root_str = str(root)
    if root_str not in sys.path:
        sys.path.insert(0, root_str)


def import_entry_module(entry: EntryPoint, path_filter: Optional[PathFilter] = None) -> ModuleType:
    """Import the entry module, executing it if it is not cached.

    A module already cached under the entry's dotted name but loaded from
    another file is dropped only when ``path_filter`` covers that file (a
    stale application module). Anything else, such as an entry named
    ``json.py``, would replace a library module for the whole process.

    Raises:
        ConfigInvalid: If the entry's module name is taken by a module
            outside the watched application code.
        ReloadFailure: If the file is missing, fails to execute, or the
            module name resolves to a different file.
    """
    if not entry.path.is_file():
        raise ReloadFailure(f"Entry file not found: {entry.path}")

    name, root = entry.import_target()
    _ensure_on_sys_path(root)
    importlib.invalidate_caches()

    cached = sys.modules.get(name)
    if cached is not None:
        cached_file = getattr(cached, "__file__", None)
        if not cached_file or normalize_path(cached_file) != normalize_path(entry.path):
            if not cached_file or path_filter is None or not path_filter.matches(cached_file):
                raise ConfigInvalid(
                    f"Entry module name {name!r} is already taken by "
                    f"{cached_file or 'a built-in module'}; rename {entry.path.name}"
                )
            del sys.modules[name]

    try:
        module = importlib.import_module(name)
    except Exception as e:
        raise ReloadFailure(f"Failed to load {entry.path}: {e!r}") from e

    loaded_from = getattr(module, "__file__", None)
    if loaded_from and normalize_path(loaded_from) != normalize_path(entry.path):
        raise ReloadFailure(
            f"Module name {name!r} resolved to {loaded_from}, not {entry.path}"
        )
    return module


def load_entry(
    entry: EntryPoint,
    secure: bool = False,
    path_filter: Optional[PathFilter] = None,
) -> AppTarget:
    """Import the entry and adapt its application object.

    Raises:
        ConfigInvalid: If the entry's module name shadows a library module.
        ReloadFailure: If import fails.
        AppContractError: If the attribute is missing or unusable.
    """
    module = import_entry_module(entry, path_filter)
    try:
        obj = getattr(module, entry.attribute)
    except AttributeError:
        raise AppContractError(
            f"{os.path.basename(entry.path)} has no attribute {entry.attribute!r}"
        ) from None

    target = adapt_app(obj, secure=secure)
    logger.debug("Loaded {} as {}", entry, target.kind.value)
    return target
