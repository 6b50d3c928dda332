"""Watch/exclude path matching shared by the invalidator and the change bridge.

Both consumers must agree on which files belong to the application, so the
rules live in one place:

- A path is *watched* when it is, or sits below, one of the resolved watch
  paths. Containment is a directory-prefix test with a trailing separator,
  so ``/app/src`` does not contain ``/app/src-old/x.py``.
- A path is *excluded* when it is, or sits below, one of the resolved
  exclude paths, or when the exclude entry is a bare name (``node_modules``,
  ``.git``) equal to any segment of the path at any depth.
- Exclusion wins over inclusion.
"""

import os
from pathlib import Path
from typing import Iterable, List, Optional, Union

PathLike = Union[str, "os.PathLike[str]"]


def normalize_path(path: PathLike, cwd: Optional[PathLike] = None) -> str:
    """Resolve ``path`` against ``cwd`` to a normalized absolute string.

    Symlinks are followed so that module ``__file__`` values and watchdog
    event paths compare equal to the configured directories.
    """
    expanded = os.path.expanduser(os.fspath(path))
    if not os.path.isabs(expanded):
        expanded = os.path.join(os.fspath(cwd) if cwd is not None else os.getcwd(), expanded)
    resolved = os.path.realpath(expanded)
    return os.path.normcase(os.path.normpath(resolved))


def is_within(path: str, directory: str) -> bool:
    """Return True if normalized ``path`` equals or sits below ``directory``."""
    if path == directory:
        return True
    prefix = directory if directory.endswith(os.sep) else directory + os.sep
    return path.startswith(prefix)


def _is_bare_name(entry: str) -> bool:
    stripped = entry.strip().rstrip("/\\")
    return bool(stripped) and stripped not in (".", "..") and "/" not in stripped and "\\" not in stripped


class PathFilter:
    """Decide whether a file belongs to the watched application code.

    Args:
        watch_paths: Files or directories whose contents are hot-reloaded.
        exclude_paths: Paths (resolved against ``cwd``) or bare directory
            names that are never reloaded or watched.
        cwd: Base directory for relative entries (default: process cwd).

    Example:
        >>> f = PathFilter(["./src"], ["node_modules"], cwd="/app")
        >>> f.matches("/app/src/main.py")
        True
        >>> f.matches("/app/src/node_modules/x.js")
        False
    """

    def __init__(
        self,
        watch_paths: Iterable[PathLike],
        exclude_paths: Iterable[PathLike] = (),
        cwd: Optional[PathLike] = None,
    ):
        self.watch_paths: List[str] = [normalize_path(p, cwd) for p in watch_paths]
        self.exclude_paths: List[str] = []
        self.exclude_names: List[str] = []

        for entry in exclude_paths:
            entry = os.fspath(entry)
            self.exclude_paths.append(normalize_path(entry, cwd))
            if _is_bare_name(entry):
                self.exclude_names.append(os.path.normcase(entry.strip().rstrip("/\\")))

    def is_watched(self, path: PathLike) -> bool:
        """True if ``path`` is under at least one watch path."""
        normalized = normalize_path(path)
        return any(is_within(normalized, w) for w in self.watch_paths)

    def is_excluded(self, path: PathLike) -> bool:
        """True if ``path`` is under an exclude path or has an excluded segment."""
        normalized = normalize_path(path)
        if any(is_within(normalized, e) for e in self.exclude_paths):
            return True
        if self.exclude_names:
            segments = Path(self._relative_to_watch_root(normalized)).parts
            return any(name in segments for name in self.exclude_names)
        return False

    def _relative_to_watch_root(self, normalized: str) -> str:
        # Name matching only looks below the watch root: a project checked out
        # at /srv/build/app is not excluded by an exclude entry of "build".
        roots = [w for w in self.watch_paths if is_within(normalized, w)]
        if not roots:
            return normalized
        return os.path.relpath(normalized, max(roots, key=len))

    def matches(self, path: PathLike) -> bool:
        """True if ``path`` is watched and not excluded."""
        return self.is_watched(path) and not self.is_excluded(path)

    def glob_patterns(self) -> List[str]:
        """Exclude entries rendered as ``**/<entry>/**`` patterns (for logging)."""
        return [f"**/{name}/**" for name in self.exclude_names] + [
            f"{p}{os.sep}**" for p in self.exclude_paths
        ]

    def __repr__(self) -> str:
        return f"PathFilter(watch={self.watch_paths!r}, exclude={self.exclude_paths!r})"
