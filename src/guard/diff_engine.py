from __future__ import annotations

from typing import Any, Iterable, List, Optional

from src.guard.types import DiffKind, Difference

_MISSING = object()


class DiffEngine:
    """
    Structural diff of two JSON-like trees.

    Paths look like ``name``, ``owner.email``, ``tags[2]``; a scalar mismatch at the
    top level is reported at ``root``. Keys of ``expected`` are walked first (in
    their own order), then keys only present in ``actual``. Arrays are compared by
    index. Pure: no state is kept between calls.
    """

    def __init__(self, ignored_paths: Optional[Iterable[str]] = None) -> None:
        self.ignored_paths = frozenset(p for p in (ignored_paths or ()) if p)

    def diff(self, expected: Any, actual: Any) -> List[Difference]:
        out: List[Difference] = []
        self._walk(expected, actual, "", out)
        return out

    def _ignored(self, path: str) -> bool:
        for prefix in self.ignored_paths:
            if path == prefix or path.startswith(prefix + ".") or path.startswith(prefix + "["):
                return True
        return False

    def _emit(self, out: List[Difference], path: str, expected: Any, actual: Any, kind: DiffKind) -> None:
        path = path or "root"
        if self._ignored(path):
            return
        out.append(Difference(
            path=path,
            expected=None if expected is _MISSING else expected,
            actual=None if actual is _MISSING else actual,
            kind=kind,
        ))

    def _walk(self, a: Any, b: Any, path: str, out: List[Difference]) -> None:
        if path and self._ignored(path):
            return

        if isinstance(a, dict) and isinstance(b, dict):
            for key, value in a.items():
                child = f"{path}.{key}" if path else str(key)
                if key not in b:
                    self._emit(out, child, value, _MISSING, DiffKind.REMOVED)
                else:
                    self._walk(value, b[key], child, out)
            for key, value in b.items():
                if key not in a:
                    child = f"{path}.{key}" if path else str(key)
                    self._emit(out, child, _MISSING, value, DiffKind.ADDED)
            return

        if isinstance(a, list) and isinstance(b, list):
            for i in range(max(len(a), len(b))):
                child = f"{path}[{i}]"
                if i >= len(b):
                    self._emit(out, child, a[i], _MISSING, DiffKind.REMOVED)
                elif i >= len(a):
                    self._emit(out, child, _MISSING, b[i], DiffKind.ADDED)
                else:
                    self._walk(a[i], b[i], child, out)
            return

        if not _scalar_equal(a, b):
            self._emit(out, path, a, b, DiffKind.CHANGED)


def _scalar_equal(a: Any, b: Any) -> bool:
    # JSON keeps booleans and numbers apart; Python's True == 1 does not
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    if isinstance(a, (dict, list)) or isinstance(b, (dict, list)):
        return False
    return a == b


def diff(expected: Any, actual: Any, ignored_paths: Optional[Iterable[str]] = None) -> List[Difference]:
    return DiffEngine(ignored_paths).diff(expected, actual)
