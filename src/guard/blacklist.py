from __future__ import annotations

import re
from typing import Iterable, List, Pattern, Sequence, Tuple

from src.guard.types import EndpointDescriptor, EndpointGroup, FixtureCase

_PARAM_RE = re.compile(r"\{[^}]+\}")


def _normalize(entry: str) -> str:
    method, _, path = entry.strip().partition(" ")
    return f"{method.upper()} {path.strip()}"


def _compile(entry: str) -> Pattern[str]:
    # each {param} matches exactly one path segment
    literal_parts = _PARAM_RE.split(entry)
    return re.compile("^" + "[^/]+".join(re.escape(p) for p in literal_parts) + "$")


class Blacklist:
    """
    Static exclusion list of "METHOD /path" entries.

    "POST /api/v3/{zone}/trigger" excludes the template itself and any concrete
    path where {zone} is a single segment, e.g. "POST /api/v3/raw/trigger".
    """

    def __init__(self, entries: Iterable[str] = ()) -> None:
        self.entries: Tuple[str, ...] = tuple(_normalize(e) for e in entries if e and e.strip())
        self._patterns: List[Pattern[str]] = [_compile(e) for e in self.entries]

    def __len__(self) -> int:
        return len(self.entries)

    def is_excluded(self, method: str, path: str) -> bool:
        key = f"{method.upper()} {path}"
        if key in self.entries:
            return True
        return any(p.match(key) for p in self._patterns)

    def filter_endpoints(self, endpoints: Sequence[EndpointDescriptor]) -> List[EndpointDescriptor]:
        return [e for e in endpoints if not self.is_excluded(e.method, e.path)]

    def filter_groups(self, groups: Sequence[EndpointGroup]) -> Tuple[List[EndpointGroup], int]:
        """Drop excluded endpoints; groups left empty disappear. Returns (groups, dropped count)."""
        kept: List[EndpointGroup] = []
        dropped = 0
        for group in groups:
            endpoints = self.filter_endpoints(group.endpoints)
            dropped += len(group.endpoints) - len(endpoints)
            if endpoints:
                kept.append(EndpointGroup(resource=group.resource, endpoints=tuple(endpoints)))
        return kept, dropped

    def case_excluded(self, case: FixtureCase) -> bool:
        method, _, path = case.endpoint.partition(" ")
        return self.is_excluded(method, path.strip())

    def filter_cases(self, cases: Sequence[FixtureCase]) -> List[FixtureCase]:
        return [c for c in cases if not self.case_excluded(c)]
