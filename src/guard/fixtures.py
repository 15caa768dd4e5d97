from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from src.guard.errors import PlanningError
from src.guard.types import FixtureCase

_PARAM_RE = re.compile(r"\{([^}]+)\}")
_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


def split_endpoint(endpoint: str) -> Tuple[str, str]:
    """'POST /api/x' -> ('POST', '/api/x'); a bare path defaults to POST."""
    head, _, rest = endpoint.strip().partition(" ")
    if head.upper() in _METHODS and rest:
        return head.upper(), rest.strip()
    return "POST", endpoint.strip()


def build_path(template: str, params: Mapping[str, Any]) -> str:
    _, path = split_endpoint(template)

    def _sub(m: re.Match) -> str:
        name = m.group(1)
        if name not in params:
            return m.group(0)
        return str(params[name])

    return _PARAM_RE.sub(_sub, path)


def case_from_dict(raw: Dict[str, Any]) -> FixtureCase:
    if "endpoint" not in raw:
        raise ValueError(f"fixture case without endpoint: {raw}")
    endpoint = str(raw["endpoint"])
    return FixtureCase(
        case_id=str(raw.get("id") or endpoint),
        endpoint=endpoint,
        description=str(raw.get("description", "")),
        path_params={k: str(v) for k, v in (raw.get("path_params") or {}).items()},
        request_body=raw.get("request_body"),
        expected_status=int(raw.get("expected_status", 200)),
        verify_endpoint=raw.get("verify_endpoint"),
        cleanup_endpoint=raw.get("cleanup_endpoint"),
        cleanup_body=raw.get("cleanup_body"),
        depends_on=tuple(str(d) for d in (raw.get("depends_on") or ())),
        priority=int(raw.get("priority", 99)),
        module=str(raw.get("module", "")),
        expected_response=raw.get("expected_response"),
    )


def load_fixtures(path: str, module: Optional[str] = None) -> List[FixtureCase]:
    """
    Read fixture cases from a YAML list (or a mapping with a 'cases' list).
    Module filtering is left to the planner so dependencies stay resolvable.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Fixture file not found: {p}")
    data = yaml.safe_load(p.read_text(encoding="utf-8")) or []
    if isinstance(data, dict):
        data = data.get("cases") or []
    cases = [case_from_dict(item) for item in data]

    seen: Dict[str, FixtureCase] = {}
    for case in cases:
        if case.case_id in seen:
            raise PlanningError(f"duplicate fixture case id: {case.case_id}", [case.case_id])
        seen[case.case_id] = case
    return cases
