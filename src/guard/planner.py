from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Set, Union

from src.guard.blacklist import Blacklist
from src.guard.errors import PlanningError
from src.guard.types import (
    EndpointGroup,
    FixtureCase,
    Outcome,
    Plan,
    PlanEntry,
    RunMode,
    TestResult,
)

logger = logging.getLogger(__name__)


@dataclass
class PlanFilters:
    module: Optional[str] = None              # fixture module tag
    resources: Optional[Sequence[str]] = None  # restrict to these resource names


class Planner:
    """
    Turns an endpoint catalog (or a fixture list) into an ordered Plan.

    Planning errors are raised before anything touches the network.
    """

    def __init__(self, blacklist: Optional[Blacklist] = None) -> None:
        self.blacklist = blacklist or Blacklist()

    def build_plan(
        self,
        catalog: Union[Sequence[EndpointGroup], Sequence[FixtureCase]],
        mode: Union[RunMode, str] = RunMode.FULL,
        filters: Optional[PlanFilters] = None,
    ) -> Plan:
        mode = RunMode(mode)
        filters = filters or PlanFilters()
        if mode is RunMode.FIXTURES:
            return self._plan_fixtures(list(catalog), filters)

        groups, dropped = self.blacklist.filter_groups(list(catalog))
        if dropped:
            logger.info("Dropped %d blacklisted endpoint(s)", dropped)
        if filters.resources:
            wanted = set(filters.resources)
            groups = [g for g in groups if g.resource in wanted]

        if mode is RunMode.READONLY:
            return self._plan_readonly(groups)
        return self._plan_full(groups)

    def _plan_full(self, groups: List[EndpointGroup]) -> Plan:
        plan = Plan(entries=[])
        for group in groups:
            if group.has_triad():
                plan.entries.append(PlanEntry(entry_id=group.resource, target=group, mode=RunMode.FULL))
                continue
            missing = [m for m in ("GET", "DELETE", "POST") if group.find(m) is None]
            plan.skipped.append(TestResult(
                entry_id=group.resource,
                outcome=Outcome.SKIPPED,
                reason=f"no {'/'.join(missing)} endpoint",
            ))
        return plan

    def _plan_readonly(self, groups: List[EndpointGroup]) -> Plan:
        entries = [
            PlanEntry(entry_id=endpoint.key, target=endpoint, mode=RunMode.READONLY)
            for group in groups
            for endpoint in group.endpoints
            if endpoint.method == "GET"
        ]
        return Plan(entries=entries)

    def _plan_fixtures(self, cases: List[FixtureCase], filters: PlanFilters) -> Plan:
        by_id: Dict[str, FixtureCase] = {}
        for case in cases:
            if case.case_id in by_id:
                raise PlanningError(f"duplicate fixture case id: {case.case_id}", [case.case_id])
            by_id[case.case_id] = case

        allowed = self.blacklist.filter_cases(cases)
        excluded = {c.case_id for c in cases} - {c.case_id for c in allowed}
        for case in cases:
            for dep in case.depends_on:
                if dep not in by_id:
                    raise PlanningError(f"{case.case_id} depends on unknown case {dep}", [case.case_id, dep])
                if dep in excluded and case.case_id not in excluded:
                    raise PlanningError(f"{case.case_id} depends on blacklisted case {dep}", [case.case_id, dep])

        selected = allowed
        if excluded:
            logger.info("Dropped %d blacklisted fixture case(s)", len(excluded))
        if filters.module:
            selected = _with_dependencies(
                [c for c in selected if c.module == filters.module], by_id
            )

        ordered = _toposort(selected)
        entries = [
            PlanEntry(entry_id=c.case_id, target=c, mode=RunMode.FIXTURES, depends_on=tuple(c.depends_on))
            for c in ordered
        ]
        return Plan(entries=entries)


def _with_dependencies(roots: List[FixtureCase], by_id: Dict[str, FixtureCase]) -> List[FixtureCase]:
    keep: Set[str] = set()
    stack = [c.case_id for c in roots]
    while stack:
        case_id = stack.pop()
        if case_id in keep:
            continue
        keep.add(case_id)
        stack.extend(by_id[case_id].depends_on)
    # declaration order is preserved for the tie-break
    return [c for c in by_id.values() if c.case_id in keep]


def _toposort(cases: List[FixtureCase]) -> List[FixtureCase]:
    """Kahn's algorithm; ready cases leave by (priority, declaration index)."""
    index = {c.case_id: i for i, c in enumerate(cases)}
    indegree = {c.case_id: len(set(c.depends_on)) for c in cases}
    dependents: Dict[str, List[str]] = {c.case_id: [] for c in cases}
    for c in cases:
        for dep in set(c.depends_on):
            dependents[dep].append(c.case_id)

    heap = [(c.priority, index[c.case_id], c.case_id) for c in cases if indegree[c.case_id] == 0]
    heapq.heapify(heap)
    ordered: List[FixtureCase] = []
    while heap:
        _, i, case_id = heapq.heappop(heap)
        ordered.append(cases[i])
        for child in dependents[case_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                c = cases[index[child]]
                heapq.heappush(heap, (c.priority, index[child], child))

    if len(ordered) != len(cases):
        stuck = sorted((cid for cid, n in indegree.items() if n > 0), key=index.get)
        raise PlanningError(f"dependency cycle among: {', '.join(stuck)}", stuck)
    return ordered
