from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class StepKind(str, Enum):
    AUTH = "AUTH"
    GET = "GET"
    DELETE = "DELETE"
    POST = "POST"
    VERIFY = "VERIFY"
    COMPARE = "COMPARE"
    VALIDATE = "VALIDATE"
    CLEANUP = "CLEANUP"


class Outcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class DiffKind(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    CHANGED = "changed"


class RunMode(str, Enum):
    FULL = "full"            # GET -> DELETE -> POST -> VERIFY -> COMPARE per resource
    READONLY = "readonly"    # one GET per endpoint
    FIXTURES = "fixtures"    # POST fixture cases


@dataclass(frozen=True)
class EndpointDescriptor:
    path: str                # template, e.g. "/api/v2/systems/{system}"
    method: str              # upper-case HTTP verb
    operation_id: Optional[str] = None
    resource: str = ""
    summary: Optional[str] = None
    parameters: Tuple[Dict[str, Any], ...] = ()
    request_schema: Optional[Dict[str, Any]] = None
    response_schema: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> str:
        return f"{self.method} {self.path}"

    @property
    def is_templated(self) -> bool:
        return "{" in self.path


@dataclass(frozen=True)
class EndpointGroup:
    resource: str
    endpoints: Tuple[EndpointDescriptor, ...]

    def find(self, method: str, templated: Optional[bool] = None) -> Optional[EndpointDescriptor]:
        for endpoint in self.endpoints:
            if endpoint.method != method:
                continue
            if templated is None or endpoint.is_templated == templated:
                return endpoint
        return None

    def has_triad(self) -> bool:
        return all(self.find(m) is not None for m in ("GET", "DELETE", "POST"))


@dataclass(frozen=True)
class FixtureCase:
    case_id: str
    endpoint: str            # "POST /api/v2/systems/{system}"
    description: str = ""
    path_params: Dict[str, str] = field(default_factory=dict)
    request_body: Any = None
    expected_status: int = 200
    verify_endpoint: Optional[str] = None
    cleanup_endpoint: Optional[str] = None
    cleanup_body: Any = None
    depends_on: Tuple[str, ...] = ()
    priority: int = 99       # lower runs earlier
    module: str = ""
    expected_response: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class TestStep:
    kind: StepKind
    method: Optional[str] = None
    url: Optional[str] = None
    status: Optional[int] = None
    data: Any = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.kind.value,
            "method": self.method,
            "url": self.url,
            "status": self.status,
            "data": self.data,
            "error": self.error,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Difference:
    path: str
    expected: Any
    actual: Any
    kind: DiffKind

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "expected": self.expected,
            "actual": self.actual,
            "type": self.kind.value,
        }


@dataclass(frozen=True)
class AuthToken:
    bearer: str
    expires_at: Optional[float] = None   # monotonic seconds; None = single-use

    def needs_refresh(self, now: float, margin: float) -> bool:
        if self.expires_at is None:
            return True
        return self.expires_at - now < margin


@dataclass(frozen=True)
class PlanEntry:
    entry_id: str
    target: Union[EndpointGroup, EndpointDescriptor, FixtureCase]
    mode: RunMode
    depends_on: Tuple[str, ...] = ()

    @property
    def module(self) -> str:
        return self.target.module if isinstance(self.target, FixtureCase) else ""


@dataclass
class TestResult:
    entry_id: str
    steps: List[TestStep] = field(default_factory=list)
    outcome: Outcome = Outcome.FAILED
    differences: List[Difference] = field(default_factory=list)
    duration: float = 0.0
    reason: Optional[str] = None
    failed_step: Optional[StepKind] = None
    module: str = ""

    @property
    def passed(self) -> bool:
        return self.outcome is Outcome.PASSED

    def add_step(self, step: TestStep) -> TestStep:
        self.steps.append(step)
        return step

    def fail(self, step: Optional[StepKind], reason: str) -> "TestResult":
        self.outcome = Outcome.FAILED
        self.failed_step = step
        self.reason = reason
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.entry_id,
            "outcome": self.outcome.value,
            "passed": self.passed,
            "reason": self.reason,
            "failed_step": self.failed_step.value if self.failed_step else None,
            "module": self.module,
            "duration": round(self.duration, 3),
            "steps": [s.to_dict() for s in self.steps],
            "differences": [d.to_dict() for d in self.differences],
        }


@dataclass
class Plan:
    entries: List[PlanEntry]
    skipped: List[TestResult] = field(default_factory=list)   # decided at planning time

    def __len__(self) -> int:
        return len(self.entries)


@dataclass
class Report:
    results: List[TestResult]
    cancelled: bool = False
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        # zero executable entries is a pass, not an error
        return not self.cancelled and all(
            r.passed for r in self.results if r.outcome is not Outcome.SKIPPED
        )

    def summary(self) -> Dict[str, int]:
        counts = {o.value: 0 for o in Outcome}
        for r in self.results:
            counts[r.outcome.value] += 1
        counts["total"] = len(self.results)
        return counts

    def by_module(self) -> Dict[str, Dict[str, int]]:
        out: Dict[str, Dict[str, int]] = {}
        for r in self.results:
            if not r.module:
                continue
            bucket = out.setdefault(r.module, {"total": 0, "passed": 0, "failed": 0})
            bucket["total"] += 1
            if r.passed:
                bucket["passed"] += 1
            elif r.outcome is Outcome.FAILED:
                bucket["failed"] += 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "cancelled": self.cancelled,
            "duration": round(self.duration, 3),
            "summary": self.summary(),
            "results": [r.to_dict() for r in self.results],
        }
