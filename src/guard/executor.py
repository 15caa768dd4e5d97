from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

from src.export.run_log import RunLog, Severity
from src.guard.diff_engine import DiffEngine
from src.guard.errors import AuthError, CleanupFailure, StepFailure
from src.guard.fixtures import build_path
from src.guard.types import (
    DiffKind,
    Difference,
    EndpointDescriptor,
    EndpointGroup,
    FixtureCase,
    Outcome,
    PlanEntry,
    RunMode,
    StepKind,
    TestResult,
    TestStep,
)
from src.sut.http_client import ApiClient, HttpOutcome

logger = logging.getLogger(__name__)

ID_FIELDS = ("id", "_id")


@dataclass
class ExecutorOptions:
    skip_verify: bool = False
    skip_cleanup: bool = False
    default_resource_id: str = "1"
    resource_ids: Dict[str, str] = field(default_factory=dict)       # resource -> id
    server_fields: Dict[str, Sequence[str]] = field(default_factory=dict)  # resource or "*" -> keys

    def id_for(self, resource: str) -> str:
        return self.resource_ids.get(resource, self.default_resource_id)

    def server_fields_for(self, resource: str) -> Tuple[str, ...]:
        return tuple(self.server_fields.get("*", ())) + tuple(self.server_fields.get(resource, ()))


class _Cancelled(Exception):
    pass


def substitute(template: str, value: str) -> str:
    """Fill every {param} of a path template with the same value, percent-encoded as one segment."""
    value = quote(str(value), safe="")
    out, depth = [], 0
    for ch in template:
        if ch == "{":
            depth += 1
            if depth == 1:
                out.append(value)
            continue
        if ch == "}":
            depth = max(depth - 1, 0)
            continue
        if depth == 0:
            out.append(ch)
    return "".join(out)


def strip_fields(body: Any, fields: Sequence[str]) -> Any:
    if isinstance(body, dict) and fields:
        return {k: v for k, v in body.items() if k not in fields}
    return body


def collection_items(data: Any) -> List[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in ("data", "items", "results"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


def first_item(data: Any) -> Any:
    items = collection_items(data)
    return items[0] if items else None


def item_id(item: Any) -> Optional[str]:
    if isinstance(item, dict):
        for key in ID_FIELDS:
            if item.get(key) not in (None, ""):
                return str(item[key])
    return None


class TestExecutor:
    """
    Drives one PlanEntry through its step sequence and returns the TestResult.

    Every step appends exactly one TestStep. A StepFailure ends the entry as
    FAILED; nothing is retried here. AuthError is fatal to the run and is
    re-raised to the caller.
    """

    def __init__(
        self,
        client: ApiClient,
        authenticator=None,
        diff_engine: Optional[DiffEngine] = None,
        options: Optional[ExecutorOptions] = None,
        run_log: Optional[RunLog] = None,
    ) -> None:
        self.client = client
        self.authenticator = authenticator
        self.diff_engine = diff_engine or DiffEngine()
        self.options = options or ExecutorOptions()
        self.run_log = run_log or RunLog()

    async def run(self, entry: PlanEntry, cancel: Optional[asyncio.Event] = None) -> TestResult:
        result = TestResult(entry_id=entry.entry_id, module=entry.module)
        started = time.monotonic()
        ctx = _EntryContext(self, entry, result, cancel)
        try:
            if entry.mode is RunMode.FULL:
                await self._run_full(ctx, entry.target)
            elif entry.mode is RunMode.READONLY:
                await self._run_readonly(ctx, entry.target)
            else:
                await self._run_fixture(ctx, entry.target)
        except StepFailure as e:
            result.fail(e.step, str(e))
        except _Cancelled:
            result.outcome = Outcome.CANCELLED
            result.reason = "cancelled"
        finally:
            result.duration = time.monotonic() - started

        self._report(result)
        return result

    def _report(self, result: TestResult) -> None:
        if result.outcome is Outcome.PASSED:
            self.run_log.emit(Severity.SUCCESS, f"PASSED ({result.duration * 1000:.0f}ms)", result.entry_id)
        elif result.outcome is Outcome.CANCELLED:
            self.run_log.emit(Severity.WARN, "cancelled", result.entry_id)
        else:
            detail = f"{len(result.differences)} difference(s)" if result.differences else result.reason
            self.run_log.emit(Severity.ERROR, f"FAILED at {_step_name(result.failed_step)}: {detail}", result.entry_id)

    # -- full mode ---------------------------------------------------------

    async def _run_full(self, ctx: "_EntryContext", group: EndpointGroup) -> None:
        resource = group.resource
        item_get = group.find("GET", templated=True)
        list_get = group.find("GET", templated=False)
        delete = group.find("DELETE")
        post = group.find("POST")

        token = await ctx.auth()

        ctx.checkpoint()
        resource_id = self.options.id_for(resource)
        original, resource_id = await self._fetch(ctx, StepKind.GET, item_get, list_get, resource_id, token)

        ctx.checkpoint()
        outcome = await ctx.call(StepKind.DELETE, "DELETE", substitute(delete.path, resource_id), token)
        ctx.require_ok(StepKind.DELETE, outcome)

        # no cancellation point here: a deleted resource is always re-created
        body = strip_fields(original, self.options.server_fields_for(resource))
        outcome = await ctx.call(StepKind.POST, "POST", substitute(post.path, resource_id), token, body=body)
        if not outcome.ok:
            self.run_log.emit(
                Severity.CRITICAL,
                f"DATA LOSS: {resource} {resource_id} was deleted and could not be recreated "
                f"(POST {outcome.status}: {outcome.error})",
                ctx.result.entry_id,
            )
            ctx.require_ok(StepKind.POST, outcome)
        new_id = item_id(outcome.data) or resource_id

        ctx.checkpoint()
        verified, _ = await self._fetch(ctx, StepKind.VERIFY, item_get, list_get, new_id, token, match_id=True)

        differences = self.diff_engine.diff(original, verified)
        ctx.result.differences.extend(differences)
        ctx.result.add_step(TestStep(
            kind=StepKind.COMPARE,
            data={"differences": [d.to_dict() for d in differences]},
            error=f"{len(differences)} difference(s)" if differences else None,
        ))
        if differences:
            raise StepFailure(StepKind.COMPARE, f"{len(differences)} difference(s) after round-trip")
        ctx.result.outcome = Outcome.PASSED

    async def _fetch(
        self,
        ctx: "_EntryContext",
        kind: StepKind,
        item_get: Optional[EndpointDescriptor],
        list_get: Optional[EndpointDescriptor],
        resource_id: str,
        token: Optional[str],
        match_id: bool = False,
    ) -> Tuple[Any, str]:
        if item_get is not None:
            outcome = await ctx.call(kind, "GET", substitute(item_get.path, resource_id), token)
            ctx.require_ok(kind, outcome)
            return outcome.data, resource_id

        outcome = await ctx.call(kind, "GET", list_get.path, token)
        ctx.require_ok(kind, outcome)
        items = collection_items(outcome.data)
        if match_id:
            # the re-created record can sit anywhere in the collection
            item = next((i for i in items if item_id(i) == resource_id), None)
            if item is None:
                raise StepFailure(kind, f"created record {resource_id} not found in {list_get.path}", outcome.status)
            return item, resource_id
        if not items:
            raise StepFailure(kind, "No resources found in collection", outcome.status)
        item = items[0]
        return item, item_id(item) or resource_id

    # -- readonly mode -----------------------------------------------------

    async def _run_readonly(self, ctx: "_EntryContext", endpoint: EndpointDescriptor) -> None:
        token = await ctx.auth(record=False)
        ctx.checkpoint()
        path = substitute(endpoint.path, self.options.id_for(endpoint.resource))
        outcome = await ctx.call(StepKind.GET, "GET", path, token)
        ctx.require_ok(StepKind.GET, outcome)
        ctx.result.outcome = Outcome.PASSED

    # -- fixture mode ------------------------------------------------------

    async def _run_fixture(self, ctx: "_EntryContext", case: FixtureCase) -> None:
        token = await ctx.auth()

        ctx.checkpoint()
        post_path = build_path(case.endpoint, case.path_params)
        outcome = await ctx.call(StepKind.POST, "POST", post_path, token, body=case.request_body)
        if outcome.status != case.expected_status:
            ctx.result.differences.append(Difference(
                path="post.status", expected=case.expected_status, actual=outcome.status, kind=DiffKind.CHANGED,
            ))
            raise StepFailure(
                StepKind.POST,
                outcome.error or f"expected status {case.expected_status}, got {outcome.status}",
                outcome.status,
            )

        failure: Optional[StepFailure] = None
        try:
            if not self.options.skip_verify and case.verify_endpoint:
                ctx.checkpoint()
                verify = await ctx.call(StepKind.VERIFY, "GET", build_path(case.verify_endpoint, case.path_params), token)
                ctx.require_ok(StepKind.VERIFY, verify)

            if case.expected_response is not None:
                self._validate(ctx, case.expected_response, outcome.data)
        except StepFailure as e:
            failure = e
        finally:
            # the created fixture is removed even when verification failed
            if not self.options.skip_cleanup and case.cleanup_endpoint:
                await self._cleanup(ctx, case, token)

        if failure is not None:
            raise failure
        ctx.result.outcome = Outcome.PASSED

    def _validate(self, ctx: "_EntryContext", expected: Mapping[str, Any], actual: Any) -> None:
        # subset check: fields the server adds are fine
        problems = [d for d in self.diff_engine.diff(expected, actual) if d.kind is not DiffKind.ADDED]
        ctx.result.add_step(TestStep(
            kind=StepKind.VALIDATE,
            data={"valid": not problems, "differences": [d.to_dict() for d in problems]},
            error=f"{len(problems)} field(s) do not match" if problems else None,
        ))
        if problems:
            ctx.result.differences.extend(problems)
            raise StepFailure(StepKind.VALIDATE, f"{len(problems)} field(s) do not match expected response")

    async def _cleanup(self, ctx: "_EntryContext", case: FixtureCase, token: Optional[str]) -> None:
        path = build_path(case.cleanup_endpoint, case.path_params)
        outcome = await ctx.call(StepKind.CLEANUP, "DELETE", path, token, body=case.cleanup_body)
        if not outcome.ok:
            failure = CleanupFailure(outcome.url, outcome.error or f"HTTP {outcome.status}", outcome.status)
            self.run_log.emit(Severity.WARN, str(failure), ctx.result.entry_id)


class _EntryContext:
    """Per-entry plumbing: token, step recording and cancellation checks."""

    def __init__(self, executor: TestExecutor, entry: PlanEntry, result: TestResult, cancel: Optional[asyncio.Event]) -> None:
        self.executor = executor
        self.entry = entry
        self.result = result
        self.cancel = cancel

    def checkpoint(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise _Cancelled()

    async def auth(self, record: bool = True) -> Optional[str]:
        authenticator = self.executor.authenticator
        if authenticator is None:
            return None
        self.checkpoint()
        try:
            token = await authenticator.get_valid_token()
        except AuthError as e:
            self.result.add_step(TestStep(
                kind=StepKind.AUTH, method="POST", url=authenticator.token_url, status=e.status, error=str(e),
            ))
            raise
        if record:
            self.result.add_step(TestStep(kind=StepKind.AUTH, method="POST", url=authenticator.token_url))
        return token.bearer

    async def call(self, kind: StepKind, method: str, path: str, token: Optional[str], body: Any = None) -> HttpOutcome:
        outcome = await self.executor.client.request(method, path, token=token, json=body)
        self.result.add_step(TestStep(
            kind=kind,
            method=method,
            url=outcome.url,
            status=outcome.status,
            data=outcome.data,
            error=None if outcome.ok else (outcome.error or f"HTTP {outcome.status}"),
        ))
        severity = Severity.DEBUG if outcome.ok else Severity.WARN
        self.executor.run_log.emit(
            severity, f"{kind.value}: {method} {outcome.url} [{outcome.status}]", self.result.entry_id,
        )
        return outcome

    def require_ok(self, kind: StepKind, outcome: HttpOutcome) -> None:
        if not outcome.ok:
            raise StepFailure(kind, f"{kind.value} {outcome.url} -> {outcome.status}: {outcome.error}", outcome.status)


def _step_name(step: Optional[StepKind]) -> str:
    return step.value if step else "-"
