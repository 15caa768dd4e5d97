from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import httpx

from src.export.result_sink import ResultSink
from src.export.run_log import RunLog, Severity
from src.guard.blacklist import Blacklist
from src.guard.config import RunConfig
from src.guard.coordinator import ConcurrencyCoordinator
from src.guard.diff_engine import DiffEngine
from src.guard.discovery import discover_resource_ids
from src.guard.executor import ExecutorOptions, TestExecutor
from src.guard.fixtures import load_fixtures
from src.guard.planner import PlanFilters, Planner
from src.guard.types import EndpointGroup, FixtureCase, Report, RunMode
from src.sut.auth import Authenticator, StaticAuthenticator
from src.sut.factory import SUTFactory
from src.sut.http_client import ApiClient
from src.sut.readiness import ReadinessPoller
from src.sut.vm_starter import AzureVMConfig, AzureVMStarter

logger = logging.getLogger(__name__)


@dataclass
class PlanRunnerResult:
    ok: bool
    run_id: str
    report: Report
    envelope: Dict[str, Any]


def build_authenticator(config: RunConfig, client: httpx.AsyncClient, base_url: str = ""):
    """OAuth2 when a token URL is configured, else a static bearer, else no auth."""
    if config.token_url:
        token_url = config.token_url
        if not token_url.startswith(("http://", "https://")):
            token_url = f"{base_url.rstrip('/')}/{token_url.lstrip('/')}"
        return Authenticator(
            client,
            token_url,
            username=config.username,
            password=config.password,
            grant_type=config.grant_type,
            refresh_margin=config.token_refresh_margin,
            timeout=config.http_timeout,
        )
    if config.bearer_token:
        return StaticAuthenticator(config.bearer_token)
    return None


class PlanRunner:
    """
    Orchestrates one run:

      1) resolve the catalog (OpenAPI document) or fixture cases
      2) wait for the API to answer (optionally starting its VM)
      3) authenticate once up front; failure aborts the run
      4) optionally discover live resource ids
      5) plan, then execute through the coordinator
      6) hand the report to the result sink
    """

    def __init__(
        self,
        config: RunConfig,
        factory: Optional[SUTFactory] = None,
        result_sink: Optional[ResultSink] = None,
        run_log: Optional[RunLog] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        vm_starter=None,
        sleep=asyncio.sleep,
    ) -> None:
        self.config = config
        self.factory = factory or SUTFactory(timeout=config.http_timeout, verify_tls=config.verify_tls)
        self.sink = result_sink or ResultSink()
        self.run_log = run_log or RunLog()
        self.http_client = http_client
        self.vm_starter = vm_starter
        self.sleep = sleep

    def run(
        self,
        catalog: Optional[Sequence[EndpointGroup]] = None,
        fixtures: Optional[Sequence[FixtureCase]] = None,
    ) -> PlanRunnerResult:
        return asyncio.run(self.arun(catalog=catalog, fixtures=fixtures))

    async def arun(
        self,
        catalog: Optional[Sequence[EndpointGroup]] = None,
        fixtures: Optional[Sequence[FixtureCase]] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> PlanRunnerResult:
        config = self.config
        run_id = str(uuid.uuid4())
        created_at_ms = int(time.time() * 1000)
        mode = config.run_mode

        base_url = config.base_url
        targets: List[Any]
        if mode is RunMode.FIXTURES:
            if fixtures is None:
                if not config.fixtures:
                    raise ValueError("fixtures mode needs a fixture file (GUARD_FIXTURES or 'fixtures')")
                fixtures = load_fixtures(config.fixtures)
            targets = list(fixtures)
        else:
            if catalog is None:
                if not config.openapi:
                    raise ValueError("an OpenAPI document is required (GUARD_OPENAPI or 'openapi')")
                built = self.factory.build(config.openapi, config.base_url or None)
                base_url = built.base_url
                catalog = built.groups
            targets = list(catalog)
        base_url = (base_url or config.require_base_url()).rstrip("/")

        self.run_log.emit(Severity.INFO, f"Run {run_id}: {mode.value} mode against {base_url}")

        http = self.http_client or httpx.AsyncClient(
            timeout=config.http_timeout, verify=config.verify_tls, follow_redirects=True,
        )
        try:
            report = await self._execute(http, base_url, mode, targets, cancel_event)
        finally:
            if self.http_client is None:
                await http.aclose()

        envelope: Dict[str, Any] = {
            "ok": report.passed,
            "run_id": run_id,
            "created_at_ms": created_at_ms,
            "mode": mode.value,
            "base_url": base_url,
            "modules": report.by_module(),
            "report": report.to_dict(),
        }
        self.sink.write_from_config(config, report, envelope)

        summary = report.summary()
        self.run_log.emit(
            Severity.SUCCESS if report.passed else Severity.ERROR,
            f"{summary['passed']} passed, {summary['failed']} failed, "
            f"{summary['skipped']} skipped, {summary['cancelled']} cancelled",
        )
        return PlanRunnerResult(ok=report.passed, run_id=run_id, report=report, envelope=envelope)

    async def _execute(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        mode: RunMode,
        targets: List[Any],
        cancel_event: Optional[asyncio.Event],
    ) -> Report:
        config = self.config
        api = ApiClient(base_url, client=http, timeout=config.http_timeout)

        if config.health_url or config.auto_start_vm:
            vm_starter = self.vm_starter
            if vm_starter is None and config.auto_start_vm:
                vm_starter = AzureVMStarter(AzureVMConfig.from_env(), http)
            poller = ReadinessPoller(http, vm_starter=vm_starter, run_log=self.run_log, sleep=self.sleep)
            await poller.wait_until_ready(api.url_for(config.health_url or ""), config.max_wait_seconds)

        authenticator = build_authenticator(config, http, base_url)
        token = None
        if authenticator is not None:
            token = (await authenticator.get_valid_token()).bearer
            self.run_log.emit(Severity.SUCCESS, "Authenticated")

        blacklist = Blacklist(config.blacklist)
        resource_ids = dict(config.resource_ids)
        if config.use_real_data and mode is not RunMode.FIXTURES:
            groups, _ = blacklist.filter_groups(targets)
            discovered = await discover_resource_ids(api, groups, token=token, run_log=self.run_log)
            resource_ids.update(discovered)

        plan = Planner(blacklist).build_plan(targets, mode, PlanFilters(module=config.module))
        self.run_log.emit(Severity.INFO, f"Planned {len(plan)} test(s), {len(plan.skipped)} skipped")
        for skipped in plan.skipped:
            self.run_log.emit(Severity.WARN, f"SKIPPED: {skipped.reason}", skipped.entry_id)

        executor = TestExecutor(
            api,
            authenticator=authenticator,
            diff_engine=DiffEngine(config.ignored_diff_paths),
            options=ExecutorOptions(
                skip_verify=config.skip_verify,
                skip_cleanup=config.skip_cleanup,
                resource_ids=resource_ids,
                server_fields=config.server_fields,
            ),
            run_log=self.run_log,
        )
        coordinator = ConcurrencyCoordinator(
            executor,
            max_parallel=config.effective_parallelism,
            run_timeout=config.run_timeout,
            run_log=self.run_log,
        )
        report = await coordinator.run(plan.entries, cancel_event)
        report.results.extend(plan.skipped)
        return report
