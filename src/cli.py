"""
Command line entry point.

    api-contract-guard test --openapi openapi.yaml --mode readonly
    api-contract-guard test-fixtures --fixtures fixtures.yaml --module billing
    api-contract-guard vm-start --wait-for https://api.example.com/health
    api-contract-guard list-endpoints --openapi https://api.example.com/openapi.json

Options fall back to the environment (GUARD_*) and the GUARD_CONFIG file.
Exit status is 0 only when the run passed.
"""
import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

import httpx

from src.guard.config import RunConfig
from src.guard.errors import ContractGuardError
from src.guard.plan_runner import PlanRunner
from src.logger import setup_logging
from src.sut.factory import SUTFactory
from src.sut.readiness import ReadinessPoller
from src.sut.vm_starter import AzureVMConfig, AzureVMStarter, VMStartError

logger = logging.getLogger(__name__)


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", metavar="FILE", help="YAML config file (default: $GUARD_CONFIG)")
    parser.add_argument("--base-url", dest="base_url", help="API base URL")
    parser.add_argument("--parallel", action="store_true", default=None, help="Run entries concurrently")
    parser.add_argument("--max-parallel", dest="max_parallel", type=int, metavar="N", help="Worker bound when --parallel")
    parser.add_argument("--auto-start-vm", dest="auto_start_vm", action="store_true", default=None,
                        help="Start the Azure VM if the API does not answer")
    parser.add_argument("--health-url", dest="health_url", help="Readiness URL polled before the run")
    parser.add_argument("--max-wait", dest="max_wait_seconds", type=int, metavar="SECONDS",
                        help="Readiness budget (default 300)")
    parser.add_argument("--run-timeout", dest="run_timeout", type=float, metavar="SECONDS",
                        help="Global run budget; unfinished entries end cancelled")
    parser.add_argument("--skip-cleanup", dest="skip_cleanup", action="store_true", default=None)
    parser.add_argument("--skip-verify", dest="skip_verify", action="store_true", default=None)
    parser.add_argument("--ignore-path", dest="ignored_diff_paths", action="append", metavar="PATH",
                        help="Diff path to ignore (repeatable)")
    parser.add_argument("--blacklist", action="append", metavar="'METHOD /path'",
                        help="Endpoint to exclude (repeatable)")
    parser.add_argument("--junit", dest="junit_output", metavar="FILE", help="Write a JUnit XML report")
    parser.add_argument("--json", dest="json_output", metavar="FILE", help="Write the JSON report")
    parser.add_argument("--console", action="store_true", default=None, help="Print the JSON report")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="api-contract-guard",
        description="Contract tests for REST APIs described by OpenAPI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    test = sub.add_parser("test", help="Round-trip (full) or GET-only (readonly) tests from an OpenAPI document")
    test.add_argument("--openapi", help="Path or URL of the OpenAPI/Swagger document")
    test.add_argument("--mode", choices=["full", "readonly"], help="full (GET/DELETE/POST/VERIFY) or readonly")
    test.add_argument("--use-real-data", dest="use_real_data", action="store_true", default=None,
                      help="Discover live resource ids before testing")
    _add_run_options(test)

    fixtures = sub.add_parser("test-fixtures", help="POST tests from a fixture file")
    fixtures.add_argument("--fixtures", help="YAML fixture file")
    fixtures.add_argument("--module", help="Only run cases tagged with this module (plus their dependencies)")
    _add_run_options(fixtures)

    vm = sub.add_parser("vm-start", help="Start the Azure VM hosting the API")
    vm.add_argument("--wait-for", dest="wait_for", metavar="URL", help="Poll this URL until it answers")
    vm.add_argument("--max-wait", dest="max_wait_seconds", type=int, default=300, metavar="SECONDS")
    vm.add_argument("--verbose", "-v", action="store_true")

    listing = sub.add_parser("list-endpoints", help="Show the endpoint groups of an OpenAPI document")
    listing.add_argument("--openapi", required=True, help="Path or URL of the OpenAPI/Swagger document")
    listing.add_argument("--verbose", "-v", action="store_true")

    return parser


_RUN_KEYS = (
    "base_url", "openapi", "mode", "parallel", "max_parallel", "auto_start_vm", "health_url",
    "max_wait_seconds", "run_timeout", "skip_cleanup", "skip_verify", "use_real_data", "module",
    "ignored_diff_paths", "blacklist", "junit_output", "json_output", "console", "fixtures",
)


def build_config(args: argparse.Namespace) -> RunConfig:
    config = RunConfig.from_yaml(args.config) if getattr(args, "config", None) else RunConfig.from_env()
    overrides: Dict[str, Any] = {k: getattr(args, k) for k in _RUN_KEYS if getattr(args, k, None) is not None}
    if args.command == "test-fixtures":
        overrides["mode"] = "fixtures"
    elif config.mode == "fixtures" and "mode" not in overrides:
        overrides["mode"] = "full"
    if overrides.get("max_parallel") and "parallel" not in overrides:
        overrides["parallel"] = True
    return config.merged(overrides)


def cmd_run(args: argparse.Namespace) -> int:
    config = build_config(args)
    result = PlanRunner(config).run()
    summary = result.report.summary()
    print(
        f"{'PASSED' if result.ok else 'FAILED'}: {summary['passed']}/{summary['total']} passed, "
        f"{summary['failed']} failed, {summary['skipped']} skipped, {summary['cancelled']} cancelled"
    )
    return 0 if result.ok else 1


async def _start_vm(wait_for: Optional[str], max_wait: int) -> None:
    async with httpx.AsyncClient(timeout=30.0) as client:
        starter = AzureVMStarter(AzureVMConfig.from_env(), client)
        await starter.start()
        if wait_for:
            await ReadinessPoller(client).wait_until_ready(wait_for, max_wait)


def cmd_vm_start(args: argparse.Namespace) -> int:
    asyncio.run(_start_vm(args.wait_for, args.max_wait_seconds))
    return 0


def cmd_list_endpoints(args: argparse.Namespace) -> int:
    catalog = SUTFactory().build(args.openapi)
    print(f"Base URL: {catalog.base_url}")
    for group in catalog.groups:
        marker = "full" if group.has_triad() else "partial"
        print(f"\n{group.resource} ({marker})")
        for endpoint in group.endpoints:
            summary = f"  {endpoint.summary}" if endpoint.summary else ""
            print(f"  {endpoint.method:<7}{endpoint.path}{summary}")
    print(f"\n{len(catalog.groups)} resource(s), {catalog.endpoint_count} endpoint(s)")
    return 0


COMMANDS = {
    "test": cmd_run,
    "test-fixtures": cmd_run,
    "vm-start": cmd_vm_start,
    "list-endpoints": cmd_list_endpoints,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging("DEBUG" if args.verbose else None)

    try:
        return COMMANDS[args.command](args)
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130
    except (ContractGuardError, VMStartError, ValueError, FileNotFoundError, httpx.HTTPError) as e:
        logger.debug("Fatal error", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
