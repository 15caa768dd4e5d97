import json
import tempfile
import xml.etree.ElementTree as ET
from pathlib import Path

from behave import given, when, then

from fake_api import BASE_URL, FakeApi
from src.export.run_log import RunLog
from src.guard.config import RunConfig
from src.guard.plan_runner import PlanRunner


async def _no_sleep(seconds):
    return None


def _overrides(context):
    if not hasattr(context, "config_overrides"):
        context.config_overrides = {}
    return context.config_overrides


@given('a "{mode}" run configuration')
def step_run_configuration(context, mode):
    _overrides(context).update(base_url=BASE_URL, mode=mode)
    if mode == "fixtures":
        _overrides(context)["fixtures"] = context.fixture_path


@given('a "{mode}" run configuration for module "{module}"')
def step_run_configuration_module(context, mode, module):
    step_run_configuration(context, mode)
    _overrides(context)["module"] = module


@given("the run writes JSON and JUnit reports")
def step_run_writes_reports(context):
    out_dir = Path(tempfile.mkdtemp(prefix="guard-"))
    context.json_path = str(out_dir / "report.json")
    context.junit_path = str(out_dir / "junit.xml")
    context.tmp_files.extend([context.json_path, context.junit_path])
    _overrides(context).update(json_output=context.json_path, junit_output=context.junit_path)


@given('the run logs in at "{path}"')
def step_run_logs_in(context, path):
    _overrides(context).update(token_url=path, username="qa", password="s3cret")


@given('the run waits for "{path}" for {seconds:d} seconds')
def step_run_waits_for(context, path, seconds):
    _overrides(context).update(health_url=path, max_wait_seconds=seconds)


@given("the run discovers live data")
def step_run_discovers(context):
    _overrides(context)["use_real_data"] = True


@given('the run excludes "{entry}"')
def step_run_excludes(context, entry):
    _overrides(context).setdefault("blacklist", []).append(entry)


@when("the contract run executes")
def step_contract_run(context):
    if context.api is None:
        context.api = FakeApi()
    config = RunConfig().merged(_overrides(context))
    context.run_log = RunLog(echo=False)
    runner = PlanRunner(config, run_log=context.run_log, http_client=context.api.http(), sleep=_no_sleep)
    catalog = None if config.mode == "fixtures" else context.catalog.groups
    try:
        context.run_result = runner.run(catalog=catalog)
    except Exception as e:
        context.error = e


@then("the run passed")
def step_run_passed(context):
    assert context.error is None, repr(context.error)
    assert context.run_result.ok, context.run_result.report.to_dict()


@then('the run aborts with "{error_name}"')
def step_run_aborts(context, error_name):
    assert context.error is not None, "run did not fail"
    assert type(context.error).__name__ == error_name, repr(context.error)


@then('the JSON report shows "{entry_id}" as "{outcome}"')
def step_json_report_shows(context, entry_id, outcome):
    with open(context.json_path, encoding="utf-8") as f:
        envelope = json.load(f)
    outcomes = {r["id"]: r["outcome"] for r in envelope["report"]["results"]}
    assert outcomes.get(entry_id) == outcome, outcomes


@then("the JUnit file has {count:d} test cases")
def step_junit_file_cases(context, count):
    cases = list(ET.parse(context.junit_path).getroot().iter("testcase"))
    assert len(cases) == count, [c.get("name") for c in cases]


@then('the run results are "{names}"')
def step_run_results(context, names):
    actual = [r.entry_id for r in context.run_result.report.results]
    assert actual == [n.strip() for n in names.split(",")], actual


@then('the JSON envelope lists module "{module}" with {passed:d} passed')
def step_envelope_module(context, module, passed):
    modules = context.run_result.envelope["modules"]
    assert modules.get(module, {}).get("passed") == passed, modules


@then('{count:d} "{method}" requests were sent to "{path}"')
def step_requests_sent_to(context, count, method, path):
    assert context.api.count(method, path) == count, context.api.calls
