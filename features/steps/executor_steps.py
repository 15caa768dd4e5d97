import asyncio
import json

from behave import given, when, then

from fake_api import BASE_URL, FakeApi, echo
from src.export.run_log import RunLog
from src.guard.diff_engine import DiffEngine
from src.guard.executor import ExecutorOptions, TestExecutor
from src.guard.types import EndpointDescriptor, EndpointGroup, PlanEntry, RunMode
from src.sut.auth import Authenticator
from src.sut.http_client import ApiClient

TOKEN_PATH = "/oauth/token"


def _api(context):
    if context.api is None:
        context.api = FakeApi()
    return context.api


def _options(context):
    if not hasattr(context, "executor_options"):
        context.executor_options = ExecutorOptions()
    return context.executor_options


def _endpoint(key, resource):
    method, _, path = key.strip().partition(" ")
    return EndpointDescriptor(path=path.strip(), method=method.upper(), resource=resource)


async def _execute(context, entry):
    api = _api(context)
    context.run_log = RunLog(echo=False)
    context.cancel_event = asyncio.Event()
    async with api.http() as http:
        client = ApiClient(BASE_URL, client=http)
        authenticator = None
        if getattr(context, "login_required", False):
            authenticator = Authenticator(http, BASE_URL + TOKEN_PATH, username="qa", password="secret")
        executor = TestExecutor(
            client,
            authenticator=authenticator,
            diff_engine=DiffEngine(getattr(context, "ignored_paths", [])),
            options=_options(context),
            run_log=context.run_log,
        )
        return await executor.run(entry, context.cancel_event)


def _run(context, entry):
    context.result = asyncio.run(_execute(context, entry))
    context.differences = context.result.differences


@given('resource "{resource}" with endpoints "{keys}"')
def step_resource_with_endpoints(context, resource, keys):
    if not hasattr(context, "groups"):
        context.groups = {}
    context.groups[resource] = EndpointGroup(
        resource=resource,
        endpoints=tuple(_endpoint(k, resource) for k in keys.split(",")),
    )


@given("the fake API responds")
def step_fake_api_responds(context):
    api = _api(context)
    for row in context.table:
        raw = row["body"].strip()
        if raw == "echo":
            body = echo
        else:
            body = json.loads(raw) if raw else None
        api.add(row["method"], row["path"], int(row["status"]), body)


@given("the API requires a password login")
def step_login_required(context):
    context.login_required = True
    _api(context).add("POST", TOKEN_PATH, 200, {"access_token": "tok-123", "expires_in": 3600})


@given('the server-assigned fields "{names}" for every resource')
def step_server_fields(context, names):
    _options(context).server_fields["*"] = [n.strip() for n in names.split(",")]


@given("verification and cleanup are skipped")
def step_skip_verify_cleanup(context):
    options = _options(context)
    options.skip_verify = True
    options.skip_cleanup = True


@given('the resource id for "{resource}" is "{value}"')
def step_resource_id(context, resource, value):
    _options(context).resource_ids[resource] = value


@given('cancellation is requested while "{key}" is in flight')
def step_cancel_in_flight(context, key):
    method, _, path = key.partition(" ")

    def cancel(request, body):
        context.cancel_event.set()

    _api(context).add(method, path, 204, cancel)


@when('resource "{resource}" is tested in full mode')
def step_full_mode(context, resource):
    group = context.groups[resource]
    _run(context, PlanEntry(entry_id=resource, target=group, mode=RunMode.FULL))


@when('endpoint "{key}" is tested in readonly mode')
def step_readonly_mode(context, key):
    endpoint = None
    for group in context.groups.values():
        endpoint = next((e for e in group.endpoints if e.key == key), endpoint)
    assert endpoint is not None, key
    _run(context, PlanEntry(entry_id=key, target=endpoint, mode=RunMode.READONLY))


@when('fixture case "{case_id}" is executed')
def step_fixture_executed(context, case_id):
    case = next(c for c in context.cases if c.case_id == case_id)
    _run(context, PlanEntry(entry_id=case.case_id, target=case, mode=RunMode.FIXTURES, depends_on=case.depends_on))


@then("the test passed")
def step_test_passed(context):
    result = context.result
    assert result.passed, f"{result.outcome} at {result.failed_step}: {result.reason}"


@then('the test failed at step "{step}"')
def step_test_failed_at(context, step):
    result = context.result
    assert result.outcome.value == "failed", result.outcome
    assert result.failed_step is not None and result.failed_step.value == step, result.failed_step


@then("the test was cancelled")
def step_test_cancelled(context):
    assert context.result.outcome.value == "cancelled", context.result.outcome


@then('the failure reason mentions "{text}"')
def step_failure_reason(context, text):
    assert text in (context.result.reason or ""), context.result.reason


@then('the recorded steps are "{names}"')
def step_recorded_steps(context, names):
    actual = [s.kind.value for s in context.result.steps]
    assert actual == [n.strip() for n in names.split(",")], actual


@then("the test has no differences")
def step_test_no_differences(context):
    assert context.result.differences == [], context.result.differences


@then("the last recorded step has status {status:d}")
def step_last_step_status(context, status):
    assert context.result.steps[-1].status == status, context.result.steps[-1]


@then('the last recorded step went to "{url}"')
def step_last_step_url(context, url):
    assert context.result.steps[-1].url == url, context.result.steps[-1]


@then('{count:d} "{method}" requests were sent')
def step_requests_sent(context, count, method):
    assert _api(context).count(method) == count, _api(context).calls


@then('{count:d} "{method}" request was sent to "{path}"')
def step_request_sent_to(context, count, method, path):
    assert _api(context).count(method, path) == count, _api(context).calls


@then('the "{method}" body sent to "{path}" was')
def step_body_sent(context, method, path):
    assert _api(context).body_of(method, path) == json.loads(context.text), _api(context).calls


@then("every request after login carried the bearer token")
def step_bearer_everywhere(context):
    assert context.api.count("POST", TOKEN_PATH) == 1
    assert len(context.api.calls) > 1
    headers = [h for (m, p, _), h in zip(context.api.calls, context.api.headers) if p != TOKEN_PATH]
    assert headers and all(h == "Bearer tok-123" for h in headers), headers


@then('the run log has a "{severity}" event mentioning "{text}"')
def step_run_log_event(context, severity, text):
    events = context.run_log.events()
    assert any(e.severity.value == severity and text in e.message for e in events), \
        [(e.severity.value, e.message) for e in events]
