import time

from behave import given, when, then

from fake_api import BASE_URL
from src.guard.config import RunConfig
from src.guard.plan_runner import PlanRunner
from src.tasks.registry import RunHandle, RunRequest, TaskRegistry

WAIT_SECONDS = 10


@given("every request takes {ms:d} ms")
def step_request_delay(context, ms):
    context.api.delay = ms / 1000.0


@given("a task registry")
def step_task_registry(context):
    _registry(context, 50)


@given("a task registry keeping {count:d} runs")
def step_task_registry_bounded(context, count):
    _registry(context, count)


def _registry(context, max_history):
    api = context.api

    def runner_factory(config, run_log):
        return PlanRunner(config, run_log=run_log, http_client=api.http())

    context.registry = TaskRegistry(max_history=max_history, runner_factory=runner_factory, echo=False)
    context.handles = []


def _submit(context, config):
    handle = context.registry.submit(RunRequest(config=config, catalog=context.catalog.groups, label="readonly"))
    context.handles.append(handle)
    context.handle = handle
    return handle


@when("a readonly run is submitted")
def step_submit_readonly(context):
    _submit(context, RunConfig(base_url=BASE_URL, mode="readonly"))


@when("a run without a base URL is submitted")
def step_submit_without_base_url(context):
    _submit(context, RunConfig(mode="readonly"))


@when("{count:d} readonly runs are submitted one after another")
def step_submit_many(context, count):
    for _ in range(count):
        handle = _submit(context, RunConfig(base_url=BASE_URL, mode="readonly"))
        context.registry.wait(handle, WAIT_SECONDS)


@when("the run is cancelled once its first test starts")
def step_cancel_when_started(context):
    deadline = time.monotonic() + WAIT_SECONDS
    offset = 0
    while time.monotonic() < deadline:
        events, offset, _ = context.registry.poll_new_events(context.handle, offset)
        if any("Testing" in e.message for e in events):
            break
        time.sleep(0.01)
    assert context.registry.cancel(context.handle)


@when("the run finishes")
def step_run_finishes(context):
    status = context.registry.wait(context.handle, WAIT_SECONDS)
    assert status.finished, status


@then('the run status is "{status}"')
def step_run_status(context, status):
    assert context.registry.status(context.handle)["status"] == status, context.registry.status(context.handle)


@then('polling from offset 0 returns events mentioning "{text}"')
def step_poll_from_zero(context, text):
    events, context.next_offset, _ = context.registry.poll_new_events(context.handle, 0)
    assert any(text in e.message for e in events), [e.message for e in events]
    assert context.next_offset == len(events)


@then("polling again from the returned offset returns nothing")
def step_poll_again(context):
    events, offset, status = context.registry.poll_new_events(context.handle, context.next_offset)
    assert events == [] and offset == context.next_offset, events
    assert status.finished


@then('the run error mentions "{text}"')
def step_run_error(context, text):
    error = context.registry.status(context.handle)["error"]
    assert error and text in error, error


@then("the run report is marked cancelled")
def step_run_report_cancelled(context):
    result = context.registry.result(context.handle)
    assert result is not None and result.report.cancelled
    outcomes = [r.outcome.value for r in result.report.results]
    assert "cancelled" in outcomes, outcomes


@then("cancelling it again is refused")
def step_cancel_again(context):
    assert context.registry.cancel(context.handle) is False


@then("the registry holds {count:d} runs")
def step_registry_size(context, count):
    assert len(context.registry) == count
    assert len(context.registry.list_runs()) == count


@then("the first run is no longer known")
def step_first_run_evicted(context):
    first = context.handles[0]
    assert first not in context.registry
    try:
        context.registry.status(first)
    except KeyError:
        return
    raise AssertionError("evicted run still answers status()")


@then("asking for an unknown run fails")
def step_unknown_run(context):
    for call in (context.registry.status, context.registry.cancel, lambda h: context.registry.poll_new_events(h, 0)):
        try:
            call(RunHandle(run_id="does-not-exist"))
        except KeyError:
            continue
        raise AssertionError(f"{call} accepted an unknown run")


@given('"{key}" now answers {status:d}')
def step_route_now_answers(context, key, status):
    method, _, path = key.partition(" ")
    context.api.routes[(method, path)] = [(status, {"message": "gone"})]
