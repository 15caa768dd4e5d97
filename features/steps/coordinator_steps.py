import asyncio

from behave import given, when, then

from src.export.run_log import RunLog
from src.guard.coordinator import ConcurrencyCoordinator
from src.guard.errors import AuthError
from src.guard.types import FixtureCase, Outcome, PlanEntry, RunMode, TestResult


class ScriptedExecutor:
    """Plays back a fixed outcome per entry and records timing."""

    def __init__(self, outcomes, delay=0.0, cancel_on=None):
        self.outcomes = outcomes
        self.delay = delay
        self.cancel_on = cancel_on
        self.cancel_event = None
        self.started = []
        self.timeline = []
        self.finished = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def run(self, entry, cancel=None):
        self.started.append(entry.entry_id)
        self.timeline.append(("start", entry.entry_id))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if entry.entry_id == self.cancel_on:
                self.cancel_event.set()
                await asyncio.sleep(0.01)
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes[entry.entry_id]
            if outcome == "auth-error":
                raise AuthError("token endpoint returned 401 Unauthorized", status=401)
            if cancel is not None and cancel.is_set():
                return TestResult(entry_id=entry.entry_id, outcome=Outcome.CANCELLED, reason="cancelled")
            return TestResult(entry_id=entry.entry_id, outcome=Outcome(outcome))
        finally:
            self.in_flight -= 1
            self.finished.append(entry.entry_id)
            self.timeline.append(("end", entry.entry_id))


def _names(text):
    return [n.strip() for n in text.split(",") if n.strip()]


@given("a plan of entries")
def step_plan_of_entries(context):
    context.entries = []
    context.outcomes = {}
    for row in context.table:
        deps = tuple(_names(row["depends_on"]))
        case = FixtureCase(case_id=row["id"], endpoint=f"POST /{row['id']}", depends_on=deps)
        context.entries.append(PlanEntry(entry_id=row["id"], target=case, mode=RunMode.FIXTURES, depends_on=deps))
        context.outcomes[row["id"]] = row["outcome"]
    context.entry_delay = 0.0
    context.cancel_on = None


@given("each entry takes {ms:d} ms")
def step_entry_delay(context, ms):
    context.entry_delay = ms / 1000.0


@given('entry "{entry_id}" requests cancellation when it starts')
def step_cancel_on(context, entry_id):
    context.cancel_on = entry_id


async def _coordinate(context, workers, budget):
    executor = ScriptedExecutor(context.outcomes, context.entry_delay, context.cancel_on)
    executor.cancel_event = asyncio.Event()
    context.executor = executor
    coordinator = ConcurrencyCoordinator(executor, max_parallel=workers, run_timeout=budget, run_log=RunLog(echo=False))
    return await coordinator.run(context.entries, executor.cancel_event)


def _run_coordinator(context, workers, budget=None):
    try:
        context.report = asyncio.run(_coordinate(context, workers, budget))
    except AuthError as e:
        context.error = e


@when("the coordinator runs them with at most {workers:d} worker")
def step_run_one_worker(context, workers):
    _run_coordinator(context, workers)


@when("the coordinator runs them with at most {workers:d} workers")
def step_run_workers(context, workers):
    _run_coordinator(context, workers)


@when("the coordinator runs them with at most {workers:d} worker and a {budget:f} second budget")
def step_run_with_budget(context, workers, budget):
    _run_coordinator(context, workers, budget)


@then("the outcomes are")
def step_outcomes(context):
    assert context.error is None, context.error
    actual = [(r.entry_id, r.outcome.value, r.reason or "") for r in context.report.results]
    expected = [(row["id"], row["outcome"], row["reason"]) for row in context.table]
    assert actual == expected, actual


@then('the executor only started "{names}"')
def step_executor_started(context, names):
    assert context.executor.started == _names(names), context.executor.started


@then("at most {n:d} entries ran at the same time")
def step_at_most(context, n):
    assert context.executor.max_in_flight <= n, context.executor.max_in_flight


@then("at least {n:d} entries ran at the same time")
def step_at_least(context, n):
    assert context.executor.max_in_flight >= n, context.executor.max_in_flight


@then('the results are in the order "{names}"')
def step_result_order(context, names):
    assert [r.entry_id for r in context.report.results] == _names(names)


@then('"{later}" started after "{earlier}" finished')
def step_started_after(context, later, earlier):
    timeline = context.executor.timeline
    assert timeline.index(("end", earlier)) < timeline.index(("start", later)), timeline


@then("the report passed")
def step_report_passed(context):
    assert context.error is None, context.error
    assert context.report.passed, context.report.summary()


@then("the report did not pass")
def step_report_not_passed(context):
    assert not context.report.passed, context.report.summary()


@then("the report is marked cancelled")
def step_report_cancelled(context):
    assert context.report.cancelled
    assert not context.report.passed


@then("the report has {count:d} results")
def step_report_count(context, count):
    assert len(context.report.results) == count, context.report.results


@then("the run aborts with an authentication error")
def step_run_aborts_auth(context):
    assert isinstance(context.error, AuthError), context.error
    assert context.report is None


@then("the executor started nothing")
def step_executor_started_nothing(context):
    assert context.executor.started == [], context.executor.started
