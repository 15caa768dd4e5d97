import asyncio

from behave import given, when, then

from fake_api import BASE_URL, FakeApi, VirtualClock
from src.export.run_log import RunLog
from src.guard.errors import ReadinessTimeoutError
from src.sut.readiness import ReadinessPoller
from src.sut.vm_starter import VMStartError

HEALTH_PATH = "/health"


class FakeVMStarter:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = 0

    async def start(self):
        self.calls += 1
        if self.fail:
            raise VMStartError("Azure authentication failed: invalid_client")


@given('the health endpoint answers "{statuses}"')
def step_health_answers(context, statuses):
    context.api = FakeApi()
    for status in statuses.split(","):
        context.api.add("GET", HEALTH_PATH, int(status), {"status": "ok"})
    context.vm_starter = None


@given("a VM starter")
def step_vm_starter(context):
    context.vm_starter = FakeVMStarter()


@given("a VM starter that fails")
def step_vm_starter_fails(context):
    context.vm_starter = FakeVMStarter(fail=True)


@when("the poller waits up to {budget:d} seconds")
def step_poller_waits(context, budget):
    context.clock = VirtualClock()
    context.run_log = RunLog(echo=False)

    async def scenario():
        async with context.api.http() as http:
            poller = ReadinessPoller(
                http,
                vm_starter=context.vm_starter,
                run_log=context.run_log,
                sleep=context.clock.sleep,
                clock=context.clock,
            )
            try:
                return await poller.wait_until_ready(BASE_URL + HEALTH_PATH, budget)
            finally:
                if poller.start_task is not None:
                    await asyncio.gather(poller.start_task, return_exceptions=True)

    try:
        context.attempts = asyncio.run(scenario())
    except ReadinessTimeoutError as e:
        context.error = e


@then("the API is ready after {attempts:d} attempts")
def step_ready_after(context, attempts):
    assert context.error is None, context.error
    assert context.attempts == attempts, context.attempts
    assert context.api.count("GET", HEALTH_PATH) == attempts


@then("waiting times out after {attempts:d} attempts")
def step_times_out(context, attempts):
    assert isinstance(context.error, ReadinessTimeoutError), context.error
    assert isinstance(context.error, TimeoutError)
    assert context.error.attempts == attempts, context.error.attempts


@then('the poller slept "{seconds}" seconds')
def step_poller_slept(context, seconds):
    expected = [float(s) for s in seconds.split(",")]
    assert context.clock.sleeps == expected, context.clock.sleeps


@then("the run log has {count:d} failed probe events")
def step_failed_probe_events(context, count):
    failed = [e for e in context.run_log.events() if e.message.startswith("Readiness probe")]
    assert len(failed) == count, [e.message for e in context.run_log.events()]


@then("the VM starter was called {count:d} time")
def step_vm_starter_calls(context, count):
    assert context.vm_starter.calls == count, context.vm_starter.calls
