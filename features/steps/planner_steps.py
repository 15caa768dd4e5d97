import yaml
from behave import given, when, then

from src.guard.blacklist import Blacklist
from src.guard.errors import PlanningError
from src.guard.fixtures import case_from_dict
from src.guard.planner import PlanFilters, Planner
from src.sut.factory import parse_catalog


def _split(names):
    return [n.strip() for n in names.split(",") if n.strip()]


def _build(context, catalog, mode, module=None):
    planner = Planner(Blacklist(getattr(context, "blacklist_entries", [])))
    try:
        context.plan = planner.build_plan(catalog, mode, PlanFilters(module=module))
    except PlanningError as e:
        context.error = e


@given("an OpenAPI document")
def step_openapi_document(context):
    context.catalog = parse_catalog(yaml.safe_load(context.text), "https://api.example.com/openapi.yaml")
    context.blacklist_entries = []


@given('the blacklist "{entries}"')
def step_blacklist(context, entries):
    context.blacklist_entries = _split(entries)


@given("the fixture cases")
def step_fixture_cases(context):
    context.cases = [case_from_dict(raw) for raw in yaml.safe_load(context.text)]
    if not hasattr(context, "blacklist_entries"):
        context.blacklist_entries = []


@when('a "{mode}" plan is built')
def step_build_catalog_plan(context, mode):
    _build(context, context.catalog.groups, mode)


@when("a fixture plan is built")
def step_build_fixture_plan(context):
    _build(context, context.cases, "fixtures")


@when('a fixture plan is built for module "{module}"')
def step_build_fixture_plan_module(context, module):
    _build(context, context.cases, "fixtures", module)


@then('the plan entries are "{names}"')
def step_plan_entries(context, names):
    assert context.error is None, context.error
    actual = [e.entry_id for e in context.plan.entries]
    assert actual == _split(names), actual


@then("the plan has no entries")
def step_plan_empty(context):
    assert context.error is None, context.error
    assert context.plan.entries == [], context.plan.entries


@then('"{entry_id}" is skipped with reason "{reason}"')
def step_skipped_reason(context, entry_id, reason):
    skipped = {r.entry_id: r for r in context.plan.skipped}
    assert entry_id in skipped, list(skipped)
    assert skipped[entry_id].outcome.value == "skipped"
    assert skipped[entry_id].reason == reason, skipped[entry_id].reason


@then('plan entry "{entry_id}" depends on "{dependency}"')
def step_entry_depends(context, entry_id, dependency):
    entry = next(e for e in context.plan.entries if e.entry_id == entry_id)
    assert dependency in entry.depends_on, entry.depends_on


@then('planning fails mentioning "{text}"')
def step_planning_fails(context, text):
    assert isinstance(context.error, PlanningError), f"expected PlanningError, plan was {context.plan}"
    assert text in str(context.error), str(context.error)
    assert context.plan is None
