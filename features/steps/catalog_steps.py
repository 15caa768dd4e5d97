import tempfile

from behave import given, when, then

from src.guard.errors import PlanningError
from src.guard.fixtures import build_path, load_fixtures
from src.sut.factory import resource_of


def _endpoint(context, key):
    method, _, path = key.partition(" ")
    for group in context.catalog.groups:
        for endpoint in group.endpoints:
            if endpoint.method == method and endpoint.path == path:
                return endpoint
    raise AssertionError(f"{key} not in catalog")


def _group(context, resource):
    return next(g for g in context.catalog.groups if g.resource == resource)


@then('the path "{path}" belongs to resource "{resource}"')
def step_resource_of(context, path, resource):
    assert resource_of(path) == resource, resource_of(path)


@then('the catalog base URL is "{url}"')
def step_base_url(context, url):
    assert context.catalog.base_url == url, context.catalog.base_url


@then('resource "{resource}" lists "{keys}"')
def step_resource_lists(context, resource, keys):
    actual = [e.key for e in _group(context, resource).endpoints]
    assert actual == [k.strip() for k in keys.split(",")], actual


@then('resource "{resource}" can be tested end to end')
def step_resource_triad(context, resource):
    assert _group(context, resource).has_triad()


@then('endpoint "{key}" has a request schema')
def step_request_schema(context, key):
    assert _endpoint(context, key).request_schema is not None


@then('endpoint "{key}" has a response schema')
def step_response_schema(context, key):
    assert _endpoint(context, key).response_schema is not None


@given("a fixture file")
def step_fixture_file(context):
    with tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False, encoding="utf-8") as f:
        f.write(context.text)
    context.fixture_path = f.name
    context.tmp_files.append(f.name)


@when("the fixture file is loaded")
def step_load_fixture_file(context):
    try:
        context.cases = load_fixtures(context.fixture_path)
    except PlanningError as e:
        context.error = e


@then("{count:d} fixture cases are loaded")
def step_fixture_count(context, count):
    assert context.error is None, context.error
    assert len(context.cases) == count, context.cases


@then('fixture case "{case_id}" posts to "{path}"')
def step_fixture_posts_to(context, case_id, path):
    case = next(c for c in context.cases if c.case_id == case_id)
    assert build_path(case.endpoint, case.path_params) == path, build_path(case.endpoint, case.path_params)


@then('fixture case "{case_id}" has priority {priority:d} and expects status {status:d}')
def step_fixture_defaults(context, case_id, priority, status):
    case = next(c for c in context.cases if c.case_id == case_id)
    assert case.priority == priority, case.priority
    assert case.expected_status == status, case.expected_status


@then('loading fails with "{text}"')
def step_loading_fails(context, text):
    assert isinstance(context.error, PlanningError), context.error
    assert text in str(context.error)
