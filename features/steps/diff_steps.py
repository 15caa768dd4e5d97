import json

from behave import given, when, then

from src.guard.diff_engine import DiffEngine, diff
from src.guard.types import DiffKind

_SWAP = {DiffKind.ADDED: DiffKind.REMOVED, DiffKind.REMOVED: DiffKind.ADDED, DiffKind.CHANGED: DiffKind.CHANGED}


@given("the expected document")
def step_expected_document(context):
    context.expected_doc = json.loads(context.text)
    context.ignored_paths = []


@given("the actual document")
def step_actual_document(context):
    context.actual_doc = json.loads(context.text)


@given("the actual document is the same")
def step_actual_same(context):
    context.actual_doc = json.loads(json.dumps(context.expected_doc))


@given('the ignored paths "{paths}"')
def step_ignored_paths(context, paths):
    context.ignored_paths = [p.strip() for p in paths.split(",")]


@when("the documents are diffed")
def step_diff(context):
    engine = DiffEngine(context.ignored_paths)
    context.differences = engine.diff(context.expected_doc, context.actual_doc)


@when("the documents are diffed both ways")
def step_diff_both(context):
    context.forward = diff(context.expected_doc, context.actual_doc)
    context.backward = diff(context.actual_doc, context.expected_doc)


@then("there are no differences")
def step_no_differences(context):
    assert context.differences == [], context.differences


@then("the differences are")
def step_differences_are(context):
    actual = [
        {"path": d.path, "kind": d.kind.value, "expected": d.expected, "actual": d.actual}
        for d in context.differences
    ]
    expected = [
        {
            "path": row["path"],
            "kind": row["kind"],
            "expected": json.loads(row["expected"]),
            "actual": json.loads(row["actual"]),
        }
        for row in context.table
    ]
    assert actual == expected, f"expected {expected}\n     got {actual}"
    for d, row in zip(context.differences, expected):
        # 1 == True in Python; make sure the JSON type survived
        assert type(d.expected) is type(row["expected"]), (d.path, d.expected)
        assert type(d.actual) is type(row["actual"]), (d.path, d.actual)


@then("both directions report the same paths")
def step_same_paths(context):
    forward = sorted(d.path for d in context.forward)
    backward = sorted(d.path for d in context.backward)
    assert forward and forward == backward, (forward, backward)


@then("added and removed are swapped between directions")
def step_swapped(context):
    backward = {d.path: d for d in context.backward}
    for d in context.forward:
        other = backward[d.path]
        assert other.kind is _SWAP[d.kind], (d, other)
        assert (other.expected, other.actual) == (d.actual, d.expected), (d, other)
