import tempfile
import xml.etree.ElementTree as ET

from behave import given, when, then

from src.export.junit import build_junit_xml, write_junit_report
from src.export.run_log import RunLog, Severity, classify
from src.guard.types import DiffKind, Difference, Outcome, Report, StepKind, TestResult, TestStep


def _junit(context):
    return build_junit_xml(context.report)


def _case(context, name):
    return next(c for c in _junit(context).iter("testcase") if c.get("name") == name)


@given("an empty report")
def step_empty_report(context):
    context.report = Report(results=[])


@given("a report with results")
def step_report_with_results(context):
    context.report = Report(results=[
        TestResult(entry_id=row["id"], outcome=Outcome(row["outcome"]), reason=row["reason"] or None)
        for row in context.table
    ], duration=1.5)


@given('"{entry_id}" failed at "{step}" with "{path}" changed from "{old}" to "{new}"')
def step_failed_with_difference(context, entry_id, step, path, old, new):
    result = next(r for r in context.report.results if r.entry_id == entry_id)
    result.add_step(TestStep(kind=StepKind.GET, method="GET", url="http://api.test/gadgets/1", status=200))
    result.add_step(TestStep(kind=StepKind(step), error="1 difference(s)"))
    result.differences.append(Difference(path=path, expected=old, actual=new, kind=DiffKind.CHANGED))
    result.fail(StepKind(step), result.reason)


@when("the JUnit report is written to a temporary file")
def step_write_junit(context):
    with tempfile.NamedTemporaryFile(suffix=".xml", delete=False) as f:
        context.junit_path = f.name
    context.tmp_files.append(context.junit_path)
    write_junit_report(context.report, context.junit_path)


@then("the JUnit document has {count:d} test cases")
def step_junit_case_count(context, count):
    assert len(list(_junit(context).iter("testcase"))) == count


@then("the JUnit document reports {failures:d} failures and {skipped:d} skipped")
def step_junit_counts(context, failures, skipped):
    suite = _junit(context).find("testsuite")
    assert suite.get("failures") == str(failures), suite.attrib
    assert suite.get("skipped") == str(skipped), suite.attrib


@then('test case "{name}" has a failure mentioning "{text}"')
def step_junit_failure(context, name, text):
    failure = _case(context, name).find("failure")
    assert failure is not None
    assert "COMPARE" in failure.get("message"), failure.attrib
    assert text in failure.text, failure.text


@then('test case "{name}" is skipped with message "{message}"')
def step_junit_skipped(context, name, message):
    skipped = _case(context, name).find("skipped")
    assert skipped is not None and skipped.get("message") == message, ET.tostring(_case(context, name))


@then('every test case has classname "{classname}"')
def step_junit_classname(context, classname):
    assert all(c.get("classname") == classname for c in _junit(context).iter("testcase"))


@then("the file starts with an XML declaration")
def step_xml_declaration(context):
    with open(context.junit_path, encoding="utf-8") as f:
        head = f.read(100)
    assert head.startswith("<?xml"), head
    assert ET.parse(context.junit_path).getroot().tag == "testsuites"


@then('the summary counts {passed:d} "passed" and {skipped:d} "skipped"')
def step_summary_counts(context, passed, skipped):
    summary = context.report.summary()
    assert summary["passed"] == passed and summary["skipped"] == skipped, summary


@then('the line "{line}" is classified as "{severity}"')
def step_classify(context, line, severity):
    assert classify(line) is Severity(severity), classify(line)


@given('a run log with events "{messages}"')
def step_run_log_events(context, messages):
    context.run_log = RunLog(echo=False)
    for message in messages.split(","):
        context.run_log.emit(Severity.INFO, message.strip())


@then('reading from offset {offset:d} returns "{messages}"')
def step_read_from_offset(context, offset, messages):
    events = context.run_log.since(offset)
    assert [e.message for e in events] == [m.strip() for m in messages.split(",")], events
    assert [e.offset for e in events] == list(range(offset, offset + len(events)))


@then("reading from offset {offset:d} returns nothing")
def step_read_nothing(context, offset):
    assert context.run_log.since(offset) == []


@then("a subscriber added now receives later events only")
def step_subscriber(context):
    received = []
    context.run_log.subscribe(received.append)
    context.run_log.emit(Severity.SUCCESS, "done")
    assert [e.message for e in received] == ["done"], received
