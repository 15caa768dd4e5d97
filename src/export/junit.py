from __future__ import annotations

import os
import xml.etree.ElementTree as ET
from typing import List

from src.guard.types import Outcome, Report, TestResult

CLASSNAME = "APIRegressionTest"


def _failure_text(result: TestResult) -> str:
    lines: List[str] = []
    for step in result.steps:
        if step.ok:
            continue
        target = f" {step.method} {step.url}" if step.method else ""
        lines.append(f"{step.kind.value}{target} [{step.status}]: {step.error}")
    if result.differences:
        lines.append("Differences:")
        for d in result.differences:
            lines.append(f"  {d.kind.value} {d.path}: expected={d.expected!r} actual={d.actual!r}")
    if not lines and result.reason:
        lines.append(result.reason)
    return "\n".join(lines)


def build_junit_xml(report: Report, suite_name: str = "API Contract Tests") -> ET.Element:
    summary = report.summary()
    skipped = summary[Outcome.SKIPPED.value] + summary[Outcome.CANCELLED.value]
    suites = ET.Element("testsuites", {
        "name": suite_name,
        "tests": str(summary["total"]),
        "failures": str(summary[Outcome.FAILED.value]),
        "skipped": str(skipped),
        "time": f"{report.duration:.3f}",
    })
    suite = ET.SubElement(suites, "testsuite", {
        "name": suite_name,
        "tests": str(summary["total"]),
        "failures": str(summary[Outcome.FAILED.value]),
        "errors": "0",
        "skipped": str(skipped),
        "time": f"{report.duration:.3f}",
    })

    for result in report.results:
        case = ET.SubElement(suite, "testcase", {
            "name": result.entry_id,
            "classname": f"{CLASSNAME}.{result.module}" if result.module else CLASSNAME,
            "time": f"{result.duration:.3f}",
        })
        if result.outcome is Outcome.FAILED:
            step = result.failed_step.value if result.failed_step else "run"
            failure = ET.SubElement(case, "failure", {
                "message": f"Failed at {step}: {result.reason or ''}".strip(),
                "type": "ContractMismatch" if result.differences else "StepFailure",
            })
            failure.text = _failure_text(result)
        elif result.outcome in (Outcome.SKIPPED, Outcome.CANCELLED):
            ET.SubElement(case, "skipped", {"message": result.reason or result.outcome.value})
    return suites


def write_junit_report(report: Report, path: str, suite_name: str = "API Contract Tests") -> str:
    root = build_junit_xml(report, suite_name)
    ET.indent(root)
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    ET.ElementTree(root).write(path, encoding="utf-8", xml_declaration=True)
    return path
