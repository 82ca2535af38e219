"""Extraction of structured failures from test runner reports and output."""

import re
import xml.etree.ElementTree as ET
from pathlib import Path

from ..models import TestFailure

_OUTPUT_PATTERNS = (
    # pytest: FAILED tests/test_x.py::test_name - AssertionError: message
    re.compile(r"^FAILED (?P<name>\S+)(?: - (?P<message>.*))?$", re.MULTILINE),
    # go test: --- FAIL: TestName (0.00s)
    re.compile(r"^\s*--- FAIL: (?P<name>\S+)(?P<message>.*)$", re.MULTILINE),
    # jest: ● Suite › test name
    re.compile(r"^\s*● (?P<name>.+?)(?P<message>)$", re.MULTILINE),
)


def parse_junit(path: Path) -> list[TestFailure] | None:
    """Failures from a JUnit XML report, or None when it is missing or unreadable."""
    if not path.is_file():
        return None
    try:
        root = ET.parse(path).getroot()
    except ET.ParseError:
        return None

    failures = []
    for case in root.iter("testcase"):
        for tag in ("failure", "error"):
            node = case.find(tag)
            if node is None:
                continue
            classname = case.get("classname", "")
            name = case.get("name", "?")
            text_lines = (node.text or "").strip().splitlines()
            message = node.get("message") or (text_lines[0] if text_lines else tag)
            failures.append(
                TestFailure(
                    test_name=f"{classname}::{name}" if classname else name,
                    message=message.strip()[:500],
                )
            )
            break
    return failures


def parse_output(output: str) -> list[TestFailure]:
    """Best-effort failures from runner console output."""
    failures: list[TestFailure] = []
    seen: set[str] = set()
    for pattern in _OUTPUT_PATTERNS:
        for match in pattern.finditer(output):
            name = match.group("name").strip()
            if name in seen:
                continue
            seen.add(name)
            message = (match.group("message") or "").strip() or "failed"
            failures.append(TestFailure(test_name=name, message=message[:500]))
    return failures
