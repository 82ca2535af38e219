"""Isolated per-language test execution."""

from .harness import CommandResult, TestHarness
from .reports import parse_junit, parse_output

__all__ = ["CommandResult", "TestHarness", "parse_junit", "parse_output"]
