"""Logical path rules for generated files."""

from fnmatch import fnmatch
from pathlib import PurePosixPath

from ..config.settings import ToolchainConfig


def is_test_path(path: str, toolchain: ToolchainConfig) -> bool:
    name = PurePosixPath(path).name
    return any(fnmatch(name, pattern) for pattern in toolchain.test_patterns)


def path_problem(
    path: str, language: str, toolchain: ToolchainConfig | None, test: bool
) -> str | None:
    """Why ``path`` cannot hold a ``language`` file, or None if it can."""
    if toolchain is None:
        return f"no toolchain configured for language {language!r}"
    if not path or not path.strip():
        return "path is empty"
    if "\\" in path:
        return f"path {path!r} must use forward slashes"
    pure = PurePosixPath(path)
    if pure.is_absolute() or ".." in pure.parts:
        return f"path {path!r} must be relative and stay inside the workspace"
    if pure.suffix not in toolchain.extensions:
        return f"path {path!r} does not have a {language} extension {toolchain.extensions}"
    if test and not is_test_path(path, toolchain):
        return f"test path {path!r} does not match {toolchain.test_patterns}"
    if not test and is_test_path(path, toolchain):
        return f"source path {path!r} looks like a test file"
    return None
