"""File-type classification and pluggable per-language syntax checks."""

from __future__ import annotations

import ast
import json
import re
import tomllib
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import PurePosixPath

from rebase_pilot.resolution.models import CheckOutcome

_EXTENSION_LANGUAGES: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".json": "json",
    ".toml": "toml",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rb": "ruby",
    ".java": "java",
    ".php": "php",
    ".sh": "shell",
    ".bash": "shell",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".md": "markdown",
    ".rs": "rust",
    ".c": "c",
    ".h": "c",
    ".cpp": "cpp",
}
_FILENAME_LANGUAGES: dict[str, str] = {
    "Dockerfile": "dockerfile",
    "Makefile": "make",
}
_BINARY_EXTENSIONS = frozenset(
    {
        ".png",
        ".jpg",
        ".jpeg",
        ".gif",
        ".ico",
        ".pdf",
        ".zip",
        ".gz",
        ".tar",
        ".jar",
        ".so",
        ".dll",
        ".exe",
        ".woff",
        ".woff2",
        ".sqlite",
    },
)

CONFLICT_MARKER_RE = re.compile(r"^(?:<{7}|\|{7}|={7}|>{7})(?:\s|$)", re.MULTILINE)
_TOML_LINE_RE = re.compile(r"line (\d+)")


@dataclass(frozen=True, slots=True)
class SyntaxIssue:
    message: str
    line: int | None = None


SyntaxChecker = Callable[[str], SyntaxIssue | None]
"""Return ``None`` when ``text`` parses, otherwise the first problem found."""


def classify_language(path: str) -> str:
    pure = PurePosixPath(path)
    if pure.name in _FILENAME_LANGUAGES:
        return _FILENAME_LANGUAGES[pure.name]
    suffix = pure.suffix.lower()
    if suffix in _BINARY_EXTENSIONS:
        return "binary"
    return _EXTENSION_LANGUAGES.get(suffix, "text")


def is_binary_path(path: str) -> bool:
    return PurePosixPath(path).suffix.lower() in _BINARY_EXTENSIONS


def find_conflict_marker(text: str) -> int | None:
    """1-based line of the first leftover conflict marker, if any."""

    match = CONFLICT_MARKER_RE.search(text)
    if match is None:
        return None
    return text.count("\n", 0, match.start()) + 1


def check_python(text: str) -> SyntaxIssue | None:
    try:
        ast.parse(text)
    except SyntaxError as error:
        return SyntaxIssue(error.msg, error.lineno)
    except ValueError as error:
        return SyntaxIssue(str(error))
    return None


def check_json(text: str) -> SyntaxIssue | None:
    try:
        json.loads(text)
    except json.JSONDecodeError as error:
        return SyntaxIssue(error.msg, error.lineno)
    return None


def check_toml(text: str) -> SyntaxIssue | None:
    try:
        tomllib.loads(text)
    except tomllib.TOMLDecodeError as error:
        message = str(error)
        match = _TOML_LINE_RE.search(message)
        return SyntaxIssue(message, int(match.group(1)) if match else None)
    return None


DEFAULT_CHECKERS: dict[str, SyntaxChecker] = {
    "python": check_python,
    "json": check_json,
    "toml": check_toml,
}


@dataclass(slots=True)
class SyntaxCheckResult:
    outcome: CheckOutcome
    detail: str | None = None
    line: int | None = None


class SyntaxRegistry:
    """Language -> syntax checker lookup.

    Unknown languages are "not applicable", except that leftover conflict markers
    fail every language.
    """

    def __init__(self, checkers: Mapping[str, SyntaxChecker] | None = None) -> None:
        self._checkers: dict[str, SyntaxChecker] = dict(
            DEFAULT_CHECKERS if checkers is None else checkers,
        )

    def register(self, language: str, checker: SyntaxChecker) -> None:
        self._checkers[language] = checker

    def supports(self, language: str) -> bool:
        return language in self._checkers

    def check(self, language: str, text: str) -> SyntaxCheckResult:
        marker_line = find_conflict_marker(text)
        if marker_line is not None:
            return SyntaxCheckResult(
                CheckOutcome.FAIL,
                f"conflict marker left at line {marker_line}",
                marker_line,
            )
        checker = self._checkers.get(language)
        if checker is None:
            return SyntaxCheckResult(CheckOutcome.NOT_APPLICABLE)
        issue = checker(text)
        if issue is None:
            return SyntaxCheckResult(CheckOutcome.PASS)
        where = f" at line {issue.line}" if issue.line is not None else ""
        return SyntaxCheckResult(
            CheckOutcome.FAIL,
            f"{language} syntax error{where}: {issue.message}",
            issue.line,
        )
