"""Cheap identifier-preservation heuristic for candidate resolutions."""

from __future__ import annotations

import keyword
import re
from dataclasses import dataclass

from rebase_pilot.resolution.models import CheckOutcome, Conflict

_IDENTIFIER_RE = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*\b")

_COMMON_KEYWORDS = frozenset(
    {
        *keyword.kwlist,
        *keyword.softkwlist,
        "const",
        "let",
        "var",
        "function",
        "func",
        "fn",
        "new",
        "this",
        "self",
        "null",
        "nil",
        "true",
        "false",
        "undefined",
        "public",
        "private",
        "protected",
        "static",
        "void",
        "int",
        "str",
        "string",
        "bool",
        "export",
        "package",
        "struct",
        "interface",
        "type",
        "extends",
        "implements",
        "switch",
        "case",
        "default",
        "do",
        "end",
        "then",
        "fi",
        "echo",
    },
)


@dataclass(slots=True)
class SemanticCheckResult:
    outcome: CheckOutcome
    missing: tuple[str, ...] = ()

    @property
    def detail(self) -> str | None:
        if not self.missing:
            return None
        return "candidate drops identifiers used elsewhere: " + ", ".join(self.missing)


def identifiers(text: str) -> set[str]:
    return {name for name in _IDENTIFIER_RE.findall(text) if name not in _COMMON_KEYWORDS}


def surrounding_text(conflict: Conflict) -> str:
    """File text outside ``conflict``: other chunks when parsed, else the context window."""

    document = conflict.document
    if document is None:
        return "\n".join((*conflict.context_before, *conflict.context_after))
    return "".join(document.chunks)


def check_semantics(conflict: Conflict, candidate: str) -> SemanticCheckResult:
    """Identifiers both sides share and the rest of the file references must survive."""

    required = identifiers(conflict.ours) & identifiers(conflict.theirs)
    if not required:
        return SemanticCheckResult(CheckOutcome.PASS)
    referenced = required & identifiers(surrounding_text(conflict))
    missing = referenced - identifiers(candidate)
    if missing:
        return SemanticCheckResult(CheckOutcome.FAIL, tuple(sorted(missing)))
    return SemanticCheckResult(CheckOutcome.PASS)
