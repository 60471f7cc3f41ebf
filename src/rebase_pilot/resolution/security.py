"""Conservative denylist scan for dangerous constructs in candidate text."""

from __future__ import annotations

import re
from dataclasses import dataclass

from rebase_pilot.orchestrator.errors import SecurityRejected

SECURITY_RULES_VERSION = 1


@dataclass(frozen=True, slots=True)
class SecurityRule:
    name: str
    description: str
    patterns: tuple[re.Pattern[str], ...]


@dataclass(frozen=True, slots=True)
class SecurityFinding:
    rule: str
    pattern: str
    matched_text: str
    line: int

    def to_error(self) -> SecurityRejected:
        return SecurityRejected(rule=self.rule, matched_text=self.matched_text)


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern) for pattern in patterns)


DEFAULT_RULES: tuple[SecurityRule, ...] = (
    SecurityRule(
        name="dynamic_code_execution",
        description="Evaluates code built at runtime.",
        patterns=_compile(
            r"(?<![\w.])eval\s*\(",
            r"(?<![\w.])exec\s*\(",
            r"(?<![\w.])compile\s*\([^)]*['\"]exec['\"]",
            r"\bnew\s+Function\s*\(",
            r"\bset(?:Timeout|Interval)\s*\(\s*['\"`]",
            r"\b(?:instance|class|module)_eval\b",
            r"\bcreate_function\s*\(",
        ),
    ),
    SecurityRule(
        name="shell_invocation",
        description="Spawns a shell or external process.",
        patterns=_compile(
            r"\bos\.(?:system|popen|exec[lv]p?e?|spawn[lv]p?e?)\s*\(",
            r"\bsubprocess\.(?:run|call|check_call|check_output|Popen|getoutput|getstatusoutput)\s*\(",
            r"\bshell\s*=\s*True\b",
            r"\bchild_process\b",
            r"\bexecSync\s*\(",
            r"\bRuntime\.getRuntime\(\)\.exec\s*\(",
            r"\bnew\s+ProcessBuilder\s*\(",
            r"\bexec\.Command\s*\(",
            r"(?<![\w.])(?:system|shell_exec|passthru|proc_open|popen)\s*\(",
            r"\bcommands\.getoutput\s*\(",
            r"\bOpen3\.",
        ),
    ),
    SecurityRule(
        name="dynamic_import",
        description="Loads a module chosen at runtime.",
        patterns=_compile(
            r"\b__import__\s*\(",
            r"\bimportlib\.(?:import_module|__import__)\s*\(",
            r"\bimportlib\.util\.spec_from_file_location\s*\(",
            r"(?<![\w.])import\(\s*[^'\"`\s)]",
            r"(?<![\w.])require\s*\(\s*[^'\"`\s)]",
            r"\bClass\.forName\s*\(",
            r"\bplugin\.Open\s*\(",
        ),
    ),
    SecurityRule(
        name="unsafe_deserialization",
        description="Deserializes data into arbitrary objects.",
        patterns=_compile(
            r"\b(?:c?[Pp]ickle|_pickle|dill|cloudpickle)\.(?:loads?|Unpickler)\b",
            r"\bmarshal\.loads?\s*\(",
            r"\bshelve\.open\s*\(",
            r"\byaml\.(?:unsafe_load|full_load|load_all)\s*\(",
            r"\byaml\.load\s*\((?![^)]*SafeLoader)",
            r"\bjsonpickle\.decode\s*\(",
            r"(?<![\w.])unserialize\s*\(",
            r"\bObjectInputStream\b",
            r"\bMarshal\.load\b",
            r"\bYAML\.load\s*\(",
        ),
    ),
)


class SecurityScanner:
    """Match candidate text against named denylist rules.

    A match on any rule rejects the candidate; comments and string literals are
    not excluded, so false positives are expected.
    """

    def __init__(self, rules: tuple[SecurityRule, ...] = DEFAULT_RULES) -> None:
        self.rules = rules

    def scan(self, text: str) -> SecurityFinding | None:
        """First finding in rule order, or ``None`` when the text is clean."""

        for rule in self.rules:
            for pattern in rule.patterns:
                match = pattern.search(text)
                if match is not None:
                    return _finding(rule, pattern, text, match)
        return None

    def scan_all(self, text: str) -> list[SecurityFinding]:
        findings: list[SecurityFinding] = []
        for rule in self.rules:
            for pattern in rule.patterns:
                findings.extend(
                    _finding(rule, pattern, text, match) for match in pattern.finditer(text)
                )
        findings.sort(key=lambda finding: finding.line)
        return findings


def _finding(
    rule: SecurityRule,
    pattern: re.Pattern[str],
    text: str,
    match: re.Match[str],
) -> SecurityFinding:
    line_start = text.rfind("\n", 0, match.start()) + 1
    line_end = text.find("\n", match.end())
    snippet = text[line_start : line_end if line_end != -1 else len(text)].strip()
    return SecurityFinding(
        rule=rule.name,
        pattern=pattern.pattern,
        matched_text=snippet[:200],
        line=text.count("\n", 0, match.start()) + 1,
    )
