from __future__ import annotations

import allure
import pytest

from rebase_pilot.orchestrator.errors import SecurityRejected
from rebase_pilot.resolution.security import SecurityScanner

pytestmark = [
    allure.epic("Conflict Resolution"),
    allure.feature("Security Scan"),
]


@pytest.mark.parametrize(
    ("text", "rule"),
    [
        ("result = eval(user_input)\n", "dynamic_code_execution"),
        ("const f = new Function('return 1');\n", "dynamic_code_execution"),
        ("os.system('rm -rf /tmp/x')\n", "shell_invocation"),
        ("subprocess.run(cmd, shell=True)\n", "shell_invocation"),
        ("const cp = require('child_process');\n", "shell_invocation"),
        ("mod = importlib.import_module(name)\n", "dynamic_import"),
        ("data = pickle.loads(blob)\n", "unsafe_deserialization"),
        ("cfg = yaml.load(stream)\n", "unsafe_deserialization"),
    ],
)
def test_dangerous_constructs_are_flagged(text: str, rule: str) -> None:
    finding = SecurityScanner().scan(text)

    assert finding is not None
    assert finding.rule == rule
    assert finding.line == 1


@pytest.mark.parametrize(
    "text",
    [
        "value = compute(total)\n",
        "model.evaluate(batch)\n",
        "cfg = yaml.load(stream, Loader=yaml.SafeLoader)\n",
        "from app import settings\n",
    ],
)
def test_ordinary_code_passes(text: str) -> None:
    assert SecurityScanner().scan(text) is None


def test_scan_all_orders_findings_by_line() -> None:
    text = "x = 1\ndata = pickle.loads(b)\neval(x)\n"

    findings = SecurityScanner().scan_all(text)

    assert [(finding.line, finding.rule) for finding in findings] == [
        (2, "unsafe_deserialization"),
        (3, "dynamic_code_execution"),
    ]
    assert findings[0].matched_text == "data = pickle.loads(b)"


def test_finding_converts_to_security_rejected() -> None:
    finding = SecurityScanner().scan("exec(code)\n")
    assert finding is not None

    error = finding.to_error()

    assert isinstance(error, SecurityRejected)
    assert error.rule == "dynamic_code_execution"
    assert error.matched_text == "exec(code)"
