from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from flowwatch.models import Priority

AnomalyType = Literal[
    "agent_loop",
    "test_failure",
    "exception",
    "ci_failure",
    "pr_check_failed",
    "push_failed",
    "agent_stuck",
]

EXCERPT_LIMIT = 300


@dataclass(slots=True)
class RuleMatch:
    anomaly_type: AnomalyType
    priority: Priority
    suggested_agent: str
    prompt: str
    rule: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "anomaly_type": self.anomaly_type,
            "priority": self.priority,
            "suggested_agent": self.suggested_agent,
            "prompt": self.prompt,
            "rule": self.rule,
            "context": dict(self.context),
        }


@dataclass(slots=True, frozen=True)
class _Rule:
    name: str
    pattern: re.Pattern[str]
    anomaly_type: AnomalyType
    priority: Priority
    suggested_agent: str
    extract: Callable[[re.Match[str], str], dict[str, Any]]
    render: Callable[[dict[str, Any]], str]
    # Lowercase literals; the pattern only runs when one of them is present.
    gate: tuple[str, ...] = ()

    def applies_to(self, lowered: str) -> bool:
        return not self.gate or any(literal in lowered for literal in self.gate)


def _excerpt(match: re.Match[str], limit: int = EXCERPT_LIMIT) -> str:
    return match.group(0).strip()[:limit]


def _test_file(match: re.Match[str], _text: str) -> dict[str, Any]:
    return {"test_file": match.group("file"), "log_excerpt": _excerpt(match)}


def _test_name(match: re.Match[str], _text: str) -> dict[str, Any]:
    return {"test_name": match.group("name").strip(), "log_excerpt": _excerpt(match)}


def _excerpt_only(match: re.Match[str], _text: str) -> dict[str, Any]:
    return {"log_excerpt": _excerpt(match)}


_JS_FRAME = re.compile(r"at\s+\S+\s+\(([^:()\s]+):(\d+)")
_PY_FRAME = re.compile(r'File\s+"([^"]+)",\s+line\s+(\d+)')


def _js_exception(match: re.Match[str], text: str) -> dict[str, Any]:
    context: dict[str, Any] = {"log_excerpt": _excerpt(match, 200)}
    frame = _JS_FRAME.search(text, match.start())
    if frame:
        context["file"] = frame.group(1)
        context["line"] = int(frame.group(2))
    return context


def _py_exception(match: re.Match[str], text: str) -> dict[str, Any]:
    context: dict[str, Any] = {"log_excerpt": _excerpt(match, 200)}
    frame = _PY_FRAME.search(text, match.start())
    if frame:
        context["file"] = frame.group(1)
        context["line"] = int(frame.group(2))
    return context


def _fix_error_prompt(context: dict[str, Any]) -> str:
    prompt = f"Fix the error: {context['log_excerpt']}"
    if context.get("file"):
        prompt += f" in {context['file']}"
        if context.get("line"):
            prompt += f":{context['line']}"
    return prompt


def _fix_test_file_prompt(context: dict[str, Any]) -> str:
    return (
        f"Fix the failing test in {context['test_file']}. "
        "Analyze the test failure and implement the necessary fix."
    )


_TEST_FILE = r"(?P<file>\S+?(?:\.(?:test|spec)\.[tj]sx?|\.py))"

# Evaluated in order; the loop rule runs before all of these.
_RULES: tuple[_Rule, ...] = (
    _Rule(
        name="test_failure_fail",
        pattern=re.compile(r"\bFAIL\s+" + _TEST_FILE + r"(?=\s|$|:)"),
        anomaly_type="test_failure",
        priority="high",
        suggested_agent="debugger",
        extract=_test_file,
        render=_fix_test_file_prompt,
        gate=("fail",),
    ),
    _Rule(
        name="test_failure_pytest",
        pattern=re.compile(r"\bFAILED\s+(?P<file>[^\s:]+\.py)::"),
        anomaly_type="test_failure",
        priority="high",
        suggested_agent="debugger",
        extract=_test_file,
        render=_fix_test_file_prompt,
        gate=("failed",),
    ),
    _Rule(
        name="test_failure_vitest",
        pattern=re.compile(r"❯\s+(?P<file>\S+\.(?:test|spec)\.[tj]sx?)\s+\([^)\n]*\d+\s+failed"),
        anomaly_type="test_failure",
        priority="high",
        suggested_agent="debugger",
        extract=_test_file,
        render=_fix_test_file_prompt,
        gate=("❯",),
    ),
    _Rule(
        name="test_failure_generic",
        pattern=re.compile(r"Test failed:?[ \t]*(?P<name>[^\n]+)", re.IGNORECASE),
        anomaly_type="test_failure",
        priority="high",
        suggested_agent="debugger",
        extract=_test_name,
        render=lambda context: (
            f'Fix the failing test: "{context["test_name"]}". '
            "Analyze the test failure and implement the necessary fix."
        ),
        gate=("test failed",),
    ),
    _Rule(
        name="test_failure_assertion",
        pattern=re.compile(r"\bAssertionError\b[^\n]*"),
        anomaly_type="test_failure",
        priority="high",
        suggested_agent="debugger",
        extract=_excerpt_only,
        render=lambda context: (
            f"A test assertion failed: {context['log_excerpt']}. "
            "Find the failing test and fix the behavior it checks."
        ),
        gate=("assertionerror",),
    ),
    _Rule(
        name="test_failure_summary",
        pattern=re.compile(r"\b(?P<count>\d+)\s+(?:tests?\s+)?failed\b"),
        anomaly_type="test_failure",
        priority="high",
        suggested_agent="debugger",
        extract=lambda match, _text: {
            "failed_count": int(match.group("count")),
            "log_excerpt": _excerpt(match),
        },
        render=lambda context: (
            f"{context['failed_count']} test(s) failed. "
            "Run the suite, find the failing test and fix it."
        ),
        gate=("failed",),
    ),
    _Rule(
        name="exception_python",
        pattern=re.compile(r"Traceback \(most recent call last\):"),
        anomaly_type="exception",
        priority="medium",
        suggested_agent="debugger",
        extract=_py_exception,
        render=_fix_error_prompt,
        gate=("traceback",),
    ),
    _Rule(
        name="exception_with_stack",
        pattern=re.compile(
            r"(?:TypeError|ReferenceError|SyntaxError|RangeError):[ \t]*[^\n]*\n\s+at\s+\S+\s+\("
        ),
        anomaly_type="exception",
        priority="medium",
        suggested_agent="debugger",
        extract=_js_exception,
        render=_fix_error_prompt,
        gate=("error:",),
    ),
    _Rule(
        name="error_generic",
        pattern=re.compile(r"\b(?:[A-Z]\w*)?Error:[ \t]*[^\n]+"),
        anomaly_type="exception",
        priority="medium",
        suggested_agent="debugger",
        extract=_excerpt_only,
        render=lambda context: f"Investigate and fix the error: {context['log_excerpt']}",
        gate=("error:",),
    ),
    _Rule(
        name="ci_failure_emoji",
        pattern=re.compile(r"❌\s*(?:CI|Build|Pipeline)[:\s]+[^\n]+", re.IGNORECASE),
        anomaly_type="ci_failure",
        priority="high",
        suggested_agent="deployment-engineer",
        extract=_excerpt_only,
        render=lambda context: f"CI pipeline failed. Investigate the failure: {context['log_excerpt']}",
        gate=("❌",),
    ),
    _Rule(
        name="ci_failure_text",
        pattern=re.compile(r"\b(?:CI|build)\s+failed", re.IGNORECASE),
        anomaly_type="ci_failure",
        priority="high",
        suggested_agent="deployment-engineer",
        extract=_excerpt_only,
        render=lambda _context: "CI/Build failed. Investigate the failure and fix the underlying issue.",
        gate=("failed",),
    ),
    _Rule(
        name="pr_check_failed",
        pattern=re.compile(r"\bPR\s+check\s+failed", re.IGNORECASE),
        anomaly_type="pr_check_failed",
        priority="high",
        suggested_agent="deployment-engineer",
        extract=_excerpt_only,
        render=lambda _context: "PR check failed. Review the check failure and address the issues.",
        gate=("check",),
    ),
    _Rule(
        name="push_failed",
        pattern=re.compile(r"failed\s+to\s+push", re.IGNORECASE),
        anomaly_type="push_failed",
        priority="high",
        suggested_agent="deployment-engineer",
        extract=_excerpt_only,
        render=lambda _context: "Git push failed. Check for remote conflicts or permission issues.",
        gate=("push",),
    ),
    _Rule(
        name="agent_stuck_timeout",
        pattern=re.compile(r"timed?\s*out\s+(?:after\s+)?(\d+)", re.IGNORECASE),
        anomaly_type="agent_stuck",
        priority="high",
        suggested_agent="debugger",
        extract=_excerpt_only,
        render=lambda _context: (
            "Investigate the command timeout. Check if the process is hung or if there's an infinite loop."
        ),
        gate=("time",),
    ),
    _Rule(
        name="agent_stuck_no_output",
        pattern=re.compile(
            r"no\s+output\s+(?:received\s+)?(?:for\s+)?(\d+)\s*(?:seconds?|s)\b", re.IGNORECASE
        ),
        anomaly_type="agent_stuck",
        priority="high",
        suggested_agent="debugger",
        extract=_excerpt_only,
        render=lambda _context: (
            "Investigate why there's no output. The process may be stuck or waiting for input."
        ),
        gate=("output",),
    ),
)

_TOOL_CALL = re.compile(r"Tool:\s*(\w+)")


class RuleEngine:
    """Pattern-based classifier for unstructured tool and test output."""

    def __init__(self, loop_threshold: int = 5) -> None:
        self.loop_threshold = max(2, int(loop_threshold))

    def analyze(self, text: str) -> RuleMatch | None:
        if not text or not text.strip():
            return None
        loop = self._detect_loop(text)
        if loop is not None:
            return loop
        lowered = text.lower()
        for rule in _RULES:
            if not rule.applies_to(lowered):
                continue
            match = rule.pattern.search(text)
            if match is None:
                continue
            context = rule.extract(match, text)
            return RuleMatch(
                anomaly_type=rule.anomaly_type,
                priority=rule.priority,
                suggested_agent=rule.suggested_agent,
                prompt=rule.render(context),
                rule=rule.name,
                context=context,
            )
        return None

    def _detect_loop(self, text: str) -> RuleMatch | None:
        best_tool = ""
        best_run = 0
        current_tool = ""
        current_run = 0
        for match in _TOOL_CALL.finditer(text):
            tool = match.group(1)
            if tool == current_tool:
                current_run += 1
            else:
                current_tool = tool
                current_run = 1
            if current_run > best_run:
                best_tool = current_tool
                best_run = current_run
        if best_run < self.loop_threshold:
            return None
        return RuleMatch(
            anomaly_type="agent_loop",
            priority="high",
            suggested_agent="debugger",
            prompt=(
                f"Detected agent loop: {best_tool} was called {best_run} times in a row. "
                "Investigate and break the loop."
            ),
            rule="agent_loop",
            context={
                "tool_name": best_tool,
                "repeat_count": best_run,
                "log_excerpt": f"Tool {best_tool} called {best_run} times",
            },
        )
