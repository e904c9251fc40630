from __future__ import annotations

import json
import re
from typing import Any

from flowwatch.models import Intervention, Issue, IssueType, Notification, QueueTask, ResponseType

AUTO_REMEDIATE_THRESHOLD = 0.9
NOTIFY_SUGGEST_THRESHOLD = 0.7
NOTIFICATION_PREFIX = "flowwatch"

ISSUE_NAMES: dict[IssueType, str] = {
    "loop_detected": "Loop Detected",
    "phase_stuck": "Phase Stuck",
    "regression": "Regression",
    "out_of_order": "Out of Order",
    "chain_broken": "Chain Broken",
    "tdd_violation": "TDD Violation",
    "explicit_failure": "Failure",
    "agent_failed": "Agent Failed",
    "silence": "Workflow Silence",
    "missing_milestones": "Missing Milestones",
    "declining_velocity": "Declining Velocity",
    "incomplete_outputs": "Incomplete Outputs",
    "agent_silence": "Agent Silence",
    "abrupt_stop": "Abrupt Stop",
    "partial_completion": "Partial Completion",
    "abandoned_agent": "Abandoned Agent",
    "iron_law_violation": "IRON LAW Violation",
    "iron_law_repeated": "IRON LAW Repeated Violation",
    "iron_law_ignored": "IRON LAW Violation Ignored",
}

ISSUE_TO_AGENT: dict[str, str] = {
    "regression": "test-engineer",
    "out_of_order": "test-engineer",
    "tdd_violation": "test-engineer",
    "missing_milestones": "test-engineer",
    "declining_velocity": "performance-engineer",
}
DEFAULT_AGENT = "debugger"

SUGGESTED_ACTIONS: dict[IssueType, str] = {
    "loop_detected": (
        "Break out of the loop by trying a different approach. Analyze what action is being "
        "repeated and why it is not succeeding."
    ),
    "phase_stuck": (
        "Investigate why the phase is not completing. Check for blocking errors, infinite loops, "
        "or missing dependencies."
    ),
    "regression": (
        "Revert the recent changes or fix the broken tests. Ensure GREEN phase passes before "
        "proceeding to REFACTOR."
    ),
    "out_of_order": (
        "Follow the correct TDD phase order: RED (write failing test) -> GREEN (make test pass) "
        "-> REFACTOR (clean up)."
    ),
    "chain_broken": (
        "Complete the prerequisite command before proceeding. The workflow chain should follow: "
        "ideate -> plan -> build -> ship."
    ),
    "tdd_violation": (
        "Write failing tests first (RED phase) before implementing code (GREEN phase). This is "
        "fundamental to TDD."
    ),
    "explicit_failure": (
        "Investigate and fix the error that caused the failure. Check logs and error messages "
        "for root cause."
    ),
    "agent_failed": (
        "Review what caused the agent to fail. Consider retrying or using a different approach."
    ),
    "silence": (
        "Check if the workflow is still running. Consider if it is waiting for user input or "
        "has stalled."
    ),
    "missing_milestones": (
        "Ensure each phase produces expected outputs and checkpoints. Log milestones as work "
        "progresses."
    ),
    "declining_velocity": (
        "Workflow is slowing down. Consider if complexity is increasing or if there are "
        "blocking issues."
    ),
    "incomplete_outputs": (
        "Ensure the command produces expected outputs before marking complete. Check for "
        "missing files or artifacts."
    ),
    "agent_silence": (
        "Check if the spawned agent started correctly. Consider restarting or using a "
        "different agent."
    ),
    "abrupt_stop": (
        "Workflow stopped unexpectedly after making progress. Check for crashes, timeouts, or "
        "user interruption."
    ),
    "partial_completion": (
        "Some phases completed but workflow did not finish. Resume from the stuck phase or "
        "investigate the blocker."
    ),
    "abandoned_agent": (
        "An agent started but never completed. Check for timeouts, errors, or stuck processes."
    ),
    "iron_law_violation": (
        "IRON LAW violated. Delete code written without test and start with failing test first."
    ),
    "iron_law_repeated": (
        "IRON LAW repeatedly violated. Place the IRON LAWS at the top of the working context "
        "and follow TDD strictly."
    ),
    "iron_law_ignored": (
        "IRON LAW violation not addressed. Stop current work and fix the violation immediately."
    ),
}
FALLBACK_ACTION = "Investigate the issue and take appropriate corrective action."


def response_type_for(confidence: float) -> ResponseType:
    if confidence > AUTO_REMEDIATE_THRESHOLD:
        return "auto_remediate"
    if confidence >= NOTIFY_SUGGEST_THRESHOLD:
        return "notify_suggest"
    return "notify_only"


def sound_for(confidence: float) -> str:
    if confidence > AUTO_REMEDIATE_THRESHOLD:
        return "Basso"
    if confidence >= NOTIFY_SUGGEST_THRESHOLD:
        return "Purr"
    return "Pop"


def format_key(key: str) -> str:
    return " ".join(word[:1].upper() + word[1:] for word in key.split("_"))


def format_duration_ms(value: float) -> str:
    seconds = int(value / 1000 + 0.5)
    if seconds >= 60:
        minutes, remainder = divmod(seconds, 60)
        if remainder:
            return f"{minutes} minutes {remainder} seconds"
        return f"{minutes} minutes"
    return f"{seconds} seconds"


def format_value(key: str, value: Any) -> str:
    is_duration = key.endswith("_ms")
    if is_duration and isinstance(value, (int, float)) and not isinstance(value, bool):
        return format_duration_ms(value)
    if isinstance(value, (list, tuple)):
        if is_duration:
            return ", ".join(
                format_duration_ms(item) if isinstance(item, (int, float)) else str(item)
                for item in value
            )
        return ", ".join(str(item) for item in value)
    if isinstance(value, dict):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


class InterventionGenerator:
    """Maps one issue to its response tier, notification and optional task."""

    def generate(self, issue: Issue) -> Intervention:
        response_type = response_type_for(issue.confidence)
        queue_task = None
        if response_type != "notify_only":
            auto_execute = response_type == "auto_remediate"
            queue_task = QueueTask(
                priority="high" if auto_execute else "medium",
                auto_execute=auto_execute,
                prompt=self.create_prompt(issue),
                agent_type=self.agent_for(issue),
            )
        return Intervention(
            response_type=response_type,
            issue=issue,
            notification=self.create_notification(issue),
            queue_task=queue_task,
        )

    def agent_for(self, issue: Issue) -> str:
        override = issue.context.get("agent_type")
        if override:
            return str(override)
        return ISSUE_TO_AGENT.get(issue.type, DEFAULT_AGENT)

    def create_prompt(self, issue: Issue) -> str:
        sections = [
            f"## Workflow Issue: {ISSUE_NAMES.get(issue.type, issue.type)}\n",
            f"### Issue Description\n{issue.message}\n",
        ]
        evidence = {key: value for key, value in issue.context.items() if value is not None}
        if evidence:
            sections.append("### Evidence\n")
            for key, value in evidence.items():
                sections.append(f"- **{format_key(key)}**: {format_value(key, value)}")
            sections.append("")
        sections.append(
            f"### Suggested Action\n{SUGGESTED_ACTIONS.get(issue.type, FALLBACK_ACTION)}\n"
        )
        sections.append(f"### Confidence\n{issue.confidence * 100:.0f}%\n")
        return "\n".join(sections)

    def create_notification(self, issue: Issue) -> Notification:
        title = f"{NOTIFICATION_PREFIX}: {ISSUE_NAMES.get(issue.type, issue.type)}"
        message = issue.message
        if issue.type == "iron_law_repeated" and "repeated" not in message.lower():
            if "violated" in message:
                message = re.sub("violated", "repeatedly violated", message, count=1)
            else:
                message = f"{message} (repeated)"
        return Notification(title=title, message=message, sound=sound_for(issue.confidence))
