from __future__ import annotations

import json
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

from flowwatch.models import AgentDescriptor, LogEntry, format_timestamp, utcnow

CHECKLIST_LABELS: dict[str, str] = {
    "law1_tdd": "LAW #1: TDD - Tests written first",
    "law2_behavior_tests": "LAW #2: Behavior tests (not implementation)",
    "law3_no_loops": "LAW #3: No loops detected",
    "law4_feature_branch": "LAW #4: On feature branch",
    "law5_delegation": "LAW #5: Agent delegation used",
    "law6_docs_synced": "LAW #6: Dev docs synced",
}


def describe(entry: LogEntry) -> str:
    data = entry.payload
    if entry.agent is not None or entry.event in ("AGENT_SPAWN", "AGENT_COMPLETE"):
        agent_type = entry.agent.type if entry.agent else data.get("agent_type", "agent")
        task = data.get("task")
        return f"{agent_type}: {task}" if task else str(agent_type)
    if entry.event == "COMPLETE" and data.get("summary"):
        return str(data["summary"])
    if entry.event == "FAILED" and data.get("error"):
        return str(data["error"])
    if entry.event == "START" and isinstance(data.get("args"), list):
        return " ".join(str(arg) for arg in data["args"])
    if entry.event == "MILESTONE" and data.get("description"):
        return str(data["description"])
    return ""


def human_summary(entry: LogEntry) -> str:
    label = entry.command.upper()
    if entry.phase:
        label += f":{entry.phase}"
    label += f":{entry.event}"
    description = describe(entry)
    return f"# {label} - {description}" if description else f"# {label}"


def compliance_checklist(checklist: dict[str, bool]) -> str:
    lines = ["# IRON LAW COMPLIANCE:"]
    for key, passed in checklist.items():
        mark = "✓" if passed else "✗"
        lines.append(f"#   [{mark}] {CHECKLIST_LABELS.get(key, key)}")
    passed_count = sum(1 for value in checklist.values() if value)
    lines.append(f"#   Result: {passed_count}/{len(checklist)} laws observed")
    lines.append("#")
    return "\n".join(lines) + "\n"


class WorkflowLogger:
    """Appends structured entries plus a human-readable mirror line."""

    def __init__(self, log_path: Path, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.log_path = log_path
        self.clock = clock
        self._lock = threading.Lock()

    def log(
        self,
        command: str,
        event: str,
        *,
        data: dict[str, Any] | None = None,
        phase: str | None = None,
        agent: AgentDescriptor | None = None,
        iron_laws: dict[str, bool] | None = None,
    ) -> LogEntry:
        entry = LogEntry(
            timestamp=format_timestamp(self.clock()),
            command=command,
            event=event,
            payload=dict(data or {}),
            phase=phase,
            agent=agent,
            compliance=dict(iron_laws) if iron_laws is not None else None,
        )
        self.append(entry)
        return entry

    def append(self, entry: LogEntry) -> None:
        content = json.dumps(entry.to_dict(), ensure_ascii=False) + "\n"
        content += human_summary(entry) + "\n"
        if entry.event in ("COMPLETE", "AGENT_COMPLETE") and entry.compliance:
            content += compliance_checklist(entry.compliance)
        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as handle:
                handle.write(content)
