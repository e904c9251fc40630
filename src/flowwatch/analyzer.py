from __future__ import annotations

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowwatch.config import AnalyzerThresholds
from flowwatch.models import (
    CHAIN_STAGES,
    AgentRecord,
    HealthStatus,
    Issue,
    IssueType,
    LogEntry,
    WorkflowState,
    parse_timestamp,
    utcnow,
)

PHASE_ORDER: tuple[str, ...] = ("RED", "GREEN", "REFACTOR")
EXPECTED_MILESTONES: dict[str, int] = {"RED": 1, "GREEN": 1, "REFACTOR": 0}
CHAIN_PREREQUISITES: dict[str, tuple[str, ...]] = {
    "build": ("plan", "ideate"),
    "ship": ("build",),
}
EXPECTED_OUTPUTS = frozenset({"ideate", "plan", "build"})
IMPLEMENTATION_MILESTONES = frozenset({"implementation", "code", "code_change"})
FAILURE_TYPES: frozenset[str] = frozenset(
    {
        "explicit_failure",
        "agent_failed",
        "regression",
        "tdd_violation",
        "loop_detected",
        "iron_law_violation",
        "iron_law_repeated",
        "iron_law_ignored",
    }
)

_CHECKLIST_LAW = re.compile(r"^law(\d+)_")


def _ms(seconds: float) -> int:
    return int(round(seconds * 1000))


def _elapsed(now: datetime, since: str) -> float:
    return (now - parse_timestamp(since)).total_seconds()


def _law_key(value: Any) -> int | str:
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int):
        return value
    text = str(value).strip().lstrip("#")
    return int(text) if text.isdigit() else text


def calculate_health(issues: Iterable[Issue]) -> HealthStatus:
    issues = list(issues)
    if not issues:
        return "healthy"
    if any(issue.confidence > 0.9 and issue.type in FAILURE_TYPES for issue in issues):
        return "critical"
    if any(issue.confidence >= 0.7 for issue in issues):
        return "warning"
    return "healthy"


@dataclass(slots=True)
class WorkflowAnalysis:
    state: WorkflowState
    agents: list[AgentRecord]
    issues: list[Issue]
    health: HealthStatus
    phase_start_time: str | None = None
    chain_complete: bool = False
    expected_milestones: int = 0
    actual_milestones: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "health": self.health,
            "state": self.state.to_dict(),
            "agents": [agent.to_dict() for agent in self.agents],
            "issues": [issue.to_dict() for issue in self.issues],
            "phase_start_time": self.phase_start_time,
            "chain_complete": self.chain_complete,
            "expected_milestones": self.expected_milestones,
            "actual_milestones": self.actual_milestones,
        }


@dataclass(slots=True)
class _MilestoneRun:
    signature: str
    first_seen: str
    timestamps: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _FeatureCycle:
    phases: list[str] = field(default_factory=list)
    open: bool = False


class WorkflowTracker:
    """Incremental fold over log entries.

    ``apply`` folds one entry into the derived state and records issues that
    depend only on history. ``evaluate`` adds the time-based detections for a
    given ``now`` and returns a snapshot.
    """

    def __init__(
        self,
        thresholds: AnalyzerThresholds | None = None,
        *,
        initial: WorkflowState | None = None,
    ) -> None:
        self.thresholds = thresholds or AnalyzerThresholds()
        self.state = WorkflowState.from_dict(initial.to_dict()) if initial else WorkflowState()
        self.agents: dict[str, AgentRecord] = {}
        self.entry_count = 0
        self._last_entry: LogEntry | None = None
        self._phase_start_time: str | None = None
        self._last_phase_milestone: str | None = None
        self._phase_complete = False
        self._command_complete = False
        self._completed_phases: list[str] = []
        self._phase_milestones = 0
        self._total_milestones = len(self.state.milestone_timestamps)
        self._runs: dict[str, _MilestoneRun] = {}
        self._cycles: dict[str, _FeatureCycle] = {}
        self._chain_checked: set[str] = set()
        self._in_build = False
        self._build_red_seen = False
        self._tdd_reported = False
        self._last_completed_phase: str | None = None
        self._law_counts: dict[int | str, int] = {}
        self._law_messages: dict[int | str, str] = {}
        self._history: list[Issue] = []

    # Folding

    def apply(self, entry: LogEntry) -> None:
        self.entry_count += 1
        self._last_entry = entry
        self.state.last_activity_time = entry.timestamp
        if self.state.current_command is None and entry.command:
            self.state.current_command = entry.command

        handler = {
            "START": self._on_start,
            "COMPLETE": self._on_complete,
            "FAILED": self._on_failed,
            "PHASE_START": self._on_phase_start,
            "PHASE_COMPLETE": self._on_phase_complete,
            "MILESTONE": self._on_milestone,
            "AGENT_SPAWN": self._on_agent_spawn,
            "AGENT_COMPLETE": self._on_agent_complete,
            "IRON_LAW_CHECK": self._on_iron_law_check,
        }.get(entry.event)
        if handler is not None:
            handler(entry)

    def _record(self, type_: IssueType, message: str, confidence: float, **context: Any) -> None:
        self._history.append(Issue(type=type_, message=message, confidence=confidence, context=context))

    def _agent_id(self, entry: LogEntry) -> str | None:
        if entry.agent is not None:
            return entry.agent.id
        raw = entry.payload.get("agent_id")
        return str(raw) if raw else None

    def _agent_type(self, entry: LogEntry) -> str:
        if entry.agent is not None:
            return entry.agent.type
        return str(entry.payload.get("agent_type") or "unknown")

    def _on_start(self, entry: LogEntry) -> None:
        if entry.agent is not None:
            record = self.agents.get(entry.agent.id)
            if record is None:
                record = AgentRecord(
                    agent_id=entry.agent.id,
                    agent_type=entry.agent.type,
                    parent_command=entry.agent.parent or entry.command or None,
                    spawned_at=entry.timestamp,
                )
                self.agents[record.agent_id] = record
            if not record.started:
                record.started = True
                record.started_at = entry.timestamp
            return

        command = entry.command
        self.state.current_command = command
        self._command_complete = False
        self._phase_complete = False
        if command in self.state.chain_progress and self.state.chain_progress[command] == "pending":
            self.state.chain_progress[command] = "in_progress"

        if command in CHAIN_PREREQUISITES and command not in self._chain_checked:
            self._chain_checked.add(command)
            prerequisites = CHAIN_PREREQUISITES[command]
            if not any(self.state.chain_progress.get(stage) == "complete" for stage in prerequisites):
                self._record(
                    "chain_broken",
                    f"Command {command} started without completing prerequisite: "
                    f"{' or '.join(prerequisites)}",
                    0.6,
                    command=command,
                    expected_prerequisites=list(prerequisites),
                )

        self._in_build = command == "build"
        if self._in_build:
            self._build_red_seen = False
            self._tdd_reported = False

    def _on_complete(self, entry: LogEntry) -> None:
        command = entry.command
        self._command_complete = True
        if command in self.state.chain_progress:
            self.state.chain_progress[command] = "complete"
        if command in EXPECTED_OUTPUTS:
            outputs = entry.payload.get("outputs")
            if not (isinstance(outputs, list) and outputs):
                self._record(
                    "incomplete_outputs",
                    f"Command {command} completed without expected outputs at {entry.timestamp}",
                    0.75,
                    command=command,
                )
        self._check_checklist(entry)

    def _on_failed(self, entry: LogEntry) -> None:
        error = entry.payload.get("error") or "Unknown error"
        if entry.agent is not None:
            self._record(
                "agent_failed",
                f"Agent {entry.agent.type} ({entry.agent.id}) failed: {error}",
                0.9,
                agent_id=entry.agent.id,
                agent_type=entry.agent.type,
                error=str(error),
            )
        else:
            self._record(
                "explicit_failure",
                f"Command {entry.command} failed at {entry.timestamp}: {error}",
                0.95,
                command=entry.command,
                error=str(error),
            )
        if self._last_completed_phase is not None:
            self._record(
                "regression",
                f"Workflow failed at {entry.timestamp} after {self._last_completed_phase} "
                "phase completed successfully",
                0.9,
                completed_phase=self._last_completed_phase,
                error=str(error),
            )

    def _on_phase_start(self, entry: LogEntry) -> None:
        phase = entry.phase
        if not phase:
            return
        self.state.current_phase = phase
        self._phase_start_time = entry.timestamp
        self._last_phase_milestone = None
        self._phase_complete = False
        self._phase_milestones = 0
        self._track_phase_order(entry, phase)

        if self._in_build:
            if phase == "RED":
                self._build_red_seen = True
            elif phase == "GREEN" and not self._build_red_seen:
                self._report_tdd(entry, "green_before_red")

    def _track_phase_order(self, entry: LogEntry, phase: str) -> None:
        if phase not in PHASE_ORDER:
            return
        feature = str(entry.payload.get("feature") or entry.command or "default")
        cycle = self._cycles.setdefault(feature, _FeatureCycle())
        if phase == "RED":
            cycle.phases = ["RED"]
            cycle.open = True
            return
        if phase == "GREEN" and (not cycle.open or "RED" not in cycle.phases):
            self._record(
                "out_of_order",
                f"Phase GREEN started at {entry.timestamp} without a preceding RED for {feature}",
                0.9,
                feature=feature,
                started="GREEN",
                missing="RED",
            )
        elif phase == "REFACTOR" and "GREEN" not in cycle.phases:
            self._record(
                "out_of_order",
                f"Phase REFACTOR started at {entry.timestamp} without a preceding GREEN for {feature}",
                0.85,
                feature=feature,
                started="REFACTOR",
                missing="GREEN",
            )
        cycle.phases.append(phase)
        if phase == "REFACTOR":
            cycle.open = False

    def _report_tdd(self, entry: LogEntry, violation: str) -> None:
        if self._tdd_reported:
            return
        self._tdd_reported = True
        self._record(
            "tdd_violation",
            f"Implementation started at {entry.timestamp} before any RED phase "
            "(write tests before implementation)",
            0.95,
            violation=violation,
        )

    def _on_phase_complete(self, entry: LogEntry) -> None:
        self._phase_complete = True
        phase = entry.phase or self.state.current_phase
        if not phase:
            return
        if phase not in self._completed_phases:
            self._completed_phases.append(phase)
        self._last_completed_phase = phase
        expected = EXPECTED_MILESTONES.get(phase, 0)
        if expected > 0 and self._phase_milestones < expected:
            self._record(
                "missing_milestones",
                f"Phase {phase} completed at {entry.timestamp} with {self._phase_milestones} "
                f"milestones, expected at least {expected}",
                0.8,
                phase=phase,
                actual=self._phase_milestones,
                expected=expected,
            )

    def _on_milestone(self, entry: LogEntry) -> None:
        self.state.milestone_timestamps.append(entry.timestamp)
        self._phase_milestones += 1
        self._total_milestones += 1
        self._last_phase_milestone = entry.timestamp

        signature = json.dumps(entry.payload, sort_keys=True, default=str)
        run = self._runs.get(entry.command)
        if run is None or run.signature != signature:
            self._runs[entry.command] = _MilestoneRun(
                signature=signature, first_seen=entry.timestamp, timestamps=[entry.timestamp]
            )
        else:
            run.timestamps.append(entry.timestamp)
            newest = parse_timestamp(entry.timestamp)
            window = self.thresholds.loop_window_seconds
            run.timestamps = [
                ts for ts in run.timestamps if (newest - parse_timestamp(ts)).total_seconds() <= window
            ]

        kind = entry.payload.get("type") or entry.payload.get("kind")
        if self._in_build and not self._build_red_seen and kind in IMPLEMENTATION_MILESTONES:
            self._report_tdd(entry, "implementation_before_red")

    def _on_agent_spawn(self, entry: LogEntry) -> None:
        agent_id = self._agent_id(entry)
        if not agent_id or agent_id in self.agents:
            return
        parent = entry.agent.parent if entry.agent is not None else None
        self.agents[agent_id] = AgentRecord(
            agent_id=agent_id,
            agent_type=self._agent_type(entry),
            parent_command=parent or entry.command or None,
            spawned_at=entry.timestamp,
        )

    def _on_agent_complete(self, entry: LogEntry) -> None:
        agent_id = self._agent_id(entry)
        record = self.agents.get(agent_id) if agent_id else None
        if record is not None:
            record.completed = True
        if entry.payload.get("status") == "failed":
            agent_type = record.agent_type if record is not None else self._agent_type(entry)
            error = entry.payload.get("error") or "Unknown error"
            self._record(
                "agent_failed",
                f"Agent {agent_type} ({agent_id or 'unknown'}) failed: {error}",
                0.9,
                agent_id=agent_id or "unknown",
                agent_type=agent_type,
                error=str(error),
            )
        self._check_checklist(entry)

    def _on_iron_law_check(self, entry: LogEntry) -> None:
        violations = entry.payload.get("violations")
        if not isinstance(violations, list):
            return
        for violation in violations:
            if not isinstance(violation, dict) or violation.get("law") is None:
                continue
            law = _law_key(violation["law"])
            self._law_counts[law] = self._law_counts.get(law, 0) + 1
            self._law_messages[law] = str(violation.get("message") or "")

    def _check_checklist(self, entry: LogEntry) -> None:
        if not entry.compliance:
            return
        for key, passed in entry.compliance.items():
            match = _CHECKLIST_LAW.match(key)
            if match is None or passed:
                continue
            law = int(match.group(1))
            if law not in self._law_counts:
                continue
            self._record(
                "iron_law_ignored",
                f"IRON LAW #{law} still failing when {entry.command} completed at {entry.timestamp}",
                0.95,
                law=law,
                message=self._law_messages.get(law, ""),
                count=self._law_counts[law],
            )

    # Evaluation

    def evaluate(self, now: datetime | None = None) -> WorkflowAnalysis:
        now = now or utcnow()
        issues: list[Issue] = []
        self._detect_loops(issues)
        self._detect_phase_stuck(now, issues)
        issues.extend(
            Issue(type=item.type, message=item.message, confidence=item.confidence, context=dict(item.context))
            for item in self._history
        )
        self._detect_iron_laws(issues)
        self._detect_silence(now, issues)
        self._detect_declining_velocity(issues)
        self._detect_agent_silence(now, issues)
        self._detect_abrupt_stop(now, issues)
        self._detect_partial_completion(now, issues)
        self._detect_abandoned_agents(now, issues)

        phase = self.state.current_phase
        last = self._last_entry
        return WorkflowAnalysis(
            state=WorkflowState.from_dict(self.state.to_dict()),
            agents=[AgentRecord(**agent.to_dict()) for agent in self.agents.values()],
            issues=issues,
            health=calculate_health(issues),
            phase_start_time=self._phase_start_time,
            chain_complete=bool(
                last is not None and last.command == CHAIN_STAGES[-1] and last.event == "COMPLETE"
            ),
            expected_milestones=EXPECTED_MILESTONES.get(phase, 0) if phase else 0,
            actual_milestones=self._phase_milestones,
        )

    def _loop_escalation_count(self) -> int | None:
        t = self.thresholds
        count = t.loop_min_repeats
        while True:
            confidence = t.loop_base_confidence + (count - t.loop_min_repeats) * t.loop_confidence_step
            if confidence > 0.9:
                return count
            if confidence >= 0.98 or t.loop_confidence_step <= 0:
                return None
            count += 1

    def _detect_loops(self, issues: list[Issue]) -> None:
        t = self.thresholds
        escalation = self._loop_escalation_count()
        for command, run in self._runs.items():
            repeats = len(run.timestamps)
            if repeats < t.loop_min_repeats:
                continue
            confidence = min(
                0.98, t.loop_base_confidence + (repeats - t.loop_min_repeats) * t.loop_confidence_step
            )
            tier = escalation if escalation is not None and repeats >= escalation else t.loop_min_repeats
            issues.append(
                Issue(
                    type="loop_detected",
                    message=(
                        f"Same milestone repeated at least {tier} times consecutively in "
                        f"{command or 'workflow'} since {run.first_seen}"
                    ),
                    confidence=round(confidence, 4),
                    context={"command": command, "repeat_count": repeats},
                )
            )

    def _stall_reference(self) -> str | None:
        if self._phase_start_time is None:
            return None
        if self._last_phase_milestone is None:
            return self._phase_start_time
        return max(
            self._phase_start_time,
            self._last_phase_milestone,
            key=lambda ts: parse_timestamp(ts),
        )

    def _detect_phase_stuck(self, now: datetime, issues: list[Issue]) -> None:
        reference = self._stall_reference()
        if reference is None or self._phase_complete:
            return
        threshold = self.thresholds.stuck_threshold_seconds(self.state.current_command)
        elapsed = _elapsed(now, reference)
        if elapsed <= threshold:
            return
        issues.append(
            Issue(
                type="phase_stuck",
                message=(
                    f"Phase {self.state.current_phase} of {self.state.current_command} "
                    f"has made no progress since {reference}"
                ),
                confidence=0.85,
                context={
                    "command": self.state.current_command,
                    "phase": self.state.current_phase,
                    "elapsed_ms": _ms(elapsed),
                    "threshold_ms": _ms(threshold),
                },
            )
        )

    def _detect_iron_laws(self, issues: list[Issue]) -> None:
        for law, count in self._law_counts.items():
            message = self._law_messages.get(law, "")
            if count >= 2:
                issues.append(
                    Issue(
                        type="iron_law_repeated",
                        message=f"IRON LAW #{law} violated {count} times: {message}",
                        confidence=0.95,
                        context={"law": law, "message": message, "count": count},
                    )
                )
            else:
                issues.append(
                    Issue(
                        type="iron_law_violation",
                        message=f"IRON LAW #{law} violated: {message}",
                        confidence=0.95,
                        context={"law": law, "message": message, "count": count},
                    )
                )

    def _detect_silence(self, now: datetime, issues: list[Issue]) -> None:
        last = self.state.last_activity_time
        if not last or self._command_complete:
            return
        if not self.state.current_command and not self.state.current_phase:
            return
        threshold = self.thresholds.silence_seconds
        elapsed = _elapsed(now, last)
        if elapsed <= threshold:
            return
        confidence = min(0.9, 0.7 + (elapsed / threshold - 1) * 0.1)
        active = self.state.current_command or self.state.current_phase or "workflow"
        issues.append(
            Issue(
                type="silence",
                message=f"No activity since {last} while {active} is active",
                confidence=round(confidence, 4),
                context={
                    "command": self.state.current_command,
                    "phase": self.state.current_phase,
                    "silence_duration_ms": _ms(elapsed),
                },
            )
        )

    def _detect_declining_velocity(self, issues: list[Issue]) -> None:
        stamps = [parse_timestamp(ts) for ts in self.state.milestone_timestamps]
        if len(stamps) < 4:
            return
        gaps = [(stamps[i] - stamps[i - 1]).total_seconds() for i in range(1, len(stamps))]
        increasing = sum(1 for i in range(1, len(gaps)) if gaps[i] > gaps[i - 1])
        if increasing < 1:
            return
        issues.append(
            Issue(
                type="declining_velocity",
                message="Time between milestones is increasing, workflow may be slowing down",
                confidence=round(min(0.6, 0.4 + increasing * 0.1), 4),
                context={"gaps_ms": [_ms(gap) for gap in gaps], "increasing_count": increasing},
            )
        )

    def _detect_agent_silence(self, now: datetime, issues: list[Issue]) -> None:
        for agent in self.agents.values():
            if agent.started or agent.completed:
                continue
            elapsed = _elapsed(now, agent.spawned_at)
            if elapsed <= self.thresholds.agent_silence_seconds:
                continue
            issues.append(
                Issue(
                    type="agent_silence",
                    message=(
                        f"Agent {agent.agent_type} ({agent.agent_id}) spawned but hasn't "
                        "started producing entries"
                    ),
                    confidence=0.8,
                    context={
                        "agent_id": agent.agent_id,
                        "agent_type": agent.agent_type,
                        "parent_command": agent.parent_command,
                        "silence_duration_ms": _ms(elapsed),
                    },
                )
            )

    def _detect_abrupt_stop(self, now: datetime, issues: list[Issue]) -> None:
        last = self.state.last_activity_time
        if not last or self._command_complete or self._total_milestones == 0:
            return
        elapsed = _elapsed(now, last)
        if elapsed <= self.thresholds.abrupt_stop_seconds:
            return
        issues.append(
            Issue(
                type="abrupt_stop",
                message=f"Workflow was making progress but stopped abruptly after {last}",
                confidence=0.85,
                context={
                    "last_activity": last,
                    "milestones_before_stop": self._total_milestones,
                    "elapsed_ms": _ms(elapsed),
                },
            )
        )

    def _detect_partial_completion(self, now: datetime, issues: list[Issue]) -> None:
        if self._command_complete or not self._completed_phases or self._phase_start_time is None:
            return
        if self._phase_complete:
            return
        threshold = self.thresholds.stuck_threshold_seconds(self.state.current_command)
        elapsed = _elapsed(now, self._phase_start_time)
        if elapsed <= threshold:
            return
        issues.append(
            Issue(
                type="partial_completion",
                message=(
                    f"Workflow partially complete ({', '.join(self._completed_phases)} done) "
                    f"but {self.state.current_phase} phase stalled"
                ),
                confidence=0.8,
                context={
                    "completed_phases": list(self._completed_phases),
                    "stuck_phase": self.state.current_phase,
                    "elapsed_ms": _ms(elapsed),
                },
            )
        )

    def _detect_abandoned_agents(self, now: datetime, issues: list[Issue]) -> None:
        for agent in self.agents.values():
            if not agent.started or agent.completed:
                continue
            elapsed = _elapsed(now, agent.started_at or agent.spawned_at)
            if elapsed <= self.thresholds.agent_abandoned_seconds:
                continue
            issues.append(
                Issue(
                    type="abandoned_agent",
                    message=f"Agent {agent.agent_type} ({agent.agent_id}) started but never completed",
                    confidence=0.8,
                    context={
                        "agent_id": agent.agent_id,
                        "agent_type": agent.agent_type,
                        "parent_command": agent.parent_command,
                        "running_time_ms": _ms(elapsed),
                    },
                )
            )


class WorkflowAnalyzer:
    """Pure fold from the ordered entry history to state, agents and issues."""

    def __init__(self, thresholds: AnalyzerThresholds | None = None) -> None:
        self.thresholds = thresholds or AnalyzerThresholds()

    def tracker(self, initial: WorkflowState | None = None) -> WorkflowTracker:
        return WorkflowTracker(self.thresholds, initial=initial)

    def analyze(self, entries: Iterable[LogEntry], now: datetime | None = None) -> WorkflowAnalysis:
        tracker = self.tracker()
        for entry in entries:
            tracker.apply(entry)
        return tracker.evaluate(now)
