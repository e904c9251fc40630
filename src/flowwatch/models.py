from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal, TypedDict

IssueType = Literal[
    "loop_detected",
    "phase_stuck",
    "regression",
    "out_of_order",
    "chain_broken",
    "tdd_violation",
    "explicit_failure",
    "agent_failed",
    "silence",
    "missing_milestones",
    "declining_velocity",
    "incomplete_outputs",
    "agent_silence",
    "abrupt_stop",
    "partial_completion",
    "abandoned_agent",
    "iron_law_violation",
    "iron_law_repeated",
    "iron_law_ignored",
]
ResponseType = Literal["auto_remediate", "notify_suggest", "notify_only"]
Priority = Literal["critical", "high", "medium", "low"]
TaskStatus = Literal["pending", "executing", "completed", "failed"]
ChainStatus = Literal["pending", "in_progress", "complete"]
HealthStatus = Literal["healthy", "warning", "critical"]

CHAIN_STAGES: tuple[str, ...] = ("ideate", "plan", "build", "ship")
PRIORITY_ORDER: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True, frozen=True)
class AgentDescriptor:
    type: str
    id: str
    parent: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "id": self.id}
        if self.parent is not None:
            payload["parent"] = self.parent
        return payload


@dataclass(slots=True, frozen=True)
class LogEntry:
    """One structured line of the workflow log."""

    timestamp: str
    command: str
    event: str
    payload: dict[str, Any] = field(default_factory=dict)
    phase: str | None = None
    agent: AgentDescriptor | None = None
    compliance: dict[str, bool] | None = None

    @property
    def when(self) -> datetime:
        return parse_timestamp(self.timestamp)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        timestamp = data.get("ts")
        command = data.get("cmd")
        event = data.get("event")
        if not isinstance(timestamp, str) or not isinstance(event, str):
            raise ValueError("log entry requires 'ts' and 'event' strings")
        # Fail early on timestamps the analyzer cannot compare.
        parse_timestamp(timestamp)
        payload = data.get("data")
        raw_agent = data.get("agent")
        agent = None
        if isinstance(raw_agent, dict) and raw_agent.get("id"):
            agent = AgentDescriptor(
                type=str(raw_agent.get("type") or "unknown"),
                id=str(raw_agent["id"]),
                parent=str(raw_agent["parent"]) if raw_agent.get("parent") else None,
            )
        raw_laws = data.get("ironLaws")
        compliance = None
        if isinstance(raw_laws, dict):
            compliance = {str(key): bool(value) for key, value in raw_laws.items()}
        phase = data.get("phase")
        return cls(
            timestamp=timestamp,
            command=str(command or ""),
            event=event,
            payload=payload if isinstance(payload, dict) else {},
            phase=str(phase) if phase else None,
            agent=agent,
            compliance=compliance,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ts": self.timestamp,
            "cmd": self.command,
            "event": self.event,
            "data": dict(self.payload),
        }
        if self.phase:
            payload["phase"] = self.phase
        if self.agent is not None:
            payload["agent"] = self.agent.to_dict()
        if self.compliance is not None:
            payload["ironLaws"] = dict(self.compliance)
        return payload


def empty_chain() -> dict[str, ChainStatus]:
    return {stage: "pending" for stage in CHAIN_STAGES}


@dataclass(slots=True)
class WorkflowState:
    current_command: str | None = None
    current_phase: str | None = None
    chain_progress: dict[str, ChainStatus] = field(default_factory=empty_chain)
    milestone_timestamps: list[str] = field(default_factory=list)
    last_activity_time: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_command": self.current_command,
            "current_phase": self.current_phase,
            "chain_progress": dict(self.chain_progress),
            "milestone_timestamps": list(self.milestone_timestamps),
            "last_activity_time": self.last_activity_time,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowState:
        chain = empty_chain()
        raw_chain = data.get("chain_progress")
        if not isinstance(raw_chain, dict):
            raise ValueError("workflow state is missing chain_progress")
        for stage in CHAIN_STAGES:
            status = raw_chain.get(stage, "pending")
            if status not in ("pending", "in_progress", "complete"):
                raise ValueError(f"invalid chain status for {stage}: {status!r}")
            chain[stage] = status
        milestones = data.get("milestone_timestamps") or []
        if not isinstance(milestones, list):
            raise ValueError("milestone_timestamps must be a list")
        return cls(
            current_command=data.get("current_command"),
            current_phase=data.get("current_phase"),
            chain_progress=chain,
            milestone_timestamps=[str(item) for item in milestones],
            last_activity_time=data.get("last_activity_time"),
        )


@dataclass(slots=True)
class AgentRecord:
    agent_id: str
    agent_type: str
    parent_command: str | None
    spawned_at: str
    started: bool = False
    completed: bool = False
    started_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "agent_type": self.agent_type,
            "parent_command": self.parent_command,
            "spawned_at": self.spawned_at,
            "started": self.started,
            "completed": self.completed,
            "started_at": self.started_at,
        }


class LoopContext(TypedDict):
    command: str
    repeat_count: int


class PhaseContext(TypedDict, total=False):
    command: str | None
    phase: str | None
    elapsed_ms: int
    threshold_ms: int


class AgentContext(TypedDict, total=False):
    agent_id: str
    agent_type: str
    parent_command: str | None
    silence_duration_ms: int
    running_time_ms: int
    error: str


class IronLawContext(TypedDict, total=False):
    law: int | str
    message: str
    count: int


class OrderContext(TypedDict, total=False):
    feature: str
    started: str
    missing: str
    violation: str


IssueContext = (
    LoopContext | PhaseContext | AgentContext | IronLawContext | OrderContext | dict[str, Any]
)


@dataclass(slots=True)
class Issue:
    type: IssueType
    message: str
    confidence: float
    context: IssueContext = field(default_factory=dict)

    @property
    def signature(self) -> str:
        return f"{self.type}:{self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "confidence": self.confidence,
            "context": dict(self.context),
        }


@dataclass(slots=True)
class Notification:
    title: str
    message: str
    sound: str | None = None


@dataclass(slots=True)
class QueueTask:
    priority: Priority
    auto_execute: bool
    prompt: str
    agent_type: str


@dataclass(slots=True)
class Intervention:
    response_type: ResponseType
    issue: Issue
    notification: Notification
    queue_task: QueueTask | None = None


@dataclass(slots=True)
class Task:
    id: str
    created_at: str
    priority: Priority
    source: str
    anomaly_type: str
    prompt: str
    suggested_agent: str
    context: dict[str, Any] = field(default_factory=dict)
    report_path: str | None = None
    status: TaskStatus = "pending"
    attempts: int = 0
    completed_at: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "created_at": self.created_at,
            "priority": self.priority,
            "source": self.source,
            "anomaly_type": self.anomaly_type,
            "prompt": self.prompt,
            "suggested_agent": self.suggested_agent,
            "context": dict(self.context),
            "status": self.status,
            "attempts": self.attempts,
        }
        if self.report_path is not None:
            payload["report_path"] = self.report_path
        if self.completed_at is not None:
            payload["completed_at"] = self.completed_at
        if self.error is not None:
            payload["error"] = self.error
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        priority = data.get("priority", "medium")
        if priority not in PRIORITY_ORDER:
            priority = "medium"
        context = data.get("context")
        return cls(
            id=str(data["id"]),
            created_at=str(data.get("created_at") or ""),
            priority=priority,
            source=str(data.get("source") or "unknown"),
            anomaly_type=str(data.get("anomaly_type") or "unusual_pattern"),
            prompt=str(data.get("prompt") or ""),
            suggested_agent=str(data.get("suggested_agent") or "debugger"),
            context=context if isinstance(context, dict) else {},
            report_path=data.get("report_path"),
            status=data.get("status", "pending"),
            attempts=int(data.get("attempts") or 0),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
        )


@dataclass(slots=True)
class ComplianceViolation:
    rule_id: str
    law: int
    message: str
    detected_at: str
    corrective_action: str | None = None
    resolved_at: str | None = None

    @property
    def signature(self) -> str:
        return f"{self.rule_id}:{self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "law": self.law,
            "message": self.message,
            "detected_at": self.detected_at,
            "corrective_action": self.corrective_action,
            "resolved_at": self.resolved_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComplianceViolation:
        return cls(
            rule_id=str(data["rule_id"]),
            law=int(data.get("law") or 0),
            message=str(data.get("message") or ""),
            detected_at=str(data.get("detected_at") or ""),
            corrective_action=data.get("corrective_action"),
            resolved_at=data.get("resolved_at"),
        )
