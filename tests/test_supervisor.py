import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from flowwatch.compliance import ComplianceMonitor, StaticInspector
from flowwatch.config import FlowwatchConfig, save_config
from flowwatch.logs import LogReader, WorkflowLogger
from flowwatch.models import AgentDescriptor, WorkflowState
from flowwatch.scheduler import ManualScheduler
from flowwatch.state import MemoryDocumentStore, QueueManager, WorkflowStateRepository
from flowwatch.supervisor import Supervisor

BASE = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class Harness:
    def __init__(
        self,
        tmp_path: Path,
        *,
        branch: str = "feat/login",
        mode: str = "always",
        analysis_interval_seconds: float = 0.0,
    ) -> None:
        self.scheduler = ManualScheduler(start=BASE)
        self.inspector = StaticInspector(branch=branch)
        self.log_path = tmp_path / "workflow.log"
        self.state_path = tmp_path / "workflow-state.json"
        self.queue = QueueManager.in_directory(tmp_path, clock=self.scheduler.now)
        self.logger = WorkflowLogger(self.log_path, clock=self.scheduler.now)
        self.supervisor = Supervisor(
            reader=LogReader(self.log_path, scheduler=self.scheduler),
            queue=self.queue,
            state_repository=WorkflowStateRepository.at(self.state_path),
            compliance=ComplianceMonitor(
                tmp_path,
                inspector=self.inspector,
                store=MemoryDocumentStore(),
                clock=self.scheduler.now,
                user_home=tmp_path / "home",
            ),
            scheduler=self.scheduler,
            mode=mode,  # type: ignore[arg-type]
            check_interval_seconds=5.0,
            analysis_interval_seconds=analysis_interval_seconds,
            clock=self.scheduler.now,
        )
        self.events: list[tuple[str, Any]] = []
        self.notifications: list[tuple[str, str, str | None]] = []
        self.supervisor.on_analysis(lambda analysis: self.events.append(("analysis", analysis)))
        self.supervisor.on_intervention(
            lambda intervention: self.events.append(("intervention", intervention))
        )
        self.supervisor.on_violation(lambda violations: self.events.append(("violations", violations)))
        self.supervisor.on_notification(self._record_notification)

    def _record_notification(self, title: str, message: str, sound: str | None) -> None:
        self.notifications.append((title, message, sound))
        self.events.append(("notification", title))

    def tick(self, seconds: float = 0.05) -> None:
        self.scheduler.advance(seconds)


def test_start_and_stop_are_idempotent(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    supervisor = harness.supervisor

    supervisor.start()
    supervisor.start()

    assert supervisor.status == "running"
    assert sorted(harness.scheduler.active_jobs()) == ["compliance", "log-tail"]

    supervisor.stop()
    supervisor.stop()

    assert supervisor.status == "stopped"
    assert harness.scheduler.active_jobs() == []
    assert harness.state_path.exists()


def test_workflow_only_mode_skips_compliance_timer(tmp_path: Path) -> None:
    harness = Harness(tmp_path, mode="workflow-only", branch="main")

    harness.supervisor.start()
    harness.tick(20)

    assert harness.scheduler.active_jobs() == ["log-tail"]
    assert harness.notifications == []


def test_failure_entry_flows_to_notification_and_queue(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.supervisor.start()

    harness.logger.log("build", "FAILED", data={"error": "tests crashed"})
    harness.tick()

    kinds = [kind for kind, _ in harness.events if kind != "violations"]
    assert kinds == ["analysis", "intervention", "notification"]
    title, message, sound = harness.notifications[0]
    assert title == "flowwatch: Failure"
    assert "tests crashed" in message
    assert sound == "Basso"

    task = harness.queue.get_next_task()
    assert task is not None
    assert task.priority == "high"
    assert task.source == "log-monitor"
    assert task.anomaly_type == "agent_error"
    assert task.suggested_agent == "debugger"
    assert task.context["confidence"] == 0.95
    assert task.prompt.startswith("## Workflow Issue: Failure")

    state = json.loads(harness.state_path.read_text(encoding="utf-8"))
    assert state["current_command"] == "build"


def test_known_issues_are_not_announced_twice(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.supervisor.start()

    harness.logger.log("build", "FAILED", data={"error": "boom"})
    harness.tick()
    harness.logger.log("build", "NOTE", data={"text": "still working"})
    harness.tick()

    assert len(harness.notifications) == 1
    assert harness.queue.get_pending_count() == 1
    assert len([kind for kind, _ in harness.events if kind == "analysis"]) == 2


def test_low_confidence_issue_notifies_without_queueing(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.supervisor.start()

    harness.logger.log("build", "START")
    harness.tick()

    assert [title for title, _, _ in harness.notifications] == ["flowwatch: Chain Broken"]
    assert harness.queue.get_tasks() == []


def test_failing_callbacks_do_not_break_processing(tmp_path: Path) -> None:
    harness = Harness(tmp_path)

    def explode(*_args: Any) -> None:
        raise RuntimeError("observer bug")

    harness.supervisor.on_analysis(explode)
    harness.supervisor.on_notification(explode)
    harness.supervisor.start()

    harness.logger.log("build", "FAILED", data={"error": "boom"})
    harness.tick()

    assert len(harness.notifications) == 1
    assert harness.queue.get_pending_count() == 1


def test_restart_replays_log_without_reannouncing(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.logger.log("plan", "START")
    harness.logger.log("plan", "FAILED", data={"error": "old failure"})

    harness.supervisor.start()
    harness.logger.log("plan", "NOTE")
    harness.tick()

    assert harness.supervisor.last_analysis is not None
    assert harness.supervisor.last_analysis.state.current_command == "plan"
    assert harness.notifications == []


def test_corrupt_state_file_falls_back_to_replay(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.state_path.write_text("{corrupt", encoding="utf-8")
    harness.logger.log("ideate", "START")

    harness.supervisor.start()

    assert harness.supervisor.last_analysis.state.chain_progress["ideate"] == "in_progress"


def test_saved_state_is_restored_instead_of_replaying(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    saved = WorkflowState(current_command="ship")
    saved.chain_progress.update({"ideate": "complete", "plan": "complete", "build": "complete"})
    WorkflowStateRepository.at(harness.state_path).save(saved)
    harness.logger.log("plan", "START")

    harness.supervisor.start()

    state = harness.supervisor.last_analysis.state
    assert state.current_command == "ship"
    assert state.chain_progress["build"] == "complete"


def test_compliance_violations_notify_queue_and_escalate(tmp_path: Path) -> None:
    harness = Harness(tmp_path, branch="main")
    harness.supervisor.start()

    assert harness.notifications[0][0] == "flowwatch: IRON LAW Violation"
    assert "On main branch" in harness.notifications[0][1]
    task = harness.queue.get_next_task()
    assert task.source == "compliance-monitor"
    assert task.priority == "high"
    assert task.anomaly_type == "unusual_pattern"
    assert task.suggested_agent == "general-purpose"
    assert "git checkout -b feat/your-feature-name" in task.prompt

    harness.tick(5)
    assert len(harness.notifications) == 1
    violation_batches = [payload for kind, payload in harness.events if kind == "violations"]
    assert len(violation_batches) == 2

    harness.inspector.branch = "feat/login"
    harness.tick(5)
    harness.inspector.branch = "main"
    harness.tick(5)

    assert len(harness.notifications) == 2
    title, message, _ = harness.notifications[1]
    assert title == "flowwatch: IRON LAW Repeated Violation"
    assert "repeated" in message.lower() or "2 times" in message
    assert harness.queue.get_pending_count() == 2


def test_reanalysis_tick_reports_abandoned_agent(tmp_path: Path) -> None:
    harness = Harness(tmp_path, analysis_interval_seconds=30.0)
    harness.supervisor.start()
    agent = AgentDescriptor(type="test-engineer", id="te-orphan", parent="build")
    harness.logger.log("build", "AGENT_SPAWN", agent=agent)
    harness.logger.log("build", "START", agent=agent)
    harness.tick()

    harness.tick(120)

    abandoned = [message for _, message, _ in harness.notifications if "te-orphan" in message]
    assert abandoned == ["Agent test-engineer (te-orphan) started but never completed"]


def test_supervisor_from_config_wires_paths(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.delenv("FLOWWATCH_HOME", raising=False)
    config = FlowwatchConfig.default()
    config.paths.home = "state"
    config.supervisor.mode = "workflow-only"
    save_config(tmp_path / "flowwatch.toml", config)
    scheduler = ManualScheduler(start=BASE)

    supervisor = Supervisor.from_config(
        config, tmp_path, scheduler=scheduler, inspector=StaticInspector(branch="main"), clock=scheduler.now
    )
    supervisor.start()
    WorkflowLogger(tmp_path / "state" / "workflow.log", clock=scheduler.now).log(
        "build", "FAILED", data={"error": "x"}
    )
    scheduler.advance(0.1)
    supervisor.stop()

    assert (tmp_path / "state" / "workflow-state.json").exists()
    assert (tmp_path / "state" / "queue.json").exists()
    assert supervisor.check_compliance()[0].rule_id == "law4_git_flow"


def test_entries_logged_while_replaying_are_not_lost(tmp_path: Path) -> None:
    harness = Harness(tmp_path)
    harness.logger.log("plan", "START")
    reader = harness.supervisor.reader
    replay = reader.replay

    def replay_then_log() -> list:
        entries = replay()
        harness.logger.log("plan", "FAILED", data={"error": "late failure"})
        return entries

    reader.replay = replay_then_log  # type: ignore[method-assign]
    harness.supervisor.start()
    harness.tick()

    assert harness.queue.get_pending_count() == 1
    assert any("late failure" in message for _, message, _ in harness.notifications)
