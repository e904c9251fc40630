from __future__ import annotations

import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from flowwatch.analyzer import WorkflowAnalysis, WorkflowAnalyzer, WorkflowTracker
from flowwatch.compliance import ComplianceMonitor, ProjectInspector, load_policies
from flowwatch.config import FlowwatchConfig, SupervisorMode
from flowwatch.intervention import InterventionGenerator
from flowwatch.logs import LogReader
from flowwatch.models import ComplianceViolation, Intervention, LogEntry, Notification, utcnow
from flowwatch.observability import get_logger
from flowwatch.scheduler import ScheduledJob, Scheduler, ThreadScheduler
from flowwatch.state import FlowwatchStateError, JsonDocumentStore, QueueManager, WorkflowStateRepository

logger = get_logger(__name__)

SupervisorStatus = Literal["stopped", "running"]

ANALYSIS_SOURCE = "log-monitor"
COMPLIANCE_SOURCE = "compliance-monitor"
COMPLIANCE_AGENT = "general-purpose"

ANOMALY_FOR_ISSUE: dict[str, str] = {
    "loop_detected": "agent_loop",
    "phase_stuck": "agent_stuck",
    "abrupt_stop": "agent_stuck",
    "partial_completion": "agent_stuck",
    "explicit_failure": "agent_error",
    "agent_failed": "agent_error",
    "regression": "agent_error",
    "silence": "recommended_investigation",
    "declining_velocity": "recommended_investigation",
    "agent_silence": "recommended_investigation",
    "abandoned_agent": "recommended_investigation",
}
DEFAULT_ANOMALY = "unusual_pattern"

AnalysisCallback = Callable[[WorkflowAnalysis], None]
InterventionCallback = Callable[[Intervention], None]
NotificationCallback = Callable[[str, str, str | None], None]
ViolationCallback = Callable[[list[ComplianceViolation]], None]


class Supervisor:
    """Owns the tail loop and the compliance timer and routes their findings."""

    def __init__(
        self,
        *,
        reader: LogReader,
        queue: QueueManager,
        state_repository: WorkflowStateRepository,
        analyzer: WorkflowAnalyzer | None = None,
        generator: InterventionGenerator | None = None,
        compliance: ComplianceMonitor | None = None,
        scheduler: Scheduler | None = None,
        mode: SupervisorMode = "always",
        check_interval_seconds: float = 5.0,
        analysis_interval_seconds: float = 0.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.reader = reader
        self.queue = queue
        self.state_repository = state_repository
        self.analyzer = analyzer or WorkflowAnalyzer()
        self.generator = generator or InterventionGenerator()
        self.compliance = compliance
        self.scheduler = scheduler or ThreadScheduler()
        self.mode = mode
        self.check_interval_seconds = check_interval_seconds
        self.analysis_interval_seconds = analysis_interval_seconds
        self.clock = clock
        self.last_analysis: WorkflowAnalysis | None = None

        self._status: SupervisorStatus = "stopped"
        self._tracker: WorkflowTracker = self.analyzer.tracker()
        self._jobs: list[ScheduledJob] = []
        self._seen_issues: set[str] = set()
        self._seen_violations: set[str] = set()
        self._entry_lock = threading.RLock()
        self._compliance_lock = threading.Lock()
        self._analysis_callbacks: list[AnalysisCallback] = []
        self._intervention_callbacks: list[InterventionCallback] = []
        self._notification_callbacks: list[NotificationCallback] = []
        self._violation_callbacks: list[ViolationCallback] = []

    @classmethod
    def from_config(
        cls,
        config: FlowwatchConfig,
        project_root: Path,
        *,
        scheduler: Scheduler | None = None,
        inspector: ProjectInspector | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> Supervisor:
        home = config.home_dir(project_root)
        scheduler = scheduler or ThreadScheduler()
        lock_timeout = config.queue.lock_timeout_seconds
        queue = QueueManager.in_directory(
            home,
            queue_file=config.paths.queue_file,
            expired_file=config.paths.expired_file,
            failed_file=config.paths.failed_file,
            max_size=config.queue.max_size,
            lock_timeout_seconds=lock_timeout,
            clock=clock,
        )
        compliance = ComplianceMonitor(
            project_root,
            policies=load_policies(
                team_file=home / config.paths.team_policy_file, local=config.policy
            ),
            inspector=inspector,
            store=JsonDocumentStore(
                home / config.paths.compliance_file, lock_timeout_seconds=lock_timeout
            ),
            clock=clock,
        )
        return cls(
            reader=LogReader(
                home / config.paths.log_file,
                scheduler=scheduler,
                poll_interval_seconds=config.supervisor.poll_interval_seconds,
            ),
            queue=queue,
            state_repository=WorkflowStateRepository.at(
                home / config.paths.state_file, lock_timeout_seconds=lock_timeout
            ),
            analyzer=WorkflowAnalyzer(config.analyzer),
            compliance=compliance,
            scheduler=scheduler,
            mode=config.supervisor.mode,
            check_interval_seconds=config.supervisor.check_interval_seconds,
            analysis_interval_seconds=config.supervisor.analysis_interval_seconds,
            clock=clock,
        )

    @property
    def status(self) -> SupervisorStatus:
        return self._status

    # Observers

    def on_analysis(self, callback: AnalysisCallback) -> None:
        self._analysis_callbacks.append(callback)

    def on_intervention(self, callback: InterventionCallback) -> None:
        self._intervention_callbacks.append(callback)

    def on_notification(self, callback: NotificationCallback) -> None:
        self._notification_callbacks.append(callback)

    def on_violation(self, callback: ViolationCallback) -> None:
        self._violation_callbacks.append(callback)

    # Lifecycle

    def start(self) -> None:
        with self._entry_lock:
            if self._status == "running":
                return
            self._tracker = self._restore_tracker()
            analysis = self._tracker.evaluate(self.clock())
            self.last_analysis = analysis
            # Findings that predate this session are not re-announced.
            self._seen_issues = {issue.signature for issue in analysis.issues}
            self._status = "running"

        self.reader.start_tailing(self.handle_entry)
        if self.mode == "always" and self.compliance is not None:
            self._jobs.append(
                self.scheduler.every(
                    self.check_interval_seconds,
                    self.check_compliance,
                    run_immediately=True,
                    name="compliance",
                )
            )
        if self.analysis_interval_seconds > 0:
            self._jobs.append(
                self.scheduler.every(
                    self.analysis_interval_seconds, self.reanalyze, name="reanalysis"
                )
            )
        logger.info("Supervisor started (mode=%s)", self.mode)

    def stop(self) -> None:
        if self._status == "stopped":
            return
        jobs, self._jobs = self._jobs, []
        for job in jobs:
            job.cancel()
        self.reader.stop_tailing()
        with self._entry_lock:
            self._status = "stopped"
            self._persist_state()
        logger.info("Supervisor stopped")

    def _restore_tracker(self) -> WorkflowTracker:
        state = self.state_repository.load()
        if state is not None:
            return self.analyzer.tracker(initial=state)
        tracker = self.analyzer.tracker()
        entries = self.reader.replay()
        for entry in entries:
            tracker.apply(entry)
        logger.info("Rebuilt workflow state from %d log entries", len(entries))
        return tracker

    # Log path

    def handle_entry(self, entry: LogEntry) -> WorkflowAnalysis:
        with self._entry_lock:
            self._tracker.apply(entry)
            analysis = self._tracker.evaluate(self.clock())
            self._dispatch_analysis(analysis)
            self._persist_state()
            return analysis

    def reanalyze(self) -> WorkflowAnalysis:
        """Re-run time-based detections without waiting for a new entry."""
        with self._entry_lock:
            analysis = self._tracker.evaluate(self.clock())
            self._dispatch_analysis(analysis)
            return analysis

    def _dispatch_analysis(self, analysis: WorkflowAnalysis) -> None:
        self.last_analysis = analysis
        for callback in self._analysis_callbacks:
            self._invoke("analysis", callback, analysis)
        current = {issue.signature for issue in analysis.issues}
        # An issue that cleared may be announced again if it comes back.
        self._seen_issues &= current
        for issue in analysis.issues:
            if issue.signature in self._seen_issues:
                continue
            self._seen_issues.add(issue.signature)
            self._dispatch_intervention(self.generator.generate(issue))

    def _dispatch_intervention(self, intervention: Intervention) -> None:
        for callback in self._intervention_callbacks:
            self._invoke("intervention", callback, intervention)
        self._notify(intervention.notification)
        task = intervention.queue_task
        if task is None:
            return
        issue = intervention.issue
        self._queue(
            priority=task.priority,
            source=ANALYSIS_SOURCE,
            anomaly_type=ANOMALY_FOR_ISSUE.get(issue.type, DEFAULT_ANOMALY),
            prompt=task.prompt,
            suggested_agent=task.agent_type,
            context={
                "issue_type": issue.type,
                "analysis": issue.message,
                "confidence": issue.confidence,
                "auto_execute": task.auto_execute,
            },
        )

    def _persist_state(self) -> None:
        try:
            self.state_repository.save(self._tracker.state)
        except FlowwatchStateError as exc:
            logger.warning("Cannot persist workflow state: %s", exc)

    # Compliance path

    def check_compliance(self) -> list[ComplianceViolation]:
        if self.compliance is None:
            return []
        with self._compliance_lock:
            violations = self.compliance.check()
            for callback in self._violation_callbacks:
                self._invoke("violation", callback, list(violations))
            for resolved in self.compliance.last_resolved:
                self._seen_violations.discard(resolved.signature)
            for violation in violations:
                if violation.signature in self._seen_violations:
                    continue
                self._seen_violations.add(violation.signature)
                self._dispatch_violation(self.compliance, violation)
            return violations

    def _dispatch_violation(self, monitor: ComplianceMonitor, violation: ComplianceViolation) -> None:
        issue = monitor.issue_for(violation)
        self._notify(self.generator.create_notification(issue))
        if not violation.corrective_action:
            return
        self._queue(
            priority="high",
            source=COMPLIANCE_SOURCE,
            anomaly_type=DEFAULT_ANOMALY,
            prompt=(
                f"IRON LAW #{violation.law}: {violation.message}\n\n"
                f"Corrective action: {violation.corrective_action}"
            ),
            suggested_agent=COMPLIANCE_AGENT,
            context=dict(issue.context),
        )

    # Shared plumbing

    def _notify(self, notification: Notification) -> None:
        for callback in self._notification_callbacks:
            self._invoke(
                "notification",
                callback,
                notification.title,
                notification.message,
                notification.sound,
            )

    def _queue(self, **fields: Any) -> None:
        try:
            task = self.queue.add_task(**fields)
        except FlowwatchStateError as exc:
            logger.warning("Cannot queue %s task: %s", fields.get("anomaly_type"), exc)
            return
        logger.info("Queued %s task", task.anomaly_type, extra={"task_id": task.id})

    def _invoke(self, kind: str, callback: Callable[..., None], *args: Any) -> None:
        try:
            callback(*args)
        except Exception:
            logger.warning("%s callback failed", kind.capitalize(), exc_info=True)
