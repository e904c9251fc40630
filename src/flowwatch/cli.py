from __future__ import annotations

import json
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from flowwatch.analyzer import WorkflowAnalyzer
from flowwatch.compliance import ComplianceMonitor, load_policies
from flowwatch.config import FlowwatchConfig, load_config, save_config
from flowwatch.detectors import OutputMonitor
from flowwatch.logs import LogReader, WorkflowLogger
from flowwatch.models import AgentDescriptor, Task
from flowwatch.observability import configure_logging
from flowwatch.state import FlowwatchStateError, JsonDocumentStore, QueueManager, TaskNotFoundError
from flowwatch.supervisor import Supervisor


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: FlowwatchConfig
    home: Path

    @property
    def log_path(self) -> Path:
        return self.home / self.config.paths.log_file

    def queue(self) -> QueueManager:
        return QueueManager.in_directory(
            self.home,
            queue_file=self.config.paths.queue_file,
            expired_file=self.config.paths.expired_file,
            failed_file=self.config.paths.failed_file,
            max_size=self.config.queue.max_size,
            lock_timeout_seconds=self.config.queue.lock_timeout_seconds,
        )

    def compliance(self) -> ComplianceMonitor:
        return ComplianceMonitor(
            self.repo_root,
            policies=load_policies(
                team_file=self.home / self.config.paths.team_policy_file,
                local=self.config.policy,
            ),
            store=JsonDocumentStore(
                self.home / self.config.paths.compliance_file,
                lock_timeout_seconds=self.config.queue.lock_timeout_seconds,
            ),
        )


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except (OSError, ValueError, TypeError) as exc:
        raise click.ClickException(f"Cannot load {config_path}: {exc}") from exc
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        home=config.home_dir(repo_root),
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _open_queue(runtime: Runtime) -> QueueManager:
    try:
        return runtime.queue()
    except FlowwatchStateError as exc:
        raise click.ClickException(str(exc)) from exc


def _task_line(task: Task) -> str:
    return f"{task.id}  {task.priority:<8} {task.status:<9} {task.anomaly_type}  {task.suggested_agent}"


def _parse_laws(values: tuple[str, ...]) -> dict[str, bool] | None:
    if not values:
        return None
    laws: dict[str, bool] = {}
    for value in values:
        key, sep, flag = value.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"Expected KEY=true|false, got {value!r}", param_hint="--law")
        laws[key.strip()] = flag.strip().lower() in ("1", "true", "yes", "y")
    return laws


@click.group()
def cli() -> None:
    """flowwatch CLI."""


@cli.command("init")
@click.option("--mode", type=click.Choice(["always", "workflow-only"]), default=None)
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def init_command(mode: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if mode:
        config.supervisor.mode = mode  # type: ignore[assignment]
    save_config(config_path, config)

    home = config.home_dir(repo_root)
    home.mkdir(parents=True, exist_ok=True)
    (home / config.paths.log_file).touch(exist_ok=True)

    click.echo(f"Initialized flowwatch in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State directory: {home}")
    click.echo(f"Mode: {config.supervisor.mode}")


@cli.command("watch")
@click.option("--duration", type=float, default=None, help="Stop after this many seconds.")
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def watch_command(duration: float | None, config_value: str) -> None:
    runtime = _runtime(config_value)
    configure_logging(level=runtime.config.logging.level, json_output=runtime.config.logging.json)
    supervisor = Supervisor.from_config(runtime.config, runtime.repo_root)
    supervisor.on_notification(
        lambda title, message, _sound: click.echo(f"[{title}] {message}")
    )
    try:
        supervisor.start()
    except FlowwatchStateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Watching {runtime.log_path}")
    deadline = None if duration is None else time.monotonic() + max(0.0, duration)
    try:
        while deadline is None or time.monotonic() < deadline:
            time.sleep(0.2)
    except KeyboardInterrupt:
        pass
    finally:
        supervisor.stop()
    click.echo("Stopped.")


@cli.command("analyze")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def analyze_command(as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    entries = LogReader(runtime.log_path).read_all()
    analysis = WorkflowAnalyzer(runtime.config.analyzer).analyze(entries)
    if as_json:
        click.echo(json.dumps(analysis.to_dict(), ensure_ascii=False, indent=2))
        return
    state = analysis.state
    click.echo(f"Health: {analysis.health}")
    click.echo(f"Entries: {len(entries)}")
    click.echo(f"Command: {state.current_command or '-'}  Phase: {state.current_phase or '-'}")
    click.echo(
        "Chain: " + ", ".join(f"{stage}={status}" for stage, status in state.chain_progress.items())
    )
    if not analysis.issues:
        click.echo("No issues detected.")
        return
    for issue in analysis.issues:
        click.echo(f"- [{issue.type}] {issue.message} ({issue.confidence * 100:.0f}%)")


@cli.command("log")
@click.argument("command")
@click.argument("event")
@click.option("--phase", default=None)
@click.option("--data", "data_value", default=None, help="JSON object payload.")
@click.option("--agent-type", default=None)
@click.option("--agent-id", default=None)
@click.option("--agent-parent", default=None)
@click.option("--law", "laws", multiple=True, help="Checklist item as KEY=true|false.")
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def log_command(
    command: str,
    event: str,
    phase: str | None,
    data_value: str | None,
    agent_type: str | None,
    agent_id: str | None,
    agent_parent: str | None,
    laws: tuple[str, ...],
    config_value: str,
) -> None:
    runtime = _runtime(config_value)
    data: dict[str, Any] = {}
    if data_value:
        try:
            parsed = json.loads(data_value)
        except json.JSONDecodeError as exc:
            raise click.BadParameter(f"Invalid JSON: {exc}", param_hint="--data") from exc
        if not isinstance(parsed, dict):
            raise click.BadParameter("Payload must be a JSON object", param_hint="--data")
        data = parsed
    agent = None
    if agent_id:
        agent = AgentDescriptor(type=agent_type or "unknown", id=agent_id, parent=agent_parent)
    entry = WorkflowLogger(runtime.log_path).log(
        command,
        event.upper(),
        data=data,
        phase=phase,
        agent=agent,
        iron_laws=_parse_laws(laws),
    )
    click.echo(f"Logged {entry.command}:{entry.event} at {entry.timestamp}")


@cli.command("scan")
@click.argument("source", type=click.File("r"), default="-")
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def scan_command(source: Any, config_value: str) -> None:
    """Classify tool or test output and queue a task for each match."""
    runtime = _runtime(config_value)
    monitor = OutputMonitor(_open_queue(runtime))
    queued: list[Task] = []
    try:
        for line in source:
            task = monitor.process_line(line)
            if task is not None:
                queued.append(task)
        if not queued:
            aggregated = monitor.analyze_aggregated()
            if aggregated is not None:
                queued.append(aggregated)
    except FlowwatchStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if not queued:
        click.echo("No anomalies detected.")
        return
    for task in queued:
        click.echo(f"Queued {task.anomaly_type} -> {task.suggested_agent} ({task.id})")


@cli.command("check")
@click.option("--feature", default=None, help="Active feature for documentation checks.")
@click.option("--queue", "queue_tasks", is_flag=True, default=False, help="Queue corrective tasks.")
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def check_command(feature: str | None, queue_tasks: bool, as_json: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    monitor = runtime.compliance()
    monitor.set_active_feature(feature)
    try:
        if queue_tasks:
            supervisor = Supervisor.from_config(runtime.config, runtime.repo_root)
            supervisor.compliance = monitor
            violations = supervisor.check_compliance()
        else:
            violations = monitor.check()
    except FlowwatchStateError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        payload = [violation.to_dict() for violation in violations]
        click.echo(json.dumps(payload, ensure_ascii=False, indent=2))
        return
    if not violations:
        click.echo("All IRON LAWS satisfied.")
        return
    for violation in violations:
        click.echo(f"IRON LAW #{violation.law}: {violation.message}")
        if violation.corrective_action:
            click.echo(f"  fix: {violation.corrective_action}")


@cli.group("queue")
def queue_group() -> None:
    """Inspect and update the corrective task queue."""


@queue_group.command("list")
@click.option("--status", type=click.Choice(["pending", "executing", "completed", "failed"]), default=None)
@click.option("--json", "as_json", is_flag=True, default=False)
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def queue_list_command(status: str | None, as_json: bool, config_value: str) -> None:
    queue = _open_queue(_runtime(config_value))
    tasks = [task for task in queue.get_tasks() if status is None or task.status == status]
    if as_json:
        click.echo(json.dumps([task.to_dict() for task in tasks], ensure_ascii=False, indent=2))
        return
    if not tasks:
        click.echo("Queue is empty.")
        return
    for task in tasks:
        click.echo(_task_line(task))
    counts = queue.get_count_by_priority()
    click.echo(
        f"Pending: {queue.get_pending_count()} "
        + "(" + ", ".join(f"{name}={count}" for name, count in counts.items()) + ")"
    )


@queue_group.command("next")
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def queue_next_command(config_value: str) -> None:
    task = _open_queue(_runtime(config_value)).get_next_task()
    if task is None:
        click.echo("No pending tasks.")
        return
    click.echo(json.dumps(task.to_dict(), ensure_ascii=False, indent=2))


@queue_group.command("update")
@click.argument("task_id")
@click.option("--status", type=click.Choice(["pending", "executing", "completed", "failed"]), default=None)
@click.option("--priority", type=click.Choice(["critical", "high", "medium", "low"]), default=None)
@click.option("--error", default=None)
@click.option("--report-path", default=None)
@click.option("--attempt", "bump_attempts", is_flag=True, default=False, help="Increment attempts.")
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def queue_update_command(
    task_id: str,
    status: str | None,
    priority: str | None,
    error: str | None,
    report_path: str | None,
    bump_attempts: bool,
    config_value: str,
) -> None:
    queue = _open_queue(_runtime(config_value))
    changes: dict[str, Any] = {}
    if status:
        changes["status"] = status
    if priority:
        changes["priority"] = priority
    if error is not None:
        changes["error"] = error
    if report_path is not None:
        changes["report_path"] = report_path
    try:
        if bump_attempts:
            changes["attempts"] = queue.get_task(task_id).attempts + 1
        if not changes:
            raise click.ClickException("Nothing to update.")
        task = queue.update_task(task_id, **changes)
    except TaskNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(_task_line(task))


@queue_group.command("remove")
@click.argument("task_id")
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def queue_remove_command(task_id: str, config_value: str) -> None:
    if not _open_queue(_runtime(config_value)).remove_task(task_id):
        raise click.ClickException(f"Task not found: {task_id}")
    click.echo(f"Removed {task_id}")


@queue_group.command("fail")
@click.argument("task_id")
@click.argument("error")
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def queue_fail_command(task_id: str, error: str, config_value: str) -> None:
    try:
        task = _open_queue(_runtime(config_value)).move_to_failed(task_id, error)
    except TaskNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Archived {task.id} as failed: {error}")


@queue_group.command("clear")
@click.option("--yes", is_flag=True, default=False)
@click.option("--config", "config_value", default="flowwatch.toml", show_default=True)
def queue_clear_command(yes: bool, config_value: str) -> None:
    if not yes and sys.stdin.isatty():
        click.confirm("Remove every queued task?", abort=True)
    removed = _open_queue(_runtime(config_value)).clear()
    click.echo(f"Removed {removed} task(s).")
