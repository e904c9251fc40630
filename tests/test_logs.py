import json
from datetime import UTC, datetime
from pathlib import Path

from flowwatch.logs import LogReader, WorkflowLogger, parse_content, parse_line
from flowwatch.models import AgentDescriptor, LogEntry
from flowwatch.scheduler import ManualScheduler


def _fixed_clock() -> datetime:
    return datetime(2026, 3, 1, 9, 30, tzinfo=UTC)


def test_logger_writes_json_and_mirror_lines(tmp_path: Path) -> None:
    log_path = tmp_path / ".oss" / "workflow.log"
    logger = WorkflowLogger(log_path, clock=_fixed_clock)

    entry = logger.log(
        "build",
        "MILESTONE",
        phase="RED",
        data={"description": "failing login test written"},
    )

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[0]) == {
        "ts": "2026-03-01T09:30:00.000Z",
        "cmd": "build",
        "event": "MILESTONE",
        "data": {"description": "failing login test written"},
        "phase": "RED",
    }
    assert lines[1] == "# BUILD:RED:MILESTONE - failing login test written"
    assert entry.timestamp == "2026-03-01T09:30:00.000Z"


def test_logger_appends_checklist_on_completion(tmp_path: Path) -> None:
    log_path = tmp_path / "workflow.log"
    logger = WorkflowLogger(log_path, clock=_fixed_clock)

    logger.log(
        "build",
        "COMPLETE",
        data={"summary": "login shipped"},
        iron_laws={"law1_tdd": True, "law4_feature_branch": False},
    )

    content = log_path.read_text(encoding="utf-8")
    assert "# BUILD:COMPLETE - login shipped" in content
    assert "# IRON LAW COMPLIANCE:" in content
    assert "[✓] LAW #1: TDD - Tests written first" in content
    assert "[✗] LAW #4: On feature branch" in content
    assert "Result: 1/2 laws observed" in content
    entries = parse_content(content)
    assert len(entries) == 1
    assert entries[0].compliance == {"law1_tdd": True, "law4_feature_branch": False}


def test_parse_line_skips_noise() -> None:
    assert parse_line("") is None
    assert parse_line("# BUILD:START") is None
    assert parse_line("{not json") is None
    assert parse_line("[1, 2]") is None
    assert parse_line('{"cmd": "build"}') is None
    assert parse_line('{"ts": "yesterday", "event": "START"}') is None

    entry = parse_line(
        '{"ts": "2026-03-01T09:00:00Z", "cmd": "build", "event": "START", '
        '"agent": {"type": "debugger", "id": "dbg-1", "parent": "build"}}'
    )
    assert entry is not None
    assert entry.agent == AgentDescriptor(type="debugger", id="dbg-1", parent="build")
    assert entry.payload == {}


def test_read_all_and_query_last(tmp_path: Path) -> None:
    log_path = tmp_path / "workflow.log"
    logger = WorkflowLogger(log_path, clock=_fixed_clock)
    logger.log("plan", "START")
    logger.log("plan", "COMPLETE", data={"outputs": ["PLAN.md"]})
    logger.log("build", "PHASE_START", phase="RED")
    logger.log("build", "PHASE_START", phase="GREEN")
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write("garbage line\n")

    reader = LogReader(log_path, scheduler=ManualScheduler())

    assert [entry.event for entry in reader.read_all()] == [
        "START",
        "COMPLETE",
        "PHASE_START",
        "PHASE_START",
    ]
    assert reader.query_last(command="plan").event == "COMPLETE"
    assert reader.query_last(event="PHASE_START").phase == "GREEN"
    assert reader.query_last(phase="RED").command == "build"
    assert reader.query_last(command="ship") is None
    assert LogReader(tmp_path / "missing.log").read_all() == []


def test_tailing_delivers_only_new_complete_lines(tmp_path: Path) -> None:
    log_path = tmp_path / "workflow.log"
    logger = WorkflowLogger(log_path, clock=_fixed_clock)
    logger.log("plan", "START")

    scheduler = ManualScheduler()
    reader = LogReader(log_path, scheduler=scheduler, poll_interval_seconds=0.05)
    received: list[LogEntry] = []
    reader.start_tailing(received.append)
    assert reader.is_tailing
    assert scheduler.active_jobs() == ["log-tail"]

    logger.log("plan", "COMPLETE")
    partial = json.dumps({"ts": "2026-03-01T09:31:00Z", "cmd": "build", "event": "START"})
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(partial[:20])
    scheduler.advance(0.05)

    assert [entry.event for entry in received] == ["COMPLETE"]

    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(partial[20:] + "\n")
    scheduler.advance(0.05)

    assert [entry.command for entry in received] == ["plan", "build"]


def test_tailing_survives_missing_file_truncation_and_bad_handlers(tmp_path: Path) -> None:
    log_path = tmp_path / "workflow.log"
    scheduler = ManualScheduler()
    reader = LogReader(log_path, scheduler=scheduler)
    received: list[str] = []

    def handler(entry: LogEntry) -> None:
        if entry.command == "boom":
            raise RuntimeError("handler failure")
        received.append(entry.command)

    reader.start_tailing(handler)
    scheduler.advance(0.2)
    assert received == []

    logger = WorkflowLogger(log_path, clock=_fixed_clock)
    logger.log("boom", "START")
    logger.log("plan", "START")
    scheduler.advance(0.05)
    assert received == ["plan"]

    log_path.write_text("", encoding="utf-8")
    logger.log("ship", "START")
    scheduler.advance(0.05)
    assert received == ["plan", "ship"]


def test_stop_tailing_is_idempotent(tmp_path: Path) -> None:
    log_path = tmp_path / "workflow.log"
    scheduler = ManualScheduler()
    reader = LogReader(log_path, scheduler=scheduler)
    received: list[LogEntry] = []
    reader.start_tailing(received.append)

    reader.stop_tailing()
    reader.stop_tailing()
    WorkflowLogger(log_path, clock=_fixed_clock).log("plan", "START")
    scheduler.advance(1)

    assert not reader.is_tailing
    assert scheduler.active_jobs() == []
    assert received == []
    assert reader.poll() == 0


def test_entry_wire_format_round_trips() -> None:
    entry = LogEntry(
        timestamp="2026-03-01T09:00:00.000Z",
        command="build",
        event="AGENT_COMPLETE",
        payload={"status": "ok"},
        agent=AgentDescriptor(type="test-engineer", id="te-1"),
        compliance={"law1_tdd": True},
    )

    assert LogEntry.from_dict(json.loads(json.dumps(entry.to_dict()))) == entry


def test_tailing_after_replay_picks_up_entries_written_in_between(tmp_path: Path) -> None:
    log_path = tmp_path / "workflow.log"
    logger = WorkflowLogger(log_path, clock=_fixed_clock)
    logger.log("plan", "START")
    scheduler = ManualScheduler()
    reader = LogReader(log_path, scheduler=scheduler)

    replayed = reader.replay()
    logger.log("plan", "COMPLETE")
    received: list[LogEntry] = []
    reader.start_tailing(received.append)
    scheduler.advance(0.05)

    assert [entry.event for entry in replayed] == ["START"]
    assert [entry.event for entry in received] == ["COMPLETE"]


def test_replay_leaves_unfinished_last_line_to_the_tail(tmp_path: Path) -> None:
    log_path = tmp_path / "workflow.log"
    WorkflowLogger(log_path, clock=_fixed_clock).log("plan", "START")
    partial = json.dumps({"ts": "2026-03-01T09:31:00Z", "cmd": "build", "event": "START"})
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(partial[:20])
    scheduler = ManualScheduler()
    reader = LogReader(log_path, scheduler=scheduler)

    replayed = reader.replay()
    received: list[LogEntry] = []
    reader.start_tailing(received.append)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(partial[20:] + "\n")
    scheduler.advance(0.05)

    assert [entry.command for entry in replayed] == ["plan"]
    assert [entry.command for entry in received] == ["build"]
