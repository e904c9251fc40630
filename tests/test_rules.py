import time

from flowwatch.detectors import RuleEngine


def test_fail_marker_extracts_test_file() -> None:
    match = RuleEngine().analyze("FAIL src/auth.test.ts")

    assert match is not None
    assert match.anomaly_type == "test_failure"
    assert match.context["test_file"] == "src/auth.test.ts"
    assert match.suggested_agent == "debugger"
    assert "src/auth.test.ts" in match.prompt


def test_five_identical_tool_calls_are_a_loop() -> None:
    text = "\n".join(["Tool: Grep pattern=foo"] * 5)

    match = RuleEngine().analyze(text)

    assert match is not None
    assert match.anomaly_type == "agent_loop"
    assert match.context["tool_name"] == "Grep"
    assert match.context["repeat_count"] == 5
    assert "loop" in match.prompt.lower()


def test_fewer_than_five_repetitions_is_not_a_loop() -> None:
    engine = RuleEngine()
    for count in range(1, 5):
        match = engine.analyze("\n".join(["Tool: Grep pattern=foo"] * count))
        assert match is None or match.anomaly_type != "agent_loop"


def test_interrupted_tool_run_is_not_a_loop() -> None:
    lines = ["Tool: Read file=a"] * 3 + ["Tool: Edit file=a"] + ["Tool: Read file=a"] * 3

    assert RuleEngine().analyze("\n".join(lines)) is None


def test_loop_takes_precedence_over_test_failures() -> None:
    text = "\n".join(["Tool: Bash cmd=pytest"] * 5 + ["FAIL src/auth.test.ts"])

    match = RuleEngine().analyze(text)

    assert match is not None
    assert match.anomaly_type == "agent_loop"


def test_pytest_failure_line() -> None:
    match = RuleEngine().analyze("FAILED tests/test_queue.py::test_eviction - assert 3 == 2")

    assert match is not None
    assert match.anomaly_type == "test_failure"
    assert match.context["test_file"] == "tests/test_queue.py"


def test_failed_count_summary() -> None:
    match = RuleEngine().analyze("Tests: 3 failed, 12 passed, 15 total")

    assert match is not None
    assert match.anomaly_type == "test_failure"
    assert match.context["failed_count"] == 3


def test_python_traceback_extracts_first_frame() -> None:
    text = (
        "Traceback (most recent call last):\n"
        '  File "src/app/service.py", line 42, in handle\n'
        "    raise ValueError('boom')\n"
        "ValueError: boom\n"
    )

    match = RuleEngine().analyze(text)

    assert match is not None
    assert match.anomaly_type == "exception"
    assert match.context["file"] == "src/app/service.py"
    assert match.context["line"] == 42


def test_javascript_stack_trace() -> None:
    text = "TypeError: Cannot read properties of undefined\n    at handler (src/index.ts:10:5)"

    match = RuleEngine().analyze(text)

    assert match is not None
    assert match.anomaly_type == "exception"
    assert match.context["file"] == "src/index.ts"
    assert match.context["line"] == 10


def test_ci_pr_and_push_failures_route_to_deployment_role() -> None:
    engine = RuleEngine()
    cases = {
        "❌ CI: lint job exited with 1": "ci_failure",
        "The build failed on main": "ci_failure",
        "PR check failed: required status missing": "pr_check_failed",
        "error: failed to push some refs to origin": "push_failed",
    }
    for text, expected in cases.items():
        match = engine.analyze(text)
        assert match is not None, text
        assert match.anomaly_type == expected, text
        assert match.suggested_agent == "deployment-engineer"


def test_stuck_and_timeout_phrasing() -> None:
    engine = RuleEngine()

    timeout = engine.analyze("Command timed out after 120000ms")
    silent = engine.analyze("no output received for 300 seconds")

    assert timeout is not None and timeout.anomaly_type == "agent_stuck"
    assert silent is not None and silent.anomaly_type == "agent_stuck"


def test_plain_text_returns_none() -> None:
    engine = RuleEngine()

    assert engine.analyze("") is None
    assert engine.analyze("All 42 tests passed") is None
    assert engine.analyze("Compiled successfully in 1.2s") is None


def test_thousand_mixed_lines_analyze_quickly() -> None:
    samples = [
        "Compiling module utils",
        "Tool: Read file=src/a.ts",
        "PASS src/a.test.ts",
        "info: watching for changes",
        "Tool: Edit file=src/b.ts",
        "warning: unused variable x",
        "✓ renders header (4 ms)",
        "FAIL src/auth.test.ts",
    ]
    text = "\n".join(samples[i % len(samples)] for i in range(1000))
    engine = RuleEngine()
    engine.analyze(text)

    started = time.perf_counter()
    match = engine.analyze(text)
    elapsed = time.perf_counter() - started

    assert match is not None
    assert elapsed < 0.01


def test_thousand_quiet_lines_analyze_quickly() -> None:
    text = "\n".join(
        f"info: processing item {i} with ValueRecord handler and some text here ok"
        for i in range(1000)
    )
    engine = RuleEngine()
    assert engine.analyze(text) is None

    timings = []
    for _ in range(5):
        started = time.perf_counter()
        engine.analyze(text)
        timings.append(time.perf_counter() - started)

    assert min(timings) < 0.01


def test_gated_rules_still_match_mixed_case() -> None:
    engine = RuleEngine()

    assert engine.analyze("COMMAND TIMED OUT AFTER 30 seconds").anomaly_type == "agent_stuck"
    assert engine.analyze("Build FAILED on runner 3").anomaly_type == "ci_failure"
    assert engine.analyze("remote: Failed To Push refs").anomaly_type == "push_failed"
