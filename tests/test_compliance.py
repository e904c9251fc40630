import json
from datetime import UTC, datetime
from pathlib import Path

from flowwatch.compliance import ComplianceMonitor, PolicySet, StaticInspector, coverage_key, load_policies
from flowwatch.state import JsonDocumentStore, MemoryDocumentStore


def _clock() -> datetime:
    return datetime(2026, 3, 1, 10, 0, tzinfo=UTC)


def _monitor(
    tmp_path: Path,
    inspector: StaticInspector,
    *,
    policies: PolicySet | None = None,
    store=None,
) -> ComplianceMonitor:
    repo = tmp_path / "repo"
    repo.mkdir(exist_ok=True)
    return ComplianceMonitor(
        repo,
        policies=policies,
        inspector=inspector,
        store=store or MemoryDocumentStore(),
        clock=_clock,
        user_home=tmp_path / "home",
    )


def test_protected_branch_is_a_violation(tmp_path: Path) -> None:
    inspector = StaticInspector(branch="main")
    monitor = _monitor(tmp_path, inspector)

    violations = monitor.check()

    assert len(violations) == 1
    assert violations[0].rule_id == "law4_git_flow"
    assert violations[0].law == 4
    assert violations[0].message == "On main branch - create a feature branch first"
    assert violations[0].corrective_action == "git checkout -b feat/your-feature-name"

    inspector.branch = "feat/login"
    assert monitor.check() == []
    assert [item.rule_id for item in monitor.last_resolved] == ["law4_git_flow"]


def test_source_written_before_test_until_test_arrives(tmp_path: Path) -> None:
    monitor = _monitor(tmp_path, StaticInspector(branch="feat/auth"))

    monitor.track_file_change("src/auth.py", "created")
    violations = monitor.check()

    assert [v.message for v in violations] == ["auth.py written without test - write test first"]
    assert violations[0].corrective_action == "Write test for auth.py before implementing"

    monitor.track_file_change("tests/test_auth.py", "created")
    assert monitor.check() == []
    assert monitor.last_resolved[0].resolved_at is not None


def test_test_first_sources_are_clean(tmp_path: Path) -> None:
    monitor = _monitor(tmp_path, StaticInspector(branch="feat/billing"))

    monitor.track_tool_call("Write", "src/billing.test.ts")
    monitor.track_tool_call("Write", "src/billing.ts")
    monitor.track_tool_call("Read", "src/other.ts")
    monitor.track_file_change("docs/notes.md", "created")

    assert monitor.check() == []


def test_write_tool_on_untested_source_is_tracked(tmp_path: Path) -> None:
    monitor = _monitor(tmp_path, StaticInspector(branch="feat/billing"))

    monitor.track_tool_call("Write", "src/billing.ts")

    assert [v.rule_id for v in monitor.check()] == ["law1_tdd"]

    monitor.track_file_change("src/billing.ts", "deleted")
    assert monitor.check() == []


def test_coverage_key_pairs_sources_with_tests() -> None:
    assert coverage_key("src/auth.ts") == coverage_key("src/__tests__/auth.test.ts")
    assert coverage_key("pkg/auth.py") == coverage_key("tests/test_auth.py")
    assert coverage_key("pkg/auth.py") == coverage_key("pkg/auth_test.py")


def test_disallowed_constructs_in_staged_files(tmp_path: Path) -> None:
    inspector = StaticInspector(
        branch="feat/api",
        staged={
            "src/app.ts": "const value: any = load()\n",
            "src/auth.test.ts": "it.only('logs in', () => {})\n",
            "tests/test_api.py": "@pytest.mark.skip\ndef test_api():\n    pass\n",
            "README.md": "any: thing",
            "src/clean.ts": "const value: number = 1\n",
        },
    )

    messages = sorted(v.message for v in _monitor(tmp_path, inspector).check())

    assert messages == [
        "explicit 'any' type in staged file src/app.ts",
        "focused or skipped test in staged file src/auth.test.ts",
        "skipped test in staged file tests/test_api.py",
    ]


def test_disabled_rules_never_violate_and_locked_rules_ignore_overrides(tmp_path: Path) -> None:
    policies = PolicySet.defaults().with_overrides(
        {"law4_git_flow": {"enabled": False}, "law1_tdd": {"enabled": False}}
    )
    monitor = _monitor(tmp_path, StaticInspector(branch="main"), policies=policies)
    monitor.track_file_change("src/auth.py", "created")

    assert [v.rule_id for v in monitor.check()] == ["law1_tdd"]


def test_unknown_rules_default_to_enabled() -> None:
    policies = PolicySet()

    assert policies.is_enabled("law4_git_flow") is True
    assert policies.option("law4_git_flow", "protectedBranches", ["main"]) == ["main"]


def test_team_policy_then_local_overrides(tmp_path: Path) -> None:
    team_file = tmp_path / "team-iron-laws.json"
    team_file.write_text(
        json.dumps(
            {
                "law4_git_flow": {
                    "enabled": True,
                    "locked": True,
                    "config": {"protectedBranches": ["main", "release"]},
                },
                "law6_dev_docs": {"enabled": False},
            }
        ),
        encoding="utf-8",
    )

    policies = load_policies(
        team_file=team_file,
        local={
            "law4_git_flow": {"enabled": False},
            "law2_behavior_tests": {"enabled": False},
        },
    )

    assert policies.is_enabled("law4_git_flow") is True
    assert policies.option("law4_git_flow", "protectedBranches", []) == ["main", "release"]
    assert policies.is_enabled("law6_dev_docs") is False
    assert policies.is_enabled("law2_behavior_tests") is False
    assert policies.is_enabled("law1_tdd") is True

    team_file.write_text("{oops", encoding="utf-8")
    assert load_policies(team_file=team_file).is_enabled("law6_dev_docs") is True


def test_missing_dev_docs_for_active_feature(tmp_path: Path) -> None:
    monitor = _monitor(tmp_path, StaticInspector(branch="feat/login"))
    feature_dir = tmp_path / "repo" / ".oss" / "dev" / "active" / "login"
    feature_dir.mkdir(parents=True)

    assert monitor.check() == []

    monitor.set_active_feature("login")
    violations = monitor.check()

    assert [v.message for v in violations] == ["Missing PROGRESS.md for login"]
    assert violations[0].corrective_action == "Create .oss/dev/active/login/PROGRESS.md"

    (feature_dir / "PROGRESS.md").write_text("# Progress\n", encoding="utf-8")
    assert monitor.check() == []


def test_dev_docs_fall_back_to_user_home(tmp_path: Path) -> None:
    monitor = _monitor(tmp_path, StaticInspector(branch="feat/login"))
    monitor.set_active_feature("login")

    assert monitor.dev_docs_root() == tmp_path / "home" / ".oss" / "dev"
    assert [v.message for v in monitor.check()] == ["Missing PROGRESS.md for login"]


def test_recurring_violation_escalates_to_repeated(tmp_path: Path) -> None:
    inspector = StaticInspector(branch="main")
    monitor = _monitor(tmp_path, inspector)

    first = monitor.issue_for(monitor.check()[0])
    assert first.type == "iron_law_violation"
    assert first.context["count"] == 1

    again = monitor.issue_for(monitor.check()[0])
    assert again.type == "iron_law_violation"

    inspector.branch = "feat/x"
    monitor.check()
    inspector.branch = "main"
    repeated = monitor.issue_for(monitor.check()[0])

    assert repeated.type == "iron_law_repeated"
    assert "2 times" in repeated.message
    assert repeated.context["count"] == 2
    assert repeated.context["law"] == 4


def test_history_persists_and_is_capped(tmp_path: Path) -> None:
    store = JsonDocumentStore(tmp_path / "iron-law-state.json")
    monitor = _monitor(tmp_path, StaticInspector(branch="main"), store=store)
    for index in range(150):
        monitor.track_file_change(f"docs/note-{index}.md", "modified")
    monitor.check()

    reloaded = _monitor(tmp_path, StaticInspector(branch="main"), store=store)

    assert len(reloaded.history.recent_file_changes) == 100
    assert reloaded.history.recent_file_changes[-1].path == "docs/note-149.md"
    assert reloaded.history.last_check == "2026-03-01T10:00:00.000Z"
    assert [v.rule_id for v in reloaded.open_violations()] == ["law4_git_flow"]


def test_same_rule_on_different_files_escalates(tmp_path: Path) -> None:
    monitor = _monitor(tmp_path, StaticInspector(branch="feat/auth"))

    monitor.track_file_change("src/a.py", "created")
    first = monitor.issue_for(monitor.check()[0])
    monitor.track_file_change("tests/test_a.py", "created")
    assert monitor.check() == []
    monitor.track_file_change("src/b.py", "created")
    second = monitor.issue_for(monitor.check()[0])

    assert first.type == "iron_law_violation"
    assert second.type == "iron_law_repeated"
    assert second.context["count"] == 2
    assert second.context["rule_id"] == "law1_tdd"
    assert "b.py written without test" in second.message
