from __future__ import annotations

import fnmatch
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Literal

from flowwatch.compliance.policy import RULE_LAWS, PolicySet
from flowwatch.compliance.inspector import GitInspector, ProjectInspector
from flowwatch.models import ComplianceViolation, Issue, format_timestamp, utcnow
from flowwatch.observability import get_logger
from flowwatch.state.store import DocumentStore, MemoryDocumentStore

logger = get_logger(__name__)

FileAction = Literal["created", "modified", "deleted"]

HISTORY_LIMIT = 100
SOURCE_EXTENSIONS = (".py", ".ts", ".tsx", ".js", ".jsx")
WRITE_TOOLS = frozenset({"Write"})
BRANCH_CORRECTIVE_ACTION = "git checkout -b feat/your-feature-name"


def _normalize(path: str) -> str:
    return path.replace("\\", "/")


def is_test_file(path: str) -> bool:
    normalized = _normalize(path)
    name = PurePosixPath(normalized).name
    return (
        ".test." in name
        or ".spec." in name
        or name.startswith("test_")
        or name.endswith("_test.py")
        or "tests/" in normalized
        or "__tests__/" in normalized
    )


def is_source_file(path: str) -> bool:
    return _normalize(path).endswith(SOURCE_EXTENSIONS)


def coverage_key(path: str) -> str:
    """Stem shared by a source file and its test."""
    name = PurePosixPath(_normalize(path)).name
    stem = name.split(".", 1)[0] if "." in name else name
    if stem.startswith("test_"):
        stem = stem[len("test_"):]
    if stem.endswith("_test"):
        stem = stem[: -len("_test")]
    return stem


@dataclass(slots=True)
class FileChange:
    path: str
    action: FileAction
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "action": self.action, "timestamp": self.timestamp}


@dataclass(slots=True)
class ToolCall:
    tool: str
    path: str
    timestamp: str

    def to_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "path": self.path, "timestamp": self.timestamp}


@dataclass(slots=True)
class ComplianceHistory:
    last_check: str | None = None
    violations: list[ComplianceViolation] = field(default_factory=list)
    recent_file_changes: list[FileChange] = field(default_factory=list)
    recent_tool_calls: list[ToolCall] = field(default_factory=list)
    pending_sources: dict[str, str] = field(default_factory=dict)
    tested_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_check": self.last_check,
            "violations": [violation.to_dict() for violation in self.violations],
            "recent_file_changes": [change.to_dict() for change in self.recent_file_changes],
            "recent_tool_calls": [call.to_dict() for call in self.recent_tool_calls],
            "pending_sources": dict(self.pending_sources),
            "tested_keys": list(self.tested_keys),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComplianceHistory:
        violations = [
            ComplianceViolation.from_dict(item)
            for item in data.get("violations", [])
            if isinstance(item, dict) and item.get("rule_id")
        ]
        changes = [
            FileChange(
                path=str(item.get("path", "")),
                action=item.get("action", "modified"),
                timestamp=str(item.get("timestamp", "")),
            )
            for item in data.get("recent_file_changes", [])
            if isinstance(item, dict)
        ]
        calls = [
            ToolCall(
                tool=str(item.get("tool", "")),
                path=str(item.get("path", "")),
                timestamp=str(item.get("timestamp", "")),
            )
            for item in data.get("recent_tool_calls", [])
            if isinstance(item, dict)
        ]
        pending = data.get("pending_sources")
        tested = data.get("tested_keys")
        return cls(
            last_check=data.get("last_check"),
            violations=violations,
            recent_file_changes=changes,
            recent_tool_calls=calls,
            pending_sources=dict(pending) if isinstance(pending, dict) else {},
            tested_keys=[str(key) for key in tested] if isinstance(tested, list) else [],
        )


class ComplianceMonitor:
    """Evaluates the IRON LAW rules against project state on demand."""

    def __init__(
        self,
        project_root: Path,
        *,
        policies: PolicySet | None = None,
        inspector: ProjectInspector | None = None,
        store: DocumentStore | None = None,
        clock: Callable[[], datetime] = utcnow,
        user_home: Path | None = None,
    ) -> None:
        self.project_root = project_root
        self.policies = policies or PolicySet.defaults()
        self.inspector = inspector or GitInspector(project_root)
        self.store = store or MemoryDocumentStore()
        self.clock = clock
        self.user_home = user_home or Path.home()
        self.active_feature: str | None = None
        self.last_resolved: list[ComplianceViolation] = []
        # Newly opened violations per rule id this session.
        self._occurrences: dict[str, int] = {}
        self._lock = threading.RLock()
        self.history = self._load()

    # Tracking inputs

    def set_active_feature(self, feature: str | None) -> None:
        self.active_feature = feature.strip() if feature and feature.strip() else None

    def track_file_change(self, path: str, action: FileAction) -> None:
        with self._lock:
            self.history.recent_file_changes.append(
                FileChange(path=path, action=action, timestamp=self._now())
            )
            self.history.recent_file_changes = self.history.recent_file_changes[-HISTORY_LIMIT:]
            key = coverage_key(path)
            if is_test_file(path):
                if action == "created":
                    self._mark_tested(key)
            elif is_source_file(path):
                if action == "created" and key not in self.history.tested_keys:
                    self.history.pending_sources[key] = path
                elif action == "deleted":
                    self.history.pending_sources.pop(key, None)
            self._save()

    def track_tool_call(self, tool: str, path: str) -> None:
        with self._lock:
            self.history.recent_tool_calls.append(
                ToolCall(tool=tool, path=path, timestamp=self._now())
            )
            self.history.recent_tool_calls = self.history.recent_tool_calls[-HISTORY_LIMIT:]
            if tool in WRITE_TOOLS:
                key = coverage_key(path)
                if is_test_file(path):
                    self._mark_tested(key)
                elif is_source_file(path) and key not in self.history.tested_keys:
                    self.history.pending_sources[key] = path
            self._save()

    def _mark_tested(self, key: str) -> None:
        if key not in self.history.tested_keys:
            self.history.tested_keys.append(key)
            self.history.tested_keys = self.history.tested_keys[-HISTORY_LIMIT:]
        self.history.pending_sources.pop(key, None)

    # Evaluation

    def check(self) -> list[ComplianceViolation]:
        with self._lock:
            now = self._now()
            violations: list[ComplianceViolation] = []
            if self.policies.is_enabled("law4_git_flow"):
                violations.extend(self._check_branch(now))
            if self.policies.is_enabled("law1_tdd"):
                violations.extend(self._check_tdd(now))
            if self.policies.is_enabled("law2_behavior_tests"):
                violations.extend(self._check_staged(now))
            if self.policies.is_enabled("law6_dev_docs"):
                violations.extend(self._check_dev_docs(now))
            self._update_history(violations, now)
            self.history.last_check = now
            self._save()
        for violation in violations:
            logger.debug("Compliance violation: %s", violation.message, extra={"rule_id": violation.rule_id})
        return violations

    def issue_for(self, violation: ComplianceViolation) -> Issue:
        count = max(1, self._occurrences.get(violation.rule_id, 1))
        context = {
            "law": violation.law,
            "rule_id": violation.rule_id,
            "message": violation.message,
            "count": count,
        }
        if count >= 2:
            return Issue(
                type="iron_law_repeated",
                message=f"IRON LAW #{violation.law} violated {count} times: {violation.message}",
                confidence=0.95,
                context=context,
            )
        return Issue(
            type="iron_law_violation",
            message=f"IRON LAW #{violation.law} violated: {violation.message}",
            confidence=0.95,
            context=context,
        )

    def open_violations(self) -> list[ComplianceViolation]:
        return [violation for violation in self.history.violations if violation.resolved_at is None]

    def _check_branch(self, now: str) -> list[ComplianceViolation]:
        branch = self.inspector.current_branch()
        protected = self.policies.option("law4_git_flow", "protectedBranches", ["main", "master"])
        if not branch or branch not in protected:
            return []
        return [
            ComplianceViolation(
                rule_id="law4_git_flow",
                law=RULE_LAWS["law4_git_flow"],
                message=f"On {branch} branch - create a feature branch first",
                detected_at=now,
                corrective_action=BRANCH_CORRECTIVE_ACTION,
            )
        ]

    def _check_tdd(self, now: str) -> list[ComplianceViolation]:
        violations = []
        for path in self.history.pending_sources.values():
            name = PurePosixPath(_normalize(path)).name
            violations.append(
                ComplianceViolation(
                    rule_id="law1_tdd",
                    law=RULE_LAWS["law1_tdd"],
                    message=f"{name} written without test - write test first",
                    detected_at=now,
                    corrective_action=f"Write test for {name} before implementing",
                )
            )
        return violations

    def _check_staged(self, now: str) -> list[ComplianceViolation]:
        patterns = self.policies.option("law2_behavior_tests", "disallowedPatterns", [])
        compiled: list[tuple[str, re.Pattern[str], str]] = []
        for item in patterns:
            if not isinstance(item, dict) or not item.get("glob") or not item.get("pattern"):
                continue
            try:
                regex = re.compile(str(item["pattern"]))
            except re.error:
                logger.warning("Skipping invalid pattern %r", item["pattern"], extra={"rule_id": "law2_behavior_tests"})
                continue
            compiled.append((str(item["glob"]), regex, str(item.get("label") or item["pattern"])))
        if not compiled:
            return []

        violations = []
        for path in self.inspector.staged_files():
            normalized = _normalize(path)
            name = PurePosixPath(normalized).name
            matching = [
                (regex, label)
                for glob, regex, label in compiled
                if fnmatch.fnmatch(normalized, glob) or fnmatch.fnmatch(name, glob)
            ]
            if not matching:
                continue
            content = self.inspector.staged_content(path)
            if content is None:
                continue
            reported: set[str] = set()
            for regex, label in matching:
                if label in reported or regex.search(content) is None:
                    continue
                reported.add(label)
                violations.append(
                    ComplianceViolation(
                        rule_id="law2_behavior_tests",
                        law=RULE_LAWS["law2_behavior_tests"],
                        message=f"{label} in staged file {normalized}",
                        detected_at=now,
                        corrective_action=f"Remove the {label} from {normalized} before committing",
                    )
                )
        return violations

    def dev_docs_root(self) -> Path:
        for candidate in (self.project_root / ".oss" / "dev", self.project_root / "dev"):
            if (candidate / "active").is_dir():
                return candidate
        return self.user_home / ".oss" / "dev"

    def _check_dev_docs(self, now: str) -> list[ComplianceViolation]:
        feature = self.active_feature
        if not feature:
            return []
        root = self.dev_docs_root()
        try:
            display = root.relative_to(self.project_root).as_posix()
        except ValueError:
            display = str(root)
        violations = []
        for doc in self.policies.option("law6_dev_docs", "requiredDocs", ["PROGRESS.md"]):
            if (root / "active" / feature / str(doc)).exists():
                continue
            violations.append(
                ComplianceViolation(
                    rule_id="law6_dev_docs",
                    law=RULE_LAWS["law6_dev_docs"],
                    message=f"Missing {doc} for {feature}",
                    detected_at=now,
                    corrective_action=f"Create {display}/active/{feature}/{doc}",
                )
            )
        return violations

    def _update_history(self, current: list[ComplianceViolation], now: str) -> None:
        current_signatures = {violation.signature for violation in current}
        self.last_resolved = []
        for violation in self.history.violations:
            if violation.resolved_at is None and violation.signature not in current_signatures:
                violation.resolved_at = now
                self.last_resolved.append(violation)
        open_signatures = {v.signature for v in self.history.violations if v.resolved_at is None}
        for violation in current:
            if violation.signature in open_signatures:
                continue
            self.history.violations.append(violation)
            open_signatures.add(violation.signature)
            self._occurrences[violation.rule_id] = self._occurrences.get(violation.rule_id, 0) + 1
        self.history.violations = self.history.violations[-HISTORY_LIMIT:]

    # Persistence

    def _now(self) -> str:
        return format_timestamp(self.clock())

    def _load(self) -> ComplianceHistory:
        document = self.store.load()
        if not isinstance(document, dict):
            return ComplianceHistory()
        return ComplianceHistory.from_dict(document)

    def _save(self) -> None:
        with self.store.lock():
            self.store.save(self.history.to_dict())
