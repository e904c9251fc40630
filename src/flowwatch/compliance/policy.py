from __future__ import annotations

import copy
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flowwatch.observability import get_logger

logger = get_logger(__name__)

RULE_IDS: tuple[str, ...] = (
    "law1_tdd",
    "law2_behavior_tests",
    "law3_loop_detection",
    "law4_git_flow",
    "law5_agent_delegation",
    "law6_dev_docs",
)
RULE_LAWS: dict[str, int] = {rule_id: int(rule_id[3]) for rule_id in RULE_IDS}

DEFAULT_DISALLOWED_PATTERNS: list[dict[str, str]] = [
    {"glob": "*.ts", "pattern": r":\s*any\b", "label": "explicit 'any' type"},
    {"glob": "*.tsx", "pattern": r":\s*any\b", "label": "explicit 'any' type"},
    {"glob": "*.test.*", "pattern": r"\.(only|skip)\(", "label": "focused or skipped test"},
    {"glob": "*.spec.*", "pattern": r"\.(only|skip)\(", "label": "focused or skipped test"},
    {"glob": "test_*.py", "pattern": r"@pytest\.mark\.skip\b", "label": "skipped test"},
]


@dataclass(slots=True)
class RulePolicy:
    enabled: bool = True
    locked: bool = False
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RulePolicy:
        config = data.get("config")
        return cls(
            enabled=bool(data.get("enabled", True)),
            locked=bool(data.get("locked", False)),
            config=dict(config) if isinstance(config, Mapping) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {"enabled": self.enabled, "locked": self.locked, "config": copy.deepcopy(self.config)}


def default_policies() -> dict[str, RulePolicy]:
    return {
        "law1_tdd": RulePolicy(locked=True),
        "law2_behavior_tests": RulePolicy(
            config={"disallowedPatterns": copy.deepcopy(DEFAULT_DISALLOWED_PATTERNS)}
        ),
        "law3_loop_detection": RulePolicy(locked=True),
        "law4_git_flow": RulePolicy(config={"protectedBranches": ["main", "master"]}),
        "law5_agent_delegation": RulePolicy(locked=True),
        "law6_dev_docs": RulePolicy(config={"requiredDocs": ["PROGRESS.md"]}),
    }


class PolicySet:
    """Per-rule enable/lock/config map. Unknown rules default to enabled."""

    def __init__(self, rules: Mapping[str, RulePolicy] | None = None) -> None:
        self.rules: dict[str, RulePolicy] = dict(rules or {})

    @classmethod
    def defaults(cls) -> PolicySet:
        return cls(default_policies())

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> PolicySet:
        rules = {
            str(rule_id): RulePolicy.from_dict(value)
            for rule_id, value in mapping.items()
            if isinstance(value, Mapping)
        }
        return cls(rules)

    def get(self, rule_id: str) -> RulePolicy:
        return self.rules.get(rule_id) or RulePolicy()

    def is_enabled(self, rule_id: str) -> bool:
        return self.get(rule_id).enabled

    def option(self, rule_id: str, key: str, default: Any) -> Any:
        value = self.get(rule_id).config.get(key)
        return default if value is None else value

    def with_overrides(self, overrides: Mapping[str, Any]) -> PolicySet:
        """Apply local settings. Locked rules keep their current values."""
        merged = {rule_id: RulePolicy.from_dict(rule.to_dict()) for rule_id, rule in self.rules.items()}
        for rule_id, raw in overrides.items():
            if not isinstance(raw, Mapping):
                continue
            current = merged.get(rule_id)
            if current is not None and current.locked:
                logger.info("Ignoring local override for locked rule", extra={"rule_id": rule_id})
                continue
            if current is None:
                merged[rule_id] = RulePolicy.from_dict(raw)
                continue
            if "enabled" in raw:
                current.enabled = bool(raw["enabled"])
            if "locked" in raw:
                current.locked = bool(raw["locked"])
            config = raw.get("config")
            if isinstance(config, Mapping):
                current.config.update(config)
        return PolicySet(merged)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        return {rule_id: rule.to_dict() for rule_id, rule in self.rules.items()}


def read_team_policy(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        logger.debug("Cannot read team policy %s: %s", path, exc)
        return {}
    try:
        payload = json.loads(content)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed team policy %s", path)
        return {}
    return payload if isinstance(payload, dict) else {}


def load_policies(
    *, team_file: Path | None = None, local: Mapping[str, Any] | None = None
) -> PolicySet:
    """Defaults, then the team policy document, then local overrides."""
    rules = default_policies()
    if team_file is not None:
        for rule_id, raw in read_team_policy(team_file).items():
            if isinstance(raw, Mapping):
                team_rule = RulePolicy.from_dict(raw)
                base = rules.get(rule_id)
                if base is not None and not team_rule.config:
                    team_rule.config = copy.deepcopy(base.config)
                rules[rule_id] = team_rule
    return PolicySet(rules).with_overrides(local or {})
