from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

SupervisorMode = Literal["always", "workflow-only"]

HOME_ENV_VAR = "FLOWWATCH_HOME"


@dataclass(slots=True)
class PathsConfig:
    home: str = ".oss"
    log_file: str = "workflow.log"
    state_file: str = "workflow-state.json"
    queue_file: str = "queue.json"
    expired_file: str = "queue-expired.json"
    failed_file: str = "queue-failed.json"
    compliance_file: str = "iron-law-state.json"
    team_policy_file: str = "team-iron-laws.json"


@dataclass(slots=True)
class SupervisorConfig:
    mode: SupervisorMode = "always"
    check_interval_seconds: float = 5.0
    poll_interval_seconds: float = 0.05
    analysis_interval_seconds: float = 30.0


@dataclass(slots=True)
class AnalyzerThresholds:
    silence_seconds: float = 90.0
    phase_stuck_seconds: float = 240.0
    abrupt_stop_seconds: float = 150.0
    agent_silence_seconds: float = 50.0
    agent_abandoned_seconds: float = 90.0
    loop_min_repeats: int = 3
    loop_window_seconds: float = 600.0
    loop_base_confidence: float = 0.85
    loop_confidence_step: float = 0.015
    stuck_overrides: dict[str, float] = field(default_factory=dict)

    def stuck_threshold_seconds(self, command: str | None) -> float:
        if command and command in self.stuck_overrides:
            return float(self.stuck_overrides[command])
        return self.phase_stuck_seconds


@dataclass(slots=True)
class QueueConfig:
    max_size: int = 50
    lock_timeout_seconds: float = 5.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = True


@dataclass(slots=True)
class FlowwatchConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
    analyzer: AnalyzerThresholds = field(default_factory=AnalyzerThresholds)
    queue: QueueConfig = field(default_factory=QueueConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    policy: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def default(cls) -> FlowwatchConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FlowwatchConfig:
        policy = data.get("policy", {})
        return cls(
            paths=PathsConfig(**data.get("paths", {})),
            supervisor=SupervisorConfig(**data.get("supervisor", {})),
            analyzer=AnalyzerThresholds(**data.get("analyzer", {})),
            queue=QueueConfig(**data.get("queue", {})),
            logging=LoggingConfig(**data.get("logging", {})),
            policy={str(key): dict(value) for key, value in policy.items() if isinstance(value, dict)},
        )

    def to_dict(self) -> dict:
        return {
            "paths": {
                "home": self.paths.home,
                "log_file": self.paths.log_file,
                "state_file": self.paths.state_file,
                "queue_file": self.paths.queue_file,
                "expired_file": self.paths.expired_file,
                "failed_file": self.paths.failed_file,
                "compliance_file": self.paths.compliance_file,
                "team_policy_file": self.paths.team_policy_file,
            },
            "supervisor": {
                "mode": self.supervisor.mode,
                "check_interval_seconds": self.supervisor.check_interval_seconds,
                "poll_interval_seconds": self.supervisor.poll_interval_seconds,
                "analysis_interval_seconds": self.supervisor.analysis_interval_seconds,
            },
            "analyzer": {
                "silence_seconds": self.analyzer.silence_seconds,
                "phase_stuck_seconds": self.analyzer.phase_stuck_seconds,
                "abrupt_stop_seconds": self.analyzer.abrupt_stop_seconds,
                "agent_silence_seconds": self.analyzer.agent_silence_seconds,
                "agent_abandoned_seconds": self.analyzer.agent_abandoned_seconds,
                "loop_min_repeats": self.analyzer.loop_min_repeats,
                "loop_window_seconds": self.analyzer.loop_window_seconds,
                "loop_base_confidence": self.analyzer.loop_base_confidence,
                "loop_confidence_step": self.analyzer.loop_confidence_step,
                "stuck_overrides": dict(self.analyzer.stuck_overrides),
            },
            "queue": {
                "max_size": self.queue.max_size,
                "lock_timeout_seconds": self.queue.lock_timeout_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "json": self.logging.json,
            },
            "policy": {key: dict(value) for key, value in self.policy.items()},
        }

    def home_dir(self, project_root: Path) -> Path:
        override = os.getenv(HOME_ENV_VAR, "").strip()
        home = Path(override) if override else Path(self.paths.home)
        if not home.is_absolute():
            home = project_root / home
        return home.resolve()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        if not value:
            return "{}"
        items = ", ".join(f"{_toml_key(key)} = {_toml_value(item)}" for key, item in value.items())
        return "{ " + items + " }"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: object) -> str:
    text = str(key)
    if text and all(ch.isalnum() or ch in "-_" for ch in text):
        return text
    return json.dumps(text, ensure_ascii=False)


def dumps_toml(config: FlowwatchConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["paths", "supervisor", "analyzer", "queue", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    for rule_id, rule in data["policy"].items():
        lines.append(f"[policy.{_toml_key(rule_id)}]")
        for key, value in rule.items():
            lines.append(f"{_toml_key(key)} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FlowwatchConfig:
    if not path.exists():
        return FlowwatchConfig.default()
    return FlowwatchConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: FlowwatchConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
