from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

CONFIG_FILENAME = "waypoint.toml"


def _default_reviewers() -> dict[str, list[str]]:
    return {
        "claude": ["claude", "-p", "--output-format", "json"],
        "codex": ["codex", "exec"],
        "gemini": ["gemini"],
    }


@dataclass(slots=True)
class PipelineConfig:
    max_stage_attempts: int = 3
    stage_timeout_seconds: float = 3600.0
    registry: str = ""
    stage_timeouts: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.max_stage_attempts < 1:
            raise ValueError("pipeline.max_stage_attempts must be at least 1")
        if self.stage_timeout_seconds <= 0:
            raise ValueError("pipeline.stage_timeout_seconds must be positive")
        self.stage_timeouts = {
            str(stage): float(seconds) for stage, seconds in self.stage_timeouts.items()
        }


@dataclass(slots=True)
class ConsiliumConfig:
    reviewer_timeout_seconds: float = 120.0
    issue_prefix_length: int = 50
    reviewers: dict[str, list[str]] = field(default_factory=_default_reviewers)
    openai_reviewers: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class WatchdogConfig:
    interval_seconds: float = 300.0
    initializing_timeout_seconds: float = 300.0
    stuck_threshold_seconds: float = 7200.0


@dataclass(slots=True)
class StateConfig:
    root: str = ".waypoint"


@dataclass(slots=True)
class WaypointConfig:
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    consilium: ConsiliumConfig = field(default_factory=ConsiliumConfig)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> WaypointConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> WaypointConfig:
        consilium = dict(data.get("consilium", {}))
        if "reviewers" in consilium:
            consilium["reviewers"] = {
                str(name): [str(part) for part in command]
                for name, command in dict(consilium["reviewers"]).items()
            }
        if "openai_reviewers" in consilium:
            consilium["openai_reviewers"] = {
                str(name): str(model)
                for name, model in dict(consilium["openai_reviewers"]).items()
            }
        return cls(
            pipeline=PipelineConfig(**data.get("pipeline", {})),
            consilium=ConsiliumConfig(**consilium),
            watchdog=WatchdogConfig(**data.get("watchdog", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "pipeline": {
                "max_stage_attempts": self.pipeline.max_stage_attempts,
                "stage_timeout_seconds": self.pipeline.stage_timeout_seconds,
                "registry": self.pipeline.registry,
                "stage_timeouts": dict(self.pipeline.stage_timeouts),
            },
            "consilium": {
                "reviewer_timeout_seconds": self.consilium.reviewer_timeout_seconds,
                "issue_prefix_length": self.consilium.issue_prefix_length,
                "reviewers": {
                    name: list(command) for name, command in self.consilium.reviewers.items()
                },
                "openai_reviewers": {
                    name: model for name, model in self.consilium.openai_reviewers.items()
                },
            },
            "watchdog": {
                "interval_seconds": self.watchdog.interval_seconds,
                "initializing_timeout_seconds": self.watchdog.initializing_timeout_seconds,
                "stuck_threshold_seconds": self.watchdog.stuck_threshold_seconds,
            },
            "state": {
                "root": self.state.root,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_key(key: str) -> str:
    if key and all(char.isascii() and (char.isalnum() or char in "-_") for char in key):
        return key
    return json.dumps(key, ensure_ascii=False)


def dumps_toml(config: WaypointConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["pipeline", "consilium", "watchdog", "state"]
    for section in section_order:
        tables: list[tuple[str, dict[str, Any]]] = []
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            if isinstance(value, dict):
                tables.append((key, value))
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
        for key, table in tables:
            lines.append(f"[{section}.{key}]")
            for name, value in table.items():
                lines.append(f"{_toml_key(name)} = {_toml_value(value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> WaypointConfig:
    if not path.exists():
        return WaypointConfig.default()
    return WaypointConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: WaypointConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
