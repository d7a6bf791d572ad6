from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

StrategyName = Literal["merge", "squash", "rebase"]
LogLevelName = Literal["DEBUG", "INFO", "WARNING", "ERROR"]


@dataclass(slots=True)
class ProjectConfig:
    state_dir: str = ".control"


@dataclass(slots=True)
class WorkspaceConfig:
    branch_prefix: str = "hive"
    retain_completed: bool = False


@dataclass(slots=True)
class IntegrationConfig:
    default_strategy: StrategyName = "merge"
    delete_branch_after_merge: bool = False
    lock_timeout_seconds: float = 30.0


@dataclass(slots=True)
class LoggingConfig:
    level: LogLevelName = "INFO"
    file: str = ""


@dataclass(slots=True)
class HiveConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    integration: IntegrationConfig = field(default_factory=IntegrationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> HiveConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> HiveConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            integration=IntegrationConfig(**data.get("integration", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "state_dir": self.project.state_dir,
            },
            "workspace": {
                "branch_prefix": self.workspace.branch_prefix,
                "retain_completed": self.workspace.retain_completed,
            },
            "integration": {
                "default_strategy": self.integration.default_strategy,
                "delete_branch_after_merge": self.integration.delete_branch_after_merge,
                "lock_timeout_seconds": self.integration.lock_timeout_seconds,
            },
            "logging": {
                "level": self.logging.level,
                "file": self.logging.file,
            },
        }


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
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: HiveConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "workspace", "integration", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> HiveConfig:
    if not path.exists():
        return HiveConfig.default()
    return HiveConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: HiveConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
