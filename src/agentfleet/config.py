from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class RunnerConfig:
    binary: str = "pi"
    tick_seconds: float = 1.0
    depth_env_var: str = "AGENT_FLEET_DEPTH"


@dataclass(slots=True)
class OrchestrationConfig:
    stagger_seconds: float = 0.15
    priority: list[str] = field(
        default_factory=lambda: ["scout", "coder", "reviewer", "youtrack"]
    )


@dataclass(slots=True)
class PersistenceConfig:
    debounce_seconds: float = 5.0
    state_dir: str = "~/.agent-fleet"
    sessions_dir: str = "~/.agent-fleet/sessions"

    def journal_path(self, session: str) -> Path:
        return Path(self.state_dir).expanduser() / "journals" / f"{session}.jsonl"

    def sessions_path(self) -> Path:
        return Path(self.sessions_dir).expanduser()


@dataclass(slots=True)
class DefinitionsConfig:
    directory: str = "~/.agent-fleet/agents"
    cache_ttl_seconds: float = 5.0
    default_tools: str = "read,grep,find,ls"
    default_model: str = "openrouter/google/gemini-3-flash-preview"

    def directory_path(self) -> Path:
        return Path(self.directory).expanduser()


@dataclass(slots=True)
class FleetConfig:
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    orchestration: OrchestrationConfig = field(default_factory=OrchestrationConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    definitions: DefinitionsConfig = field(default_factory=DefinitionsConfig)

    @classmethod
    def default(cls) -> FleetConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FleetConfig:
        return cls(
            runner=RunnerConfig(**data.get("runner", {})),
            orchestration=OrchestrationConfig(**data.get("orchestration", {})),
            persistence=PersistenceConfig(**data.get("persistence", {})),
            definitions=DefinitionsConfig(**data.get("definitions", {})),
        )

    def to_dict(self) -> dict:
        return {
            "runner": {
                "binary": self.runner.binary,
                "tick_seconds": self.runner.tick_seconds,
                "depth_env_var": self.runner.depth_env_var,
            },
            "orchestration": {
                "stagger_seconds": self.orchestration.stagger_seconds,
                "priority": list(self.orchestration.priority),
            },
            "persistence": {
                "debounce_seconds": self.persistence.debounce_seconds,
                "state_dir": self.persistence.state_dir,
                "sessions_dir": self.persistence.sessions_dir,
            },
            "definitions": {
                "directory": self.definitions.directory,
                "cache_ttl_seconds": self.definitions.cache_ttl_seconds,
                "default_tools": self.definitions.default_tools,
                "default_model": self.definitions.default_model,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FleetConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["runner", "orchestration", "persistence", "definitions"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FleetConfig:
    if not path.exists():
        return FleetConfig.default()
    return FleetConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: FleetConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
