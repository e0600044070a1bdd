"""Configuration loading for ~/.agent/ultrawork/config.json."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ultrawork.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".agent" / "ultrawork"
DEFAULT_CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"

DEFAULT_MODEL_ROUTING = {
    "research": "opus",
    "implementation": "sonnet",
    "simple": "haiku",
}

DEFAULT_SKILL_PATHS = ["~/.agent/skills/", ".agent/skills/"]


@dataclass
class UltraworkConfig:
    """Runtime settings. Field defaults mirror the shipped config.json."""

    ralph_loop: bool = False
    max_iterations: int = 100
    completion_promise: str = "DONE"
    force_swarm: bool = False
    enable_skills: bool = True
    model_routing: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_MODEL_ROUTING))
    skill_paths: list[str] = field(default_factory=lambda: list(DEFAULT_SKILL_PATHS))
    learning_enabled: bool = True
    min_confidence: float = 0.7
    top_k: int = 3
    panel_size: int = 3
    consensus_deadline: float = 120.0
    worker_timeout: float = 600.0
    allow_partial: bool = False
    task_retention_seconds: int = 7 * 24 * 3600
    memory_ttl_seconds: int = 30 * 24 * 3600
    memory_sweep_seconds: float = 300.0

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ConfigError(f"maxIterations must be >= 1, got {self.max_iterations}")
        if not self.completion_promise:
            raise ConfigError("completionPromise cannot be empty")
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigError(f"minConfidence must be in [0.0, 1.0], got {self.min_confidence}")
        if self.top_k < 1:
            raise ConfigError(f"topK must be >= 1, got {self.top_k}")
        if self.panel_size < 1 or self.panel_size % 2 == 0:
            raise ConfigError(f"panelSize must be a positive odd number, got {self.panel_size}")
        if self.consensus_deadline <= 0 or self.worker_timeout <= 0 or self.memory_sweep_seconds <= 0:
            raise ConfigError("deadlines and timeouts must be positive")

    def model_for(self, routing_profile: str) -> str:
        """Resolve a routing profile (simple/research/implementation) to a model alias."""
        return self.model_routing.get(routing_profile, self.model_routing.get("implementation", "sonnet"))

    def resolved_skill_paths(self, cwd: Path | None = None) -> list[Path]:
        base = cwd or Path.cwd()
        paths: list[Path] = []
        for raw in self.skill_paths:
            path = Path(raw).expanduser()
            if not path.is_absolute():
                path = base / path
            paths.append(path)
        return paths

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UltraworkConfig:
        """Build a config from the nested JSON layout."""
        defaults = data.get("defaults", {})
        learning = data.get("learning", {})
        matching = data.get("matching", {})
        consensus = data.get("consensus", {})
        dispatch = data.get("dispatch", {})
        retention = data.get("retention", {})

        kwargs: dict[str, Any] = {}
        _pick(kwargs, "ralph_loop", defaults, "ralphLoop", bool)
        _pick(kwargs, "max_iterations", defaults, "maxIterations", int)
        _pick(kwargs, "completion_promise", defaults, "completionPromise", str)
        _pick(kwargs, "force_swarm", defaults, "forceSwarm", bool)
        _pick(kwargs, "enable_skills", defaults, "enableSkills", bool)
        _pick(kwargs, "learning_enabled", learning, "enabled", bool)
        _pick(kwargs, "min_confidence", learning, "minConfidence", float)
        _pick(kwargs, "top_k", matching, "topK", int)
        _pick(kwargs, "panel_size", consensus, "panelSize", int)
        _pick(kwargs, "consensus_deadline", consensus, "deadlineSeconds", float)
        _pick(kwargs, "worker_timeout", dispatch, "workerTimeout", float)
        _pick(kwargs, "allow_partial", dispatch, "allowPartial", bool)
        _pick(kwargs, "task_retention_seconds", retention, "taskSeconds", int)
        _pick(kwargs, "memory_ttl_seconds", retention, "memoryTtlSeconds", int)
        _pick(kwargs, "memory_sweep_seconds", retention, "sweepSeconds", float)

        routing = data.get("modelRouting")
        if routing is not None:
            if not isinstance(routing, dict):
                raise ConfigError("modelRouting must be an object")
            kwargs["model_routing"] = {**DEFAULT_MODEL_ROUTING, **{str(k): str(v) for k, v in routing.items()}}

        skill_paths = data.get("skillPaths")
        if skill_paths is not None:
            if not isinstance(skill_paths, list):
                raise ConfigError("skillPaths must be a list")
            kwargs["skill_paths"] = [str(p) for p in skill_paths]

        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the nested JSON layout."""
        return {
            "version": "1.0.0",
            "defaults": {
                "ralphLoop": self.ralph_loop,
                "maxIterations": self.max_iterations,
                "completionPromise": self.completion_promise,
                "forceSwarm": self.force_swarm,
                "enableSkills": self.enable_skills,
            },
            "modelRouting": dict(self.model_routing),
            "skillPaths": list(self.skill_paths),
            "learning": {
                "enabled": self.learning_enabled,
                "minConfidence": self.min_confidence,
            },
            "matching": {"topK": self.top_k},
            "consensus": {
                "panelSize": self.panel_size,
                "deadlineSeconds": self.consensus_deadline,
            },
            "dispatch": {
                "workerTimeout": self.worker_timeout,
                "allowPartial": self.allow_partial,
            },
            "retention": {
                "taskSeconds": self.task_retention_seconds,
                "memoryTtlSeconds": self.memory_ttl_seconds,
                "sweepSeconds": self.memory_sweep_seconds,
            },
        }


def _pick(
    kwargs: dict[str, Any],
    name: str,
    section: dict[str, Any],
    key: str,
    kind: type,
) -> None:
    if key not in section:
        return
    value = section[key]
    # flags must be real booleans, and bool (an int subclass) is no number
    if (kind is bool) != isinstance(value, bool):
        raise ConfigError(f"{key} must be {kind.__name__}, got {value!r}")
    try:
        kwargs[name] = kind(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be {kind.__name__}, got {value!r}") from exc


def load_config(path: Path | None = None) -> UltraworkConfig:
    """
    Load configuration from disk.

    A missing file yields the defaults. Malformed JSON is logged and ignored;
    well-formed JSON with invalid values raises ConfigError.
    """
    config_file = path or DEFAULT_CONFIG_PATH
    if not config_file.exists():
        return UltraworkConfig()

    try:
        data = json.loads(config_file.read_text())
    except json.JSONDecodeError as exc:
        logger.warning("Ignoring malformed config %s: %s", config_file, exc)
        return UltraworkConfig()

    if not isinstance(data, dict):
        raise ConfigError(f"{config_file} must contain a JSON object")
    return UltraworkConfig.from_dict(data)


def write_default_config(path: Path | None = None) -> bool:
    """Write the default config file. Returns False if one already exists."""
    config_file = path or DEFAULT_CONFIG_PATH
    if config_file.exists():
        return False
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(UltraworkConfig().to_dict(), indent=2) + "\n")
    return True
