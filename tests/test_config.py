"""Tests for configuration loading."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from ultrawork.config import UltraworkConfig, load_config, write_default_config
from ultrawork.errors import ConfigError


def test_defaults() -> None:
    config = UltraworkConfig()
    assert config.ralph_loop is False
    assert config.max_iterations == 100
    assert config.completion_promise == "DONE"
    assert config.min_confidence == 0.7
    assert config.model_for("research") == "opus"
    assert config.model_for("simple") == "haiku"
    assert config.model_for("unknown") == "sonnet"


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "missing.json") == UltraworkConfig()


def test_malformed_json_is_ignored(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{not json")
    assert load_config(path) == UltraworkConfig()


def test_nested_layout(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps(
            {
                "defaults": {"ralphLoop": True, "maxIterations": 7, "completionPromise": "SHIPPED"},
                "modelRouting": {"research": "sonnet"},
                "learning": {"minConfidence": 0.5},
                "consensus": {"panelSize": 5},
            }
        )
    )
    config = load_config(path)
    assert config.ralph_loop is True
    assert config.max_iterations == 7
    assert config.completion_promise == "SHIPPED"
    assert config.model_for("research") == "sonnet"
    assert config.model_for("simple") == "haiku"
    assert config.min_confidence == 0.5
    assert config.panel_size == 5


@pytest.mark.parametrize(
    "data",
    [
        {"defaults": {"maxIterations": 0}},
        {"defaults": {"maxIterations": True}},
        {"defaults": {"ralphLoop": "false"}},
        {"retention": {"sweepSeconds": 0}},
        {"defaults": {"completionPromise": ""}},
        {"learning": {"minConfidence": 1.5}},
        {"matching": {"topK": "many"}},
        {"consensus": {"panelSize": 4}},
        {"dispatch": {"workerTimeout": 0}},
        {"modelRouting": ["opus"]},
        {"skillPaths": "skills/"},
    ],
)
def test_invalid_values(tmp_path: Path, data: dict) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data))
    with pytest.raises(ConfigError):
        load_config(path)


def test_non_object(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("[1, 2]")
    with pytest.raises(ConfigError):
        load_config(path)


def test_roundtrip() -> None:
    config = UltraworkConfig(force_swarm=True, top_k=5, skill_paths=["/opt/skills"])
    assert UltraworkConfig.from_dict(config.to_dict()) == config


def test_write_default_config(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "config.json"
    assert write_default_config(path) is True
    assert write_default_config(path) is False
    assert load_config(path) == UltraworkConfig()


def test_relative_skill_paths(tmp_path: Path) -> None:
    config = UltraworkConfig(skill_paths=[".agent/skills/", str(tmp_path / "abs")])
    assert config.resolved_skill_paths(cwd=tmp_path) == [tmp_path / ".agent/skills", tmp_path / "abs"]
