"""Skill file loading.

Supports SKILL.md directories and flat ``*.md`` files, both carrying YAML
frontmatter with ``name`` and ``description``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

LOGGER = logging.getLogger(__name__)

FRONTMATTER = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n(.*))?$", re.DOTALL)


@dataclass(frozen=True)
class SkillFile:
    """Frontmatter metadata of one skill file. The body is not kept."""

    name: str
    description: str
    path: Path
    version: str = "0.1.0"
    size_hint: int = 0


def parse_skill_md(content: str) -> tuple[dict[str, Any], str]:
    """Parse skill markdown into frontmatter and body.

    Raises:
        ValueError: If frontmatter is missing or invalid
    """
    match = FRONTMATTER.match(content)
    if not match:
        raise ValueError("skill file must start with YAML frontmatter (--- ... ---)")

    try:
        frontmatter = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML frontmatter: {e}") from e

    if not isinstance(frontmatter, dict):
        raise ValueError("Frontmatter must be a YAML dictionary")

    return frontmatter, (match.group(2) or "").strip()


def load_skill_file(path: Path) -> SkillFile:
    """Read the frontmatter of a skill file."""
    content = path.read_text(encoding="utf-8")
    frontmatter, _ = parse_skill_md(content)

    for required in ("name", "description"):
        value = frontmatter.get(required)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{path} missing required field '{required}'")

    return SkillFile(
        name=frontmatter["name"].strip(),
        description=" ".join(frontmatter["description"].split()),
        path=path,
        version=str(frontmatter.get("version", "0.1.0")),
        size_hint=len(content.encode("utf-8")),
    )


def read_skill_body(path: Path) -> str:
    """Read the markdown body of a skill file (progressive loading)."""
    if not path.exists():
        raise FileNotFoundError(f"skill file not found: {path}")
    _, body = parse_skill_md(path.read_text(encoding="utf-8"))
    return body


def scan_skill_root(root: Path) -> list[SkillFile]:
    """Load every skill under one root, in a stable order.

    Broken entries are skipped with a warning.
    """
    skills: list[SkillFile] = []
    if not root.is_dir():
        return skills

    try:
        candidates = sorted(root.iterdir())
    except OSError as e:
        LOGGER.warning("Cannot list skill root %s: %s", root, e)
        return skills

    for candidate in candidates:
        if candidate.is_dir():
            path = candidate / "SKILL.md"
            if not path.exists():
                continue
        elif candidate.is_file() and candidate.suffix == ".md":
            path = candidate
        else:
            continue

        try:
            skills.append(load_skill_file(path))
            LOGGER.debug("Loaded skill from %s", path)
        except (OSError, UnicodeDecodeError, ValueError) as e:
            LOGGER.warning("Failed to load %s: %s", path, e)

    return skills
