"""
Capability Registry — Skill Discovery and Lazy Loading

Skills live as SKILL.md directories or flat markdown files with YAML
frontmatter. Only names and descriptions are read at scan time; bodies are
loaded when a work order embeds them.
"""

from .loader import SkillFile, load_skill_file, parse_skill_md, read_skill_body, scan_skill_root
from .registry import CapabilityDescriptor, CapabilityRegistry, RegistrySnapshot

__all__ = [
    "CapabilityDescriptor",
    "CapabilityRegistry",
    "RegistrySnapshot",
    "SkillFile",
    "load_skill_file",
    "parse_skill_md",
    "read_skill_body",
    "scan_skill_root",
]
