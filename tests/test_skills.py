"""Tests for skill loading and the capability registry."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from ultrawork.skills import (
    CapabilityDescriptor,
    CapabilityRegistry,
    load_skill_file,
    parse_skill_md,
    read_skill_body,
    scan_skill_root,
)

PDF_SKILL = """---
name: pdf-tools
description: >
  Extract text and tables
  from PDF documents
version: 1.2.0
---
# PDF tools

Use pdfplumber for tables.
"""

NOTES_SKILL = """---
name: release-notes
description: Draft release notes from merged changes
---
Group entries by component.
"""


@pytest.fixture
def skill_root(tmp_path: Path) -> Path:
    root = tmp_path / "skills"
    (root / "pdf").mkdir(parents=True)
    (root / "pdf" / "SKILL.md").write_text(PDF_SKILL)
    (root / "release-notes.md").write_text(NOTES_SKILL)
    (root / "broken.md").write_text("no frontmatter here")
    (root / "readme.txt").write_text("ignored")
    (root / "empty-dir").mkdir()
    return root


class TestLoader:
    def test_parse_frontmatter(self):
        frontmatter, body = parse_skill_md(NOTES_SKILL)
        assert frontmatter["name"] == "release-notes"
        assert body == "Group entries by component."

    def test_parse_requires_frontmatter(self):
        with pytest.raises(ValueError):
            parse_skill_md("# Just markdown")

    def test_parse_rejects_non_mapping(self):
        with pytest.raises(ValueError):
            parse_skill_md("---\n- a\n- b\n---\nbody")

    def test_load_skill_file(self, skill_root: Path):
        skill = load_skill_file(skill_root / "pdf" / "SKILL.md")
        assert skill.name == "pdf-tools"
        assert skill.description == "Extract text and tables from PDF documents"
        assert skill.version == "1.2.0"
        assert skill.size_hint > 0

    def test_missing_description(self, tmp_path: Path):
        path = tmp_path / "bad.md"
        path.write_text("---\nname: bad\n---\nbody")
        with pytest.raises(ValueError, match="description"):
            load_skill_file(path)

    def test_scan_skips_broken_entries(self, skill_root: Path):
        names = [s.name for s in scan_skill_root(skill_root)]
        assert names == ["pdf-tools", "release-notes"]

    def test_unreadable_root_is_skipped(self, skill_root: Path, monkeypatch: pytest.MonkeyPatch):
        def denied(self):
            raise PermissionError(f"Permission denied: '{self}'")

        monkeypatch.setattr(Path, "iterdir", denied)
        assert scan_skill_root(skill_root) == []

    def test_scan_missing_root(self, tmp_path: Path):
        assert scan_skill_root(tmp_path / "nope") == []

    def test_read_body(self, skill_root: Path):
        body = read_skill_body(skill_root / "pdf" / "SKILL.md")
        assert body.startswith("# PDF tools")


class TestCapabilityDescriptor:
    def test_content_loaded_once(self):
        calls = []

        def content() -> str:
            calls.append(1)
            return "body"

        descriptor = CapabilityDescriptor("review", "Review code", content_fn=content)
        assert not descriptor.loaded
        assert descriptor.load_content() == "body"
        assert descriptor.load_content() == "body"
        assert descriptor.loaded
        assert len(calls) == 1

    def test_concurrent_loads_read_once(self):
        calls = []
        barrier = threading.Barrier(4)

        def content() -> str:
            calls.append(1)
            return "body"

        descriptor = CapabilityDescriptor("review", "Review code", content_fn=content)

        def load() -> None:
            barrier.wait()
            descriptor.load_content()

        threads = [threading.Thread(target=load) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(calls) == 1

    def test_locator_body(self, skill_root: Path):
        descriptor = CapabilityDescriptor("pdf-tools", "PDF", locator=skill_root / "pdf" / "SKILL.md")
        assert "pdfplumber" in descriptor.load_content()

    def test_to_dict(self):
        data = CapabilityDescriptor("review", "Review code").to_dict()
        assert data == {
            "name": "review",
            "description": "Review code",
            "locator": None,
            "size_hint": 0,
            "loaded": False,
        }


class TestCapabilityRegistry:
    def test_lazy_warm_up(self, skill_root: Path):
        registry = CapabilityRegistry([skill_root])
        assert not registry.warm
        snapshot = registry.snapshot()
        assert registry.warm
        assert snapshot.version == 1
        assert {d.name for d in snapshot} == {"pdf-tools", "release-notes"}
        assert registry.snapshot() is snapshot

    def test_scan_does_not_load_bodies(self, skill_root: Path):
        snapshot = CapabilityRegistry([skill_root]).snapshot()
        assert not any(d.loaded for d in snapshot)

    def test_refresh_publishes_new_version(self, skill_root: Path):
        registry = CapabilityRegistry([skill_root])
        first = registry.snapshot()

        (skill_root / "extra.md").write_text("---\nname: extra\ndescription: Extra skill\n---\n")
        second = registry.refresh()

        assert second.version == first.version + 1
        assert second.get("extra") is not None
        assert first.get("extra") is None
        assert len(first) == 2

    def test_snapshot_is_read_only(self, skill_root: Path):
        snapshot = CapabilityRegistry([skill_root]).snapshot()
        with pytest.raises(TypeError):
            snapshot.descriptors["new"] = CapabilityDescriptor("new", "new")  # type: ignore[index]

    def test_first_duplicate_wins(self, tmp_path: Path, skill_root: Path):
        other = tmp_path / "other"
        other.mkdir()
        (other / "pdf.md").write_text("---\nname: pdf-tools\ndescription: Shadow copy\n---\n")

        snapshot = CapabilityRegistry([skill_root, other]).snapshot()
        assert snapshot.get("pdf-tools").description.startswith("Extract text")

    def test_seeds(self):
        seed = CapabilityDescriptor("review", "Review code", content_fn=lambda: "checklist")
        snapshot = CapabilityRegistry(seeds=[seed]).snapshot()
        assert snapshot.get("review") is seed

    def test_stats(self, skill_root: Path):
        registry = CapabilityRegistry([skill_root])
        registry.snapshot().get("pdf-tools").load_content()
        stats = registry.get_stats()
        assert stats["count"] == 2
        assert stats["loaded"] == 1
        assert stats["warm"] is True
