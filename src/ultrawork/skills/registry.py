"""Capability Registry - versioned, read-mostly catalogue of skills."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType

from .loader import read_skill_body, scan_skill_root

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class CapabilityDescriptor:
    """
    Named capability. Only name and description are held eagerly; the body
    is read on first load_content() call and cached.
    """

    name: str
    description: str
    locator: Path | None = None
    size_hint: int = 0
    content_fn: Callable[[], str] | None = None
    _content: str | None = field(default=None, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def loaded(self) -> bool:
        return self._content is not None

    def load_content(self) -> str:
        """Read the capability body. Idempotent; reads at most once."""
        if self._content is not None:
            return self._content
        with self._lock:
            if self._content is None:
                if self.content_fn is not None:
                    body = self.content_fn()
                elif self.locator is not None:
                    body = read_skill_body(self.locator)
                else:
                    body = ""
                self._content = body
                logger.debug("Loaded capability %s (%d chars)", self.name, len(body))
        return self._content

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "description": self.description,
            "locator": str(self.locator) if self.locator else None,
            "size_hint": self.size_hint,
            "loaded": self.loaded,
        }


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of the registry at one version."""

    version: int
    descriptors: Mapping[str, CapabilityDescriptor]

    def __len__(self) -> int:
        return len(self.descriptors)

    def __iter__(self):
        return iter(self.descriptors.values())

    def get(self, name: str) -> CapabilityDescriptor | None:
        return self.descriptors.get(name)


EMPTY_SNAPSHOT = RegistrySnapshot(version=0, descriptors=MappingProxyType({}))


class CapabilityRegistry:
    """
    Scans skill roots and publishes immutable snapshots.

    Readers always see a complete snapshot; refresh() builds a new one and
    swaps it in under a lock, leaving the previous snapshot untouched.
    """

    def __init__(
        self,
        roots: Iterable[Path] = (),
        seeds: Iterable[CapabilityDescriptor] = (),
    ) -> None:
        self.roots = [Path(r) for r in roots]
        self.seeds = list(seeds)
        self._snapshot = EMPTY_SNAPSHOT
        self._warm = False
        self._lock = threading.Lock()

    @property
    def warm(self) -> bool:
        return self._warm

    def _scan(self) -> dict[str, CapabilityDescriptor]:
        found: dict[str, CapabilityDescriptor] = {}
        for seed in self.seeds:
            found.setdefault(seed.name, seed)

        for root in self.roots:
            for skill in scan_skill_root(root):
                if skill.name in found:
                    logger.warning(
                        "Duplicate capability %s at %s; keeping the first one", skill.name, skill.path
                    )
                    continue
                found[skill.name] = CapabilityDescriptor(
                    name=skill.name,
                    description=skill.description,
                    locator=skill.path,
                    size_hint=skill.size_hint,
                )
        return found

    def refresh(self) -> RegistrySnapshot:
        """Rescan all roots and publish a new snapshot version."""
        descriptors = self._scan()
        with self._lock:
            self._snapshot = RegistrySnapshot(
                version=self._snapshot.version + 1,
                descriptors=MappingProxyType(descriptors),
            )
            self._warm = True
            snapshot = self._snapshot
        logger.info("Capability registry v%d: %d capabilities", snapshot.version, len(snapshot))
        return snapshot

    def snapshot(self) -> RegistrySnapshot:
        """Current snapshot, scanning on first use."""
        if not self._warm:
            return self.refresh()
        return self._snapshot

    def get_stats(self) -> dict[str, object]:
        snap = self._snapshot
        return {
            "version": snap.version,
            "warm": self._warm,
            "count": len(snap),
            "loaded": sum(1 for d in snap if d.loaded),
            "roots": [str(r) for r in self.roots],
        }
