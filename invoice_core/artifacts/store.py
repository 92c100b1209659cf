"""Content-addressed artifact store with provenance tracking.

Writes take a lock; reads go straight to the underlying dicts. Derived
artifacts expire by TTL and are evicted least-recently-used when the
store is full. Input artifacts are kept for good, and every resolved
artifact pins its whole provenance closure.
"""

import threading
import time
from collections.abc import Callable, Iterable
from typing import Any

import numpy as np

from invoice_core.artifacts.models import (
    Artifact,
    ArtifactKind,
    InputArtifact,
    ResolvedArtifact,
)
from invoice_core.errors import DuplicateResolutionError, UnknownArtifactError
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)


class ArtifactStore:
    """Arena of immutable artifacts keyed by content identity.

    Args:
        ttl_seconds: Lifetime of unpinned derived artifacts.
        max_entries: Soft cap on stored artifacts before LRU eviction.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float = 86400.0,
        max_entries: int = 5000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.RLock()
        self._artifacts: dict[str, Artifact] = {}
        self._payloads: dict[str, np.ndarray] = {}
        self._created: dict[str, float] = {}
        self._accessed: dict[str, float] = {}
        self._children: dict[str, set[str]] = {}
        self._pinned: set[str] = set()
        self._resolved: dict[tuple[str, int, str], str] = {}
        self._superseded_by: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._artifacts)

    def __contains__(self, artifact_id: str) -> bool:
        return artifact_id in self._artifacts

    def put(self, artifact: Artifact, payload: np.ndarray | None = None) -> Artifact:
        """Store an artifact, returning the already-stored one on a repeat.

        Args:
            artifact: Artifact to store.
            payload: Optional pixel data for variants and zones.

        Returns:
            The stored artifact instance.

        Raises:
            UnknownArtifactError: If a parent is not in the store.
        """
        existing = self._artifacts.get(artifact.artifact_id)
        if existing is not None:
            if payload is not None and artifact.artifact_id not in self._payloads:
                with self._lock:
                    self._payloads[artifact.artifact_id] = payload
            self._touch(artifact.artifact_id)
            return existing

        with self._lock:
            for parent in artifact.parents():
                if parent not in self._artifacts:
                    raise UnknownArtifactError(
                        f"Parent {parent[:12]} of {artifact.kind} is not stored",
                        stage="store",
                        artifact_id=artifact.artifact_id,
                    )
            now = self._clock()
            self._artifacts[artifact.artifact_id] = artifact
            self._created[artifact.artifact_id] = now
            self._accessed[artifact.artifact_id] = now
            if payload is not None:
                self._payloads[artifact.artifact_id] = payload
            for parent in artifact.parents():
                self._children.setdefault(parent, set()).add(artifact.artifact_id)
            if len(self._artifacts) > self.max_entries:
                self._evict_lru(len(self._artifacts) - self.max_entries)
        logger.debug("Stored %s %s", artifact.kind, artifact.artifact_id[:12])
        return artifact

    def get(self, artifact_id: str) -> Artifact | None:
        """Look up an artifact without taking the write lock."""
        artifact = self._artifacts.get(artifact_id)
        if artifact is not None:
            self._touch(artifact_id)
        return artifact

    def require(self, artifact_id: str) -> Artifact:
        """Like :meth:`get` but raises when the artifact is missing.

        Raises:
            UnknownArtifactError: If no such artifact is stored.
        """
        artifact = self.get(artifact_id)
        if artifact is None:
            raise UnknownArtifactError(
                "Artifact not found", stage="store", artifact_id=artifact_id
            )
        return artifact

    def payload(self, artifact_id: str) -> np.ndarray | None:
        """Return the pixel payload stored alongside an artifact, if any."""
        return self._payloads.get(artifact_id)

    def children(self, artifact_id: str) -> list[Artifact]:
        """Artifacts directly derived from the given one."""
        ids = list(self._children.get(artifact_id, ()))
        return [a for a in (self._artifacts.get(i) for i in ids) if a is not None]

    def by_kind(self, kind: ArtifactKind) -> list[Artifact]:
        return [a for a in list(self._artifacts.values()) if a.kind == kind]

    def is_pinned(self, artifact_id: str) -> bool:
        return artifact_id in self._pinned

    def commit_resolved(self, resolved: ResolvedArtifact) -> ResolvedArtifact:
        """Store a resolved field value and pin its provenance.

        Only one resolution per (document, run, field) is accepted.

        Args:
            resolved: Resolved artifact to commit.

        Returns:
            The committed artifact.

        Raises:
            DuplicateResolutionError: If the field was already resolved
                in this run.
            UnknownArtifactError: If any evidence is not stored.
        """
        key = (resolved.document_id, resolved.run, resolved.field_name)
        with self._lock:
            if key in self._resolved:
                raise DuplicateResolutionError(
                    f"Field '{resolved.field_name}' already resolved for run {resolved.run}",
                    stage="resolution",
                    artifact_id=self._resolved[key],
                )
            self.put(resolved)
            self._resolved[key] = resolved.artifact_id
            if resolved.supersedes:
                self._superseded_by[resolved.supersedes] = resolved.artifact_id
            self._pinned.update(self.provenance(resolved.artifact_id))
        logger.debug(
            "Committed %s=%r (run %d, confidence %d)",
            resolved.field_name,
            resolved.value,
            resolved.run,
            resolved.confidence,
        )
        return resolved

    def latest_run(self, document_id: str) -> int:
        """Highest committed run number for a document, 0 if none."""
        runs = [run for doc, run, _ in list(self._resolved) if doc == document_id]
        return max(runs, default=0)

    def resolved_for(self, document_id: str, run: int | None = None) -> dict[str, ResolvedArtifact]:
        """Resolved artifacts of one run keyed by field, latest run by default."""
        if run is None:
            run = self.latest_run(document_id)
        result: dict[str, ResolvedArtifact] = {}
        for (doc, r, field_name), artifact_id in list(self._resolved.items()):
            if doc == document_id and r == run:
                result[field_name] = self._artifacts[artifact_id]
        return result

    def history(self, document_id: str, field_name: str) -> list[ResolvedArtifact]:
        """All resolutions of a field across runs, oldest first."""
        items = sorted(
            (r, artifact_id)
            for (doc, r, f), artifact_id in list(self._resolved.items())
            if doc == document_id and f == field_name
        )
        return [self._artifacts[artifact_id] for _, artifact_id in items]

    def superseded_by(self, artifact_id: str) -> str | None:
        return self._superseded_by.get(artifact_id)

    def provenance(self, artifact_id: str) -> set[str]:
        """Ids of the artifact and every ancestor still stored."""
        seen: set[str] = set()
        stack = [artifact_id]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            artifact = self._artifacts.get(current)
            if artifact is None:
                continue
            seen.add(current)
            stack.extend(artifact.parents())
        return seen

    def export_graph(self, root_ids: Iterable[str]) -> dict[str, Any]:
        """Export the provenance subgraph reachable from the given roots.

        Returns:
            Dict with ``nodes`` (artifact dicts) and ``edges``
            (``{"parent", "child"}`` pairs).
        """
        ids: set[str] = set()
        for root in root_ids:
            ids |= self.provenance(root)
        nodes = []
        edges = []
        for artifact_id in sorted(ids):
            artifact = self._artifacts[artifact_id]
            nodes.append(artifact.to_dict())
            for parent in artifact.parents():
                edges.append({"parent": parent, "child": artifact_id})
        return {"nodes": nodes, "edges": edges}

    def evict_expired(self) -> int:
        """Drop unpinned derived artifacts older than the TTL.

        Returns:
            Number of artifacts evicted.
        """
        cutoff = self._clock() - self.ttl_seconds
        with self._lock:
            expired = [
                artifact_id
                for artifact_id, created in list(self._created.items())
                if created < cutoff and self._evictable(artifact_id)
            ]
            for artifact_id in expired:
                self._remove(artifact_id)
        if expired:
            logger.info("Evicted %d expired artifacts", len(expired))
        return len(expired)

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {kind.value: 0 for kind in ArtifactKind}
        for artifact in list(self._artifacts.values()):
            counts[artifact.kind.value] += 1
        counts["pinned"] = len(self._pinned)
        counts["payloads"] = len(self._payloads)
        return counts

    def _touch(self, artifact_id: str) -> None:
        if artifact_id in self._accessed:
            self._accessed[artifact_id] = self._clock()

    def _evictable(self, artifact_id: str) -> bool:
        artifact = self._artifacts.get(artifact_id)
        if artifact is None or isinstance(artifact, (InputArtifact, ResolvedArtifact)):
            return False
        return artifact_id not in self._pinned

    def _evict_lru(self, count: int) -> None:
        candidates = sorted(
            (t, artifact_id)
            for artifact_id, t in list(self._accessed.items())
            if self._evictable(artifact_id)
        )
        for _, artifact_id in candidates[:count]:
            self._remove(artifact_id)
        logger.debug("LRU evicted %d artifacts", min(count, len(candidates)))

    def _remove(self, artifact_id: str) -> None:
        artifact = self._artifacts.pop(artifact_id)
        self._payloads.pop(artifact_id, None)
        self._created.pop(artifact_id, None)
        self._accessed.pop(artifact_id, None)
        self._children.pop(artifact_id, None)
        for parent in artifact.parents():
            siblings = self._children.get(parent)
            if siblings is not None:
                siblings.discard(artifact_id)
