"""Early termination once critical fields are confidently agreed on."""

import threading
from collections.abc import Callable, Iterable

from invoice_core.artifacts.models import CandidateArtifact, OcrArtifact
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)


class EarlyStopMonitor:
    """Tracks agreement on critical fields as OCR artifacts arrive.

    A field is settled once one value has been proposed at or above the
    confidence threshold by ``min_sources`` distinct sources. Each OCR
    artifact is one source, and so is a page's native text layer.

    Args:
        critical_fields: Fields that must all be settled.
        threshold: Minimum candidate confidence (0-100) that counts.
        min_sources: Distinct sources required to agree.
        propose: Turns one OCR artifact into field candidates.
    """

    def __init__(
        self,
        critical_fields: Iterable[str],
        threshold: int,
        min_sources: int,
        propose: Callable[[OcrArtifact], Iterable[CandidateArtifact]],
    ) -> None:
        self.critical_fields = frozenset(critical_fields)
        self.threshold = threshold
        self.min_sources = min_sources
        self._propose = propose
        self._lock = threading.Lock()
        self._support: dict[str, dict[str, set[str]]] = {}
        self._settled: set[str] = set()

    @property
    def satisfied(self) -> bool:
        return bool(self.critical_fields) and self.critical_fields <= self._settled

    def settled_fields(self) -> set[str]:
        return set(self._settled)

    def seed(self, candidates: Iterable[CandidateArtifact]) -> bool:
        """Count candidates available before recognition starts."""
        return self._add(candidates)

    def observe(self, artifact: OcrArtifact) -> bool:
        """Fold in a finished OCR artifact.

        Returns:
            True when every critical field is now settled.
        """
        return self._add(self._propose(artifact))

    def _add(self, candidates: Iterable[CandidateArtifact]) -> bool:
        with self._lock:
            already = self.satisfied
            for c in candidates:
                if c.field_name not in self.critical_fields or c.confidence < self.threshold:
                    continue
                sources = self._support.setdefault(c.field_name, {}).setdefault(c.value, set())
                sources.add(c.source_id)
                if len(sources) >= self.min_sources:
                    self._settled.add(c.field_name)
            done = self.satisfied
        if done and not already:
            logger.info("Critical fields settled: %s", ", ".join(sorted(self.critical_fields)))
        return done
