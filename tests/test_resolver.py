"""Tests for consensus field resolution."""

from datetime import date

import pytest

from invoice_core.artifacts.models import (
    CandidateArtifact,
    ExtractionMethod,
    InputArtifact,
    Severity,
)
from invoice_core.artifacts.store import ArtifactStore
from invoice_core.errors import DuplicateResolutionError
from invoice_core.extraction.candidates import ExtractionResult
from invoice_core.extraction.lexicon import default_lexicon
from invoice_core.resolution.resolver import FieldResolver
from invoice_core.resolution.rules import RulesEngine
from invoice_core.utils.config import ResolutionConfig


class TestFieldResolver:
    """Tests for FieldResolver."""

    def setup_method(self) -> None:
        self.store = ArtifactStore()
        self.sources = [
            self.store.put(InputArtifact(b"page", "doc-1", page_index=i)).artifact_id for i in range(5)
        ]
        self.rules = RulesEngine.default(today=lambda: date(2024, 6, 1))
        self.resolver = FieldResolver(ResolutionConfig(), self.store, self.rules)
        self.lexicon = default_lexicon()

    def _candidate(
        self,
        value: str,
        source: int = 0,
        confidence: int = 70,
        field_name: str = "total",
        method: ExtractionMethod = ExtractionMethod.LABEL_PROXIMITY,
    ) -> CandidateArtifact:
        weights = {
            ExtractionMethod.NATIVE_TEXT_LAYER: 1.0,
            ExtractionMethod.REGEX: 0.8,
            ExtractionMethod.ZONE_PRIOR: 0.6,
        }
        return CandidateArtifact(
            field_name=field_name,
            raw_span=value,
            normalized_value=value,
            method=method,
            trust_weight=weights.get(method, 0.9),
            confidence=confidence,
            source_id=self.sources[source],
        )

    def _resolve(self, candidates: list[CandidateArtifact], run: int | None = None):
        ranked: dict[str, list[CandidateArtifact]] = {}
        for candidate in candidates:
            ranked.setdefault(candidate.field_name, []).append(candidate)
        extraction = ExtractionResult(ranked=ranked, deprioritized={name: [] for name in ranked})
        return self.resolver.resolve("doc-1", extraction, self.lexicon, run=run)

    def test_consensus_is_monotone_and_capped(self) -> None:
        confidences = []
        for agreeing in range(1, 5):
            choice = self.resolver.choose("total", [self._candidate("110.00", s) for s in range(agreeing)])
            confidences.append(choice.confidence)
        assert confidences == [70, 80, 90, 90]

    def test_trusted_low_confidence_read_does_not_lower_result(self) -> None:
        prior = self._candidate("ACME Corp", 0, 100, "vendor_name", ExtractionMethod.ZONE_PRIOR)
        alone = self.resolver.choose("vendor_name", [prior])
        native = self._candidate("ACME Corp", 1, 70, "vendor_name", ExtractionMethod.NATIVE_TEXT_LAYER)
        joined = self.resolver.choose("vendor_name", [prior, native])
        assert alone.confidence == 100
        assert joined.confidence >= alone.confidence
        assert joined.best is native
        assert joined.base == 100

        weaker = self._candidate("ACME Corp", 0, 80, "vendor_name", ExtractionMethod.ZONE_PRIOR)
        assert self.resolver.choose("vendor_name", [weaker, native]).confidence == 90

    def test_same_source_does_not_boost(self) -> None:
        choice = self.resolver.choose(
            "total",
            [self._candidate("110.00", 0), self._candidate("110.00", 0, method=ExtractionMethod.REGEX)],
        )
        assert choice.sources == 1
        assert choice.boost == 0

    def test_confidence_capped_at_100(self) -> None:
        choice = self.resolver.choose("total", [self._candidate("110.00", s, 95) for s in range(3)])
        assert choice.confidence == 100

    def test_strongest_weighted_group_wins(self) -> None:
        native = self._candidate("123.45", 0, 95, method=ExtractionMethod.NATIVE_TEXT_LAYER)
        misreads = [self._candidate("123.46", s, 80, method=ExtractionMethod.REGEX) for s in (1, 2)]
        choice = self.resolver.choose("total", [*misreads, native])
        assert choice.value == "123.45"
        assert [a.value for a in choice.alternatives] == ["123.46"]

    def test_alternatives_limited(self) -> None:
        candidates = [self._candidate(f"11{i}.00", i, 90 - i) for i in range(5)]
        choice = self.resolver.choose("total", candidates)
        assert choice.value == "110.00"
        assert [a.value for a in choice.alternatives] == ["111.00", "112.00", "113.00"]

    def test_no_candidates(self) -> None:
        assert self.resolver.choose("total", []) is None

    def test_resolve_commits_with_evidence(self) -> None:
        resolved = self._resolve([self._candidate("110.00", 0, 90), self._candidate("110.00", 1, 85)])
        total = resolved["total"]
        assert total.value == "110.00"
        assert total.confidence == 100
        assert total.run == 1
        assert len(total.evidence) == 2
        for ref in total.evidence:
            assert ref.candidate_id in self.store
            assert ref.source_id in self.sources
        assert self.store.is_pinned(total.artifact_id)
        assert "2 independent sources agree" in total.explanation

    def test_penalties_lower_confidence(self) -> None:
        resolved = self._resolve(
            [
                self._candidate("100.00", 0, 90, field_name="subtotal"),
                self._candidate("10.00", 0, 90, field_name="tax"),
                self._candidate("200.00", 0, 90),
            ]
        )
        total = resolved["total"]
        assert total.raw_confidence == 60
        assert total.confidence == 60
        assert total.severity == Severity.CRITICAL
        assert resolved["subtotal"].confidence == 90
        assert "Critical" in total.explanation

    def test_confidences_in_range(self) -> None:
        resolved = self._resolve([self._candidate("-5.00", 0, 20)])
        total = resolved["total"]
        assert total.raw_confidence == 0
        assert 0 <= total.confidence <= 100

    def test_unresolved_field(self) -> None:
        extraction = ExtractionResult(ranked={"vendor_name": []}, deprioritized={}, unresolved=["vendor_name"])
        vendor = self.resolver.resolve("doc-1", extraction, self.lexicon)["vendor_name"]
        assert vendor.unresolved
        assert vendor.value is None
        assert vendor.confidence == 0
        assert [f.rule for f in vendor.flags] == ["zero_evidence", "vendor_not_placeholder"]

    def test_second_run_supersedes_first(self) -> None:
        first = self._resolve([self._candidate("110.00", 0)])["total"]
        second = self._resolve([self._candidate("110.00", 0), self._candidate("110.00", 1)])["total"]
        assert second.run == 2
        assert second.supersedes == first.artifact_id
        assert self.store.superseded_by(first.artifact_id) == second.artifact_id
        assert second.confidence > first.confidence

    def test_same_run_twice_rejected(self) -> None:
        self._resolve([self._candidate("110.00", 0)], run=1)
        with pytest.raises(DuplicateResolutionError):
            self._resolve([self._candidate("110.00", 1)], run=1)

    def test_uncalibrated_scope_is_identity(self) -> None:
        total = self._resolve([self._candidate("110.00", 0)])["total"]
        assert total.calibration_scope == "identity"
        assert total.confidence == total.raw_confidence
