"""Consensus resolution of field candidates into one value per field.

For each field the value group with the strongest trust-weighted
candidate wins. Its confidence starts from that candidate and gains a
boost for every further independent source (a different OCR artifact
or the text layer) agreeing on the same normalized value. Cross-field
rules then attach flags whose penalties lower confidence, and the result
is calibrated before it is committed to the store.
"""

from dataclasses import dataclass

from invoice_core.artifacts.models import (
    Alternative,
    CandidateArtifact,
    EvidenceRef,
    ResolvedArtifact,
    Severity,
    ValidationFlag,
)
from invoice_core.artifacts.store import ArtifactStore
from invoice_core.calibration.calibrator import IDENTITY_SCOPE, ConfidenceCalibrator
from invoice_core.extraction.candidates import ExtractionResult
from invoice_core.extraction.lexicon import Lexicon
from invoice_core.resolution.rules import RulesEngine
from invoice_core.utils.config import ResolutionConfig
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class FieldChoice:
    """Provisional winner for one field before validation."""

    field_name: str
    value: str
    best: CandidateArtifact
    supporting: list[CandidateArtifact]
    sources: int
    base: int
    boost: int
    alternatives: list[Alternative]

    @property
    def confidence(self) -> int:
        return min(100, self.base + self.boost)


class FieldResolver:
    """Turns ranked candidates into committed :class:`ResolvedArtifact` values.

    Args:
        config: Resolution configuration.
        store: Artifact store candidates and results are written to.
        rules: Cross-field validation rules.
        calibrator: Maps raw confidence to calibrated confidence.
    """

    def __init__(
        self,
        config: ResolutionConfig,
        store: ArtifactStore,
        rules: RulesEngine,
        calibrator: ConfidenceCalibrator | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.rules = rules
        self.calibrator = calibrator

    def choose(self, field_name: str, candidates: list[CandidateArtifact]) -> FieldChoice | None:
        """Pick the winning value for a field and compute its consensus.

        Args:
            field_name: Field being resolved.
            candidates: Every candidate for the field, ranked or not.

        Returns:
            The choice, or ``None`` when there are no candidates.
        """
        if not candidates:
            return None
        groups: dict[str, list[CandidateArtifact]] = {}
        for candidate in candidates:
            groups.setdefault(candidate.value, []).append(candidate)

        def strength(item: tuple[str, list[CandidateArtifact]]):
            value, members = item
            top = max(members, key=lambda c: (c.weighted_score, c.confidence))
            return (-top.weighted_score, -len({c.source_id for c in members}), -top.confidence, value)

        ordered = sorted(groups.items(), key=strength)
        value, members = ordered[0]
        members = sorted(members, key=lambda c: (-c.weighted_score, -c.confidence, c.artifact_id))
        best = members[0]
        sources = len({c.source_id for c in members})
        boost = min(self.config.consensus_increment * (sources - 1), self.config.consensus_max_boost)

        alternatives = []
        for other_value, others in ordered[1 : 1 + self.config.max_alternatives]:
            top = min(others, key=lambda c: (-c.weighted_score, -c.confidence, c.artifact_id))
            alternatives.append(Alternative(other_value, top.confidence, top.artifact_id))

        return FieldChoice(
            field_name=field_name,
            value=value,
            best=best,
            supporting=members,
            sources=sources,
            base=max(c.confidence for c in members),
            boost=boost,
            alternatives=alternatives,
        )

    def resolve(
        self,
        document_id: str,
        extraction: ExtractionResult,
        lexicon: Lexicon,
        run: int | None = None,
        calibration_bucket: str | None = None,
    ) -> dict[str, ResolvedArtifact]:
        """Resolve and commit every field of a document for one run.

        Args:
            document_id: Document being resolved.
            extraction: Ranked candidates from the extractor.
            lexicon: Vocabulary used by the validation rules.
            run: Run number; defaults to one past the latest committed run.
            calibration_bucket: Vendor bucket for calibration, if known.

        Returns:
            Committed resolved artifacts keyed by field name.

        Raises:
            DuplicateResolutionError: If this run was already resolved.
        """
        previous = self.store.resolved_for(document_id)
        if run is None:
            run = self.store.latest_run(document_id) + 1

        for candidate in extraction.all_candidates():
            self.store.put(candidate)

        choices: dict[str, FieldChoice | None] = {}
        for field_name in extraction.ranked:
            pool = extraction.ranked[field_name] + extraction.deprioritized.get(field_name, [])
            choices[field_name] = self.choose(field_name, pool)

        values = {name: (choice.value if choice else None) for name, choice in choices.items()}
        report = self.rules.validate(values, lexicon)

        resolved: dict[str, ResolvedArtifact] = {}
        for field_name, choice in choices.items():
            flags = report.for_field(field_name)
            prior = previous.get(field_name)
            artifact = self._build(
                document_id,
                run,
                field_name,
                choice,
                flags,
                prior.artifact_id if prior else None,
                calibration_bucket,
            )
            resolved[field_name] = self.store.commit_resolved(artifact)

        flagged = sum(1 for r in resolved.values() if r.severity != Severity.NONE)
        logger.info(
            "Resolved %d fields for run %d (%d unresolved, %d flagged)",
            len(resolved),
            run,
            sum(1 for r in resolved.values() if r.unresolved),
            flagged,
        )
        return resolved

    def _build(
        self,
        document_id: str,
        run: int,
        field_name: str,
        choice: FieldChoice | None,
        flags: tuple[ValidationFlag, ...],
        supersedes: str | None,
        calibration_bucket: str | None,
    ) -> ResolvedArtifact:
        if choice is None:
            flags = (
                ValidationFlag("zero_evidence", Severity.WARNING, f"No candidates found for {field_name}"),
            ) + flags
            return ResolvedArtifact(
                document_id=document_id,
                run=run,
                field_name=field_name,
                value=None,
                raw_confidence=0,
                confidence=0,
                evidence=(),
                flags=flags,
                explanation=f"No candidates were found for {field_name}; left unresolved.",
                unresolved=True,
                supersedes=supersedes,
            )

        penalty = sum(f.penalty for f in flags)
        raw = max(0, choice.confidence - penalty)
        confidence, scope = raw, IDENTITY_SCOPE
        if self.calibrator is not None:
            confidence, scope = self.calibrator.calibrate(raw, calibration_bucket)

        evidence = tuple(
            EvidenceRef(c.artifact_id, c.source_id, c.method, c.trust_weight)
            for c in choice.supporting
        )
        return ResolvedArtifact(
            document_id=document_id,
            run=run,
            field_name=field_name,
            value=choice.value,
            raw_confidence=raw,
            confidence=confidence,
            evidence=evidence,
            alternatives=tuple(choice.alternatives),
            flags=flags,
            explanation=explain(choice, flags, raw, confidence, scope),
            supersedes=supersedes,
            calibration_scope=scope,
        )


def explain(
    choice: FieldChoice,
    flags: tuple[ValidationFlag, ...],
    raw: int,
    confidence: int,
    scope: str,
) -> str:
    """Plain-language account of how a value and its confidence were reached."""
    best = choice.best
    parts = [
        f"Chose '{choice.value}' from {best.method.value}"
        + (f" ({best.detail})" if best.detail else "")
        + "."
    ]
    parts.append(f"Strongest supporting read has confidence {choice.base}.")
    if choice.sources > 1:
        parts.append(f"{choice.sources} independent sources agree, adding {choice.boost}.")
    else:
        parts.append("Only one source supports it.")
    for flag in flags:
        parts.append(f"{flag.severity.value.capitalize()}: {flag.message} (-{flag.penalty}).")
    if choice.alternatives:
        listed = ", ".join(f"'{a.value}' ({a.confidence})" for a in choice.alternatives)
        parts.append(f"Alternatives: {listed}.")
    if scope != IDENTITY_SCOPE and confidence != raw:
        parts.append(f"Calibrated from {raw} to {confidence} using the {scope} curve.")
    return " ".join(parts)
