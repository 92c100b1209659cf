"""End-to-end document pipeline.

Runs one document through every stage:

    Ingested -> Preprocessing -> ZoneDetection -> OcrRunning
    -> CandidateExtraction -> Resolution -> Calibrated

Any stage may end the document in ``Failed`` with the stage and reason.
Transient engine failures are retried inside the orchestrator; a page
that cannot be decoded fails at ``Ingested`` without retry.
"""

import threading
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

import numpy as np

from invoice_core.artifacts.models import (
    BoundingBox,
    InputArtifact,
    OcrArtifact,
    ResolvedArtifact,
    VariantArtifact,
    ZoneArtifact,
    ZoneType,
)
from invoice_core.artifacts.store import ArtifactStore
from invoice_core.calibration.calibrator import ConfidenceCalibrator
from invoice_core.collaborators import InMemoryVendorProfileProvider, ReviewOutcome, VendorProfileProvider
from invoice_core.errors import InvoiceCoreError, UnknownArtifactError
from invoice_core.extraction.candidates import CandidateExtractor
from invoice_core.extraction.lexicon import Lexicon, default_lexicon
from invoice_core.ocr.early_stop import EarlyStopMonitor
from invoice_core.ocr.engines import EngineRegistry, default_registry
from invoice_core.ocr.orchestrator import OcrOrchestrator, OcrRunResult, WorkUnit
from invoice_core.ocr.profiles import ProfileSet
from invoice_core.ocr.retry import Deadline
from invoice_core.preprocessing.filters import rotate_orthogonal
from invoice_core.preprocessing.variants import VariantGenerator, decode_page
from invoice_core.resolution.resolver import FieldResolver
from invoice_core.resolution.rules import RulesEngine
from invoice_core.utils.config import AppConfig, ReloadingYamlSource, load_config
from invoice_core.utils.logger import get_document_logger, setup_logging
from invoice_core.zones.cropper import crop, padded_box
from invoice_core.zones.detector import ZoneDetector
from invoice_core.zones.masking import MaskRegion, MaskRegistry, detect_repeated_strips


class DocumentState(StrEnum):
    """Lifecycle of a document through the pipeline."""

    INGESTED = "Ingested"
    PREPROCESSING = "Preprocessing"
    ZONE_DETECTION = "ZoneDetection"
    OCR_RUNNING = "OcrRunning"
    CANDIDATE_EXTRACTION = "CandidateExtraction"
    RESOLUTION = "Resolution"
    CALIBRATED = "Calibrated"
    FAILED = "Failed"


@dataclass(frozen=True)
class PageInput:
    """One page as handed over by the ingestion collaborator."""

    page_bytes: bytes
    text_layer: str | None = None
    rotation_hint: int | None = None


@dataclass(frozen=True)
class StageFailure:
    stage: DocumentState
    reason: str
    artifact_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"stage": self.stage.value, "reason": self.reason, "artifact_id": self.artifact_id}


class DocumentCancelled(InvoiceCoreError):
    """Processing was cancelled by the caller."""


@dataclass
class DocumentResult:
    """Everything a downstream consumer receives for one document run."""

    document_id: str
    run: int
    state: DocumentState
    resolved: dict[str, ResolvedArtifact] = field(default_factory=dict)
    review_fields: list[str] = field(default_factory=list)
    failure: StageFailure | None = None
    ocr: OcrRunResult | None = None
    provenance: dict[str, Any] = field(default_factory=dict)
    calibration: dict[str, Any] = field(default_factory=dict)
    vendor_fingerprint: str | None = None
    transitions: list[DocumentState] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.state == DocumentState.FAILED

    @property
    def has_critical(self) -> bool:
        return any(r.has_critical for r in self.resolved.values())

    @property
    def auto_approvable(self) -> bool:
        return not self.failed and not self.review_fields

    def values(self) -> dict[str, str | None]:
        return {name: r.value for name, r in self.resolved.items()}

    def to_dict(self) -> dict[str, Any]:
        ocr = None
        if self.ocr is not None:
            ocr = {
                "planned": self.ocr.planned,
                "cache_hits": self.ocr.cache_hits,
                "executed": self.ocr.executed,
                "skipped": self.ocr.skipped,
                "partial": self.ocr.partial,
                "early_stopped": self.ocr.early_stopped,
                "cancelled": self.ocr.cancelled,
                "elapsed_ms": round(self.ocr.elapsed_ms, 1),
                "failures": [f.to_dict() for f in self.ocr.failures],
            }
        return {
            "document_id": self.document_id,
            "run": self.run,
            "state": self.state.value,
            "vendor_fingerprint": self.vendor_fingerprint,
            "fields": {name: r.to_dict() for name, r in self.resolved.items()},
            "review_fields": self.review_fields,
            "auto_approvable": self.auto_approvable,
            "failure": self.failure.to_dict() if self.failure else None,
            "ocr": ocr,
            "provenance": self.provenance,
            "calibration": self.calibration,
            "transitions": [s.value for s in self.transitions],
        }


@dataclass
class _DocumentRecord:
    inputs: list[InputArtifact]
    ocr_ids: list[str]
    vendor_fingerprint: str | None


class _Tracker:
    """State transitions and stage-tagged logging for one document."""

    def __init__(self, document_id: str) -> None:
        self.log = get_document_logger(__name__, document_id)
        self.state = DocumentState.INGESTED
        self.transitions = [DocumentState.INGESTED]
        self.log.set_stage(self.state.value)

    def advance(self, state: DocumentState) -> None:
        self.state = state
        self.transitions.append(state)
        self.log.set_stage(state.value)


class DocumentPipeline:
    """Wires the stages together around one shared artifact store.

    Profiles, lexicon and validation rules are read from the configured
    YAML files and re-read when those files change, unless fixed objects
    are passed in.

    Args:
        config: Application configuration.
        store: Artifact store; a new one is created from the cache config.
        engines: Recognition engines; defaults to Tesseract.
        calibrator: Shared calibrator; a new one is created if omitted.
        vendor_profiles: Vendor-profile collaborator.
        profiles: Fixed OCR profiles instead of the profile file.
        lexicon: Fixed lexicon instead of the lexicon file.
        rules: Fixed validation rules instead of the rules file.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        store: ArtifactStore | None = None,
        engines: EngineRegistry | None = None,
        calibrator: ConfidenceCalibrator | None = None,
        vendor_profiles: VendorProfileProvider | None = None,
        profiles: ProfileSet | None = None,
        lexicon: Lexicon | None = None,
        rules: RulesEngine | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.store = store or ArtifactStore(
            ttl_seconds=self.config.cache.ttl_seconds,
            max_entries=self.config.cache.max_entries,
        )
        self.engines = engines or default_registry()
        self.calibrator = calibrator or ConfidenceCalibrator(self.config.calibration)
        if vendor_profiles is None:
            registry_path = self.config.zones.mask_registry_path
            vendor_profiles = InMemoryVendorProfileProvider(
                MaskRegistry(Path(registry_path) if registry_path else None)
            )
        self.vendor_profiles = vendor_profiles

        paths = self.config.paths
        self._profiles = profiles
        self._lexicon = lexicon
        self._rules = rules
        self._profile_source = ReloadingYamlSource(Path(paths.profiles_path), ProfileSet.from_dict, ProfileSet.default)
        self._lexicon_source = ReloadingYamlSource(Path(paths.lexicon_path), Lexicon.from_dict, default_lexicon)
        self._rules_source = ReloadingYamlSource(Path(paths.rules_path), RulesEngine.from_dict, RulesEngine.default)

        self.variants = VariantGenerator(self.config.variants, self.store)
        self.zones = ZoneDetector(self.config.zones, self.store)
        self.orchestrator = OcrOrchestrator(self.config.orchestrator, self.store, self.engines)
        self._lock = threading.Lock()
        self._active: dict[str, threading.Event] = {}
        self._documents: dict[str, _DocumentRecord] = {}

    @classmethod
    def from_config_file(cls, path: Path | None = None, **collaborators: Any) -> "DocumentPipeline":
        """Load ``configs/config.yaml`` (or ``path``), set up logging and build a pipeline."""
        config = load_config(path)
        setup_logging(config.log_level)
        return cls(config=config, **collaborators)

    @property
    def profiles(self) -> ProfileSet:
        return self._profiles or self._profile_source.get()

    @property
    def rules(self) -> RulesEngine:
        return self._rules or self._rules_source.get()

    def lexicon_for(self, vendor_fingerprint: str | None) -> Lexicon:
        """Universal lexicon with the vendor's overrides layered on top."""
        lexicon = self._lexicon or self._lexicon_source.get()
        if vendor_fingerprint is None:
            return lexicon
        override = self.vendor_profiles.lexicon_overrides(vendor_fingerprint)
        if override:
            lexicon = lexicon.with_vendor_override(vendor_fingerprint, override)
        return lexicon.for_vendor(vendor_fingerprint)

    def process(
        self,
        document_id: str,
        pages: list[PageInput],
        vendor_fingerprint: str | None = None,
    ) -> DocumentResult:
        """Run a document through every stage.

        Args:
            document_id: Caller's identity for the document.
            pages: Page bytes with optional text layers and rotation hints.
            vendor_fingerprint: Vendor identity, when already known.

        Returns:
            The run's result; ``state`` is ``Failed`` if a stage failed.
        """
        tracker = _Tracker(document_id)
        cancel = self._register(document_id)
        tracker.log.info("Processing %d pages (vendor=%s)", len(pages), vendor_fingerprint)
        ocr: OcrRunResult | None = None
        try:
            if not pages:
                raise InvoiceCoreError("Document has no pages", stage=DocumentState.INGESTED.value)
            inputs, images = self._ingest(document_id, pages)

            tracker.advance(DocumentState.PREPROCESSING)
            self._check_cancel(cancel)
            selected, images = self._preprocess(inputs, images)

            tracker.advance(DocumentState.ZONE_DETECTION)
            self._check_cancel(cancel)
            zones_by_variant = self._detect_zones(selected, images, vendor_fingerprint)

            tracker.advance(DocumentState.OCR_RUNNING)
            self._check_cancel(cancel)
            lexicon = self.lexicon_for(vendor_fingerprint)
            extractor = CandidateExtractor(self.config.extraction, lexicon)
            ocr = self._recognize(zones_by_variant, inputs, extractor, vendor_fingerprint, cancel)
            if ocr.cancelled:
                raise DocumentCancelled("Cancelled during recognition", stage=tracker.state.value)

            with self._lock:
                self._documents[document_id] = _DocumentRecord(
                    inputs, [a.artifact_id for a in ocr.artifacts], vendor_fingerprint
                )
            return self._finish(tracker, document_id, inputs, ocr.artifacts, extractor, lexicon, vendor_fingerprint, ocr)
        except InvoiceCoreError as exc:
            return self._fail(tracker, document_id, exc, vendor_fingerprint, ocr)
        finally:
            with self._lock:
                self._active.pop(document_id, None)

    def reprocess_region(
        self,
        document_id: str,
        region: BoundingBox,
        zone_type: ZoneType = ZoneType.HEADER_FIELDS,
        page_index: int = 0,
        profile_names: list[str] | None = None,
    ) -> DocumentResult:
        """Re-recognize one region of an already processed document.

        The new OCR output is combined with the previous run's and
        resolved as a new run that supersedes the old one.

        Args:
            document_id: A document processed earlier by this pipeline.
            region: Area to re-read, in original page coordinates.
            zone_type: How the region should be treated for extraction.
            page_index: Page the region is on.
            profile_names: Profiles to run; the zone type's defaults otherwise.

        Returns:
            The new run's result.

        Raises:
            UnknownArtifactError: If the document was never processed.
        """
        with self._lock:
            record = self._documents.get(document_id)
        if record is None:
            raise UnknownArtifactError(f"Document {document_id} has not been processed", stage="reprocess")

        tracker = _Tracker(document_id)
        vendor = record.vendor_fingerprint
        page = next((i for i in record.inputs if i.page_index == page_index), None)
        if page is None:
            raise UnknownArtifactError(f"Document {document_id} has no page {page_index}", stage="reprocess")
        cancel = self._register(document_id)
        ocr: OcrRunResult | None = None
        try:
            image = decode_page(page.page_bytes, page.artifact_id)
            tracker.advance(DocumentState.PREPROCESSING)
            variant_set = self.variants.generate(page, image)
            original = next(v for v in variant_set.ranked if v.is_original)
            pixels = self.store.payload(original.artifact_id)

            tracker.advance(DocumentState.ZONE_DETECTION)
            box = region.clip(original.width, original.height)
            crop_box = padded_box(box, self.config.zones.zone_padding, original.width, original.height)
            zone = ZoneArtifact(
                variant_id=original.artifact_id,
                zone_type=zone_type,
                bbox=box,
                crop_box=crop_box,
                confidence=1.0,
            )
            zone = self.store.put(zone, payload=crop(pixels, crop_box))

            tracker.advance(DocumentState.OCR_RUNNING)
            if profile_names:
                chosen = [self.profiles.get(name) for name in profile_names]
            else:
                chosen = self.profiles.profiles_for(zone_type, vendor)
            units = [WorkUnit(original, zone, profile, 0, order) for order, profile in enumerate(chosen)]
            ocr = self.orchestrator.run(units, cancel=cancel)
            if ocr.cancelled:
                raise DocumentCancelled("Cancelled during recognition", stage=tracker.state.value)

            previous = [a for a in (self.store.get(i) for i in record.ocr_ids) if isinstance(a, OcrArtifact)]
            combined = {a.artifact_id: a for a in previous + ocr.artifacts}
            artifacts = [combined[k] for k in sorted(combined)]
            with self._lock:
                record.ocr_ids = list(combined)
            tracker.log.info("Re-read %s with %d profiles", box.to_dict(), len(units))
            lexicon = self.lexicon_for(vendor)
            extractor = CandidateExtractor(self.config.extraction, lexicon)
            return self._finish(tracker, document_id, record.inputs, artifacts, extractor, lexicon, vendor, ocr)
        except InvoiceCoreError as exc:
            return self._fail(tracker, document_id, exc, vendor, ocr)
        finally:
            with self._lock:
                self._active.pop(document_id, None)

    def cancel(self, document_id: str) -> bool:
        """Ask an in-flight document to stop; running OCR calls still finish.

        Returns:
            True if the document was being processed.
        """
        with self._lock:
            event = self._active.get(document_id)
        if event is None:
            return False
        event.set()
        return True

    def record_outcome(self, outcome: ReviewOutcome) -> None:
        """Feed a review verdict to the calibrator."""
        self.calibrator.record_outcome(outcome)

    def remember_masks(self, vendor_fingerprint: str, regions: list[BoundingBox], width: int, height: int) -> None:
        """Store user-drawn pixel rectangles as masks for a vendor."""
        masks = [MaskRegion.from_pixels(r, width, height) for r in regions]
        self.vendor_profiles.remember_masks(vendor_fingerprint, masks)

    def _register(self, document_id: str) -> threading.Event:
        event = threading.Event()
        with self._lock:
            self._active[document_id] = event
        return event

    @staticmethod
    def _check_cancel(cancel: threading.Event) -> None:
        if cancel.is_set():
            raise DocumentCancelled("Cancelled by caller")

    def _ingest(self, document_id: str, pages: list[PageInput]) -> tuple[list[InputArtifact], list[np.ndarray]]:
        inputs, images = [], []
        for index, page in enumerate(pages):
            artifact = InputArtifact(
                page_bytes=page.page_bytes,
                document_id=document_id,
                page_index=index,
                text_layer=page.text_layer,
                rotation_hint=page.rotation_hint,
            )
            images.append(decode_page(page.page_bytes, artifact.artifact_id))
            inputs.append(self.store.put(artifact))
        return inputs, images

    def _preprocess(
        self, inputs: list[InputArtifact], images: list[np.ndarray]
    ) -> tuple[list[tuple[InputArtifact, VariantArtifact, int]], list[np.ndarray]]:
        selected, oriented = [], []
        for artifact, image in zip(inputs, images):
            variant_set = self.variants.generate(artifact, image)
            oriented.append(rotate_orthogonal(image, variant_set.rotation))
            for rank, variant in enumerate(variant_set.selected):
                selected.append((artifact, variant, rank))
        return selected, oriented

    def _detect_zones(
        self,
        selected: list[tuple[InputArtifact, VariantArtifact, int]],
        images: list[np.ndarray],
        vendor_fingerprint: str | None,
    ) -> list[tuple[VariantArtifact, list[ZoneArtifact]]]:
        document_masks = ()
        if self.config.zones.auto_mask_repeated_strips and len(images) > 1:
            document_masks = tuple(
                detect_repeated_strips(
                    images,
                    self.config.zones.strip_height_ratio,
                    self.config.zones.strip_similarity_threshold,
                )
            )
        user_masks = self.vendor_profiles.masks(vendor_fingerprint) if vendor_fingerprint else ()

        ordered = sorted(selected, key=lambda item: item[2])
        zones_by_variant = []
        for _, variant, _ in ordered:
            pixels = self.store.payload(variant.artifact_id)
            if pixels is None:
                raise UnknownArtifactError(
                    "Variant pixels are no longer cached", stage="zone_detection", artifact_id=variant.artifact_id
                )
            zones = self.zones.process(
                variant,
                pixels,
                vendor_fingerprint=vendor_fingerprint,
                user_masks=tuple(user_masks),
                document_masks=document_masks,
            )
            zones_by_variant.append((variant, zones))
        return zones_by_variant

    def _recognize(
        self,
        zones_by_variant: list[tuple[VariantArtifact, list[ZoneArtifact]]],
        inputs: list[InputArtifact],
        extractor: CandidateExtractor,
        vendor_fingerprint: str | None,
        cancel: threading.Event,
    ) -> OcrRunResult:
        settings = self.config.orchestrator
        monitor = EarlyStopMonitor(
            settings.critical_fields,
            settings.early_stop_threshold,
            settings.early_stop_min_sources,
            extractor.from_ocr,
        )
        for artifact in inputs:
            if artifact.text_layer:
                monitor.seed(extractor.from_text_layer(artifact))
        units = self.orchestrator.plan(zones_by_variant, self.profiles, vendor_fingerprint)
        return self.orchestrator.run(
            units,
            deadline=Deadline(settings.document_budget_s),
            monitor=monitor,
            cancel=cancel,
        )

    def _finish(
        self,
        tracker: _Tracker,
        document_id: str,
        inputs: list[InputArtifact],
        artifacts: list[OcrArtifact],
        extractor: CandidateExtractor,
        lexicon: Lexicon,
        vendor_fingerprint: str | None,
        ocr: OcrRunResult,
    ) -> DocumentResult:
        tracker.advance(DocumentState.CANDIDATE_EXTRACTION)
        extraction = extractor.extract(artifacts, inputs)

        tracker.advance(DocumentState.RESOLUTION)
        resolver = FieldResolver(self.config.resolution, self.store, self.rules, self.calibrator)
        bucket = self.vendor_profiles.calibration_bucket(vendor_fingerprint) if vendor_fingerprint else None
        resolved = resolver.resolve(document_id, extraction, lexicon, calibration_bucket=bucket)

        tracker.advance(DocumentState.CALIBRATED)
        threshold = self.config.resolution.auto_approval_threshold
        review = sorted(
            name
            for name, r in resolved.items()
            if r.unresolved or r.has_critical or r.confidence < threshold
        )
        run = next(iter(resolved.values())).run if resolved else self.store.latest_run(document_id)
        tracker.log.info(
            "Resolved %d fields, %d need review%s",
            len(resolved),
            len(review),
            " (partial OCR)" if ocr.partial else "",
        )
        return DocumentResult(
            document_id=document_id,
            run=run,
            state=DocumentState.CALIBRATED,
            resolved=resolved,
            review_fields=review,
            ocr=ocr,
            provenance=self.store.export_graph(r.artifact_id for r in resolved.values()),
            calibration=self.calibrator.export(),
            vendor_fingerprint=vendor_fingerprint,
            transitions=tracker.transitions,
        )

    def _fail(
        self,
        tracker: _Tracker,
        document_id: str,
        exc: InvoiceCoreError,
        vendor_fingerprint: str | None,
        ocr: OcrRunResult | None,
    ) -> DocumentResult:
        stage = tracker.state
        tracker.advance(DocumentState.FAILED)
        tracker.log.error("Failed at %s: %s", stage.value, exc)
        return DocumentResult(
            document_id=document_id,
            run=self.store.latest_run(document_id),
            state=DocumentState.FAILED,
            failure=StageFailure(stage, exc.message, exc.artifact_id),
            ocr=ocr,
            vendor_fingerprint=vendor_fingerprint,
            transitions=tracker.transitions,
        )
