"""Immutable, content-addressed pipeline artifacts.

Each artifact's identity is a SHA-256 over its inputs and the parameters
of the transform that produced it, so reprocessing identical input with
identical configuration yields identical ids. Artifacts are frozen;
corrections produce new artifacts that supersede old ones.
"""

from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import Any, ClassVar

from invoice_core.utils.hashing import bytes_digest, content_id


class ArtifactKind(StrEnum):
    """Kinds of nodes in the provenance graph."""

    INPUT = "input"
    VARIANT = "variant"
    ZONE = "zone"
    OCR = "ocr"
    CANDIDATE = "candidate"
    RESOLVED = "resolved"


class ZoneType(StrEnum):
    """Semantic invoice regions."""

    HEADER_FIELDS = "HeaderFields"
    TOTALS_BOX = "TotalsBox"
    LINE_ITEMS_TABLE = "LineItemsTable"
    FOOTER_NOTES = "FooterNotes"
    BARCODE_AREA = "BarcodeArea"
    LOGO_AREA = "LogoArea"

    @property
    def priority(self) -> int:
        """Scheduling priority, lower runs first."""
        return _ZONE_PRIORITY[self]


_ZONE_PRIORITY = {
    ZoneType.HEADER_FIELDS: 1,
    ZoneType.TOTALS_BOX: 2,
    ZoneType.LINE_ITEMS_TABLE: 3,
    ZoneType.FOOTER_NOTES: 5,
    ZoneType.BARCODE_AREA: 6,
    ZoneType.LOGO_AREA: 7,
}


class ExtractionMethod(StrEnum):
    """Independent strategies that propose field values."""

    LABEL_PROXIMITY = "label_proximity"
    REGEX = "regex"
    FORMAT_PARSE = "format_parse"
    ZONE_PRIOR = "zone_prior"
    NATIVE_TEXT_LAYER = "native_text_layer"


class Severity(StrEnum):
    """Validation flag severity."""

    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in page pixel coordinates."""

    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2

    def intersects(self, other: "BoundingBox") -> bool:
        return (
            self.x < other.right
            and other.x < self.right
            and self.y < other.bottom
            and other.y < self.bottom
        )

    def intersection(self, other: "BoundingBox") -> "BoundingBox | None":
        x1, y1 = max(self.x, other.x), max(self.y, other.y)
        x2, y2 = min(self.right, other.right), min(self.bottom, other.bottom)
        if x2 <= x1 or y2 <= y1:
            return None
        return BoundingBox(x1, y1, x2 - x1, y2 - y1)

    def iou(self, other: "BoundingBox") -> float:
        inter = self.intersection(other)
        if inter is None:
            return 0.0
        union = self.area + other.area - inter.area
        return inter.area / union if union else 0.0

    def union(self, other: "BoundingBox") -> "BoundingBox":
        x1, y1 = min(self.x, other.x), min(self.y, other.y)
        x2, y2 = max(self.right, other.right), max(self.bottom, other.bottom)
        return BoundingBox(x1, y1, x2 - x1, y2 - y1)

    def clip(self, width: int, height: int) -> "BoundingBox":
        x1, y1 = max(0, self.x), max(0, self.y)
        x2, y2 = min(width, self.right), min(height, self.bottom)
        return BoundingBox(x1, y1, max(0, x2 - x1), max(0, y2 - y1))

    def translate(self, dx: int, dy: int) -> "BoundingBox":
        return BoundingBox(self.x + dx, self.y + dy, self.width, self.height)

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class ReadinessScore:
    """Breakdown of a variant's OCR-readiness, every component in [0, 1]."""

    contrast: float
    edge_density: float
    noise: float
    sharpness: float

    WEIGHTS: ClassVar[tuple[float, float, float, float]] = (0.3, 0.3, 0.2, 0.2)

    @property
    def overall(self) -> float:
        parts = (self.contrast, self.edge_density, self.noise, self.sharpness)
        return sum(w * p for w, p in zip(self.WEIGHTS, parts, strict=True))

    def to_dict(self) -> dict[str, float]:
        return {**asdict(self), "overall": self.overall}


@dataclass(frozen=True)
class InputArtifact:
    """Original page bytes handed in by the ingestion collaborator."""

    kind: ClassVar[ArtifactKind] = ArtifactKind.INPUT

    page_bytes: bytes = field(repr=False)
    document_id: str
    page_index: int = 0
    text_layer: str | None = field(default=None, repr=False)
    rotation_hint: int | None = None
    artifact_id: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "artifact_id",
            content_id(
                self.kind,
                {
                    "bytes": bytes_digest(self.page_bytes),
                    "document": self.document_id,
                    "page": self.page_index,
                    "text_layer": self.text_layer,
                    "rotation": self.rotation_hint,
                },
            ),
        )

    def parents(self) -> tuple[str, ...]:
        return ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "kind": self.kind.value,
            "document_id": self.document_id,
            "page_index": self.page_index,
            "byte_digest": bytes_digest(self.page_bytes),
            "size_bytes": len(self.page_bytes),
            "has_text_layer": self.text_layer is not None,
            "rotation_hint": self.rotation_hint,
        }


@dataclass(frozen=True)
class VariantArtifact:
    """A preprocessed rendering of an input page."""

    kind: ClassVar[ArtifactKind] = ArtifactKind.VARIANT

    input_id: str
    transform: str
    params: tuple[tuple[str, Any], ...]
    readiness: ReadinessScore
    width: int
    height: int
    artifact_id: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "artifact_id",
            variant_artifact_id(self.input_id, self.transform, self.params),
        )

    @property
    def is_original(self) -> bool:
        return self.transform == "original"

    def parents(self) -> tuple[str, ...]:
        return (self.input_id,)

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "kind": self.kind.value,
            "input_id": self.input_id,
            "transform": self.transform,
            "params": dict(self.params),
            "readiness": self.readiness.to_dict(),
            "width": self.width,
            "height": self.height,
        }


def variant_artifact_id(input_id: str, transform: str, params: tuple) -> str:
    """Identity of the variant a transform would produce from an input."""
    return content_id(
        ArtifactKind.VARIANT, {"input": input_id, "transform": transform, "params": params}
    )

@dataclass(frozen=True)
class ZoneArtifact:
    """A classified, cropped region of a variant.

    ``bbox`` is the detected zone in page coordinates; ``crop_box`` is the
    padded region actually cut out, used to map zone pixels back to page
    space.
    """

    kind: ClassVar[ArtifactKind] = ArtifactKind.ZONE

    variant_id: str
    zone_type: ZoneType
    bbox: BoundingBox
    crop_box: BoundingBox
    confidence: float
    masked: bool = False
    masks_applied: tuple[BoundingBox, ...] = ()
    vendor_fingerprint: str | None = None
    fallback: bool = False
    artifact_id: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "artifact_id",
            content_id(
                self.kind,
                {
                    "variant": self.variant_id,
                    "zone_type": self.zone_type,
                    "bbox": self.bbox,
                    "crop": self.crop_box,
                    "masked": self.masked,
                    "masks": self.masks_applied,
                    "vendor": self.vendor_fingerprint,
                    "fallback": self.fallback,
                },
            ),
        )

    def to_page(self, x: int, y: int) -> tuple[int, int]:
        """Map a pixel in the cropped zone image to page coordinates."""
        return self.crop_box.x + x, self.crop_box.y + y

    def parents(self) -> tuple[str, ...]:
        return (self.variant_id,)

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "kind": self.kind.value,
            "variant_id": self.variant_id,
            "zone_type": self.zone_type.value,
            "bbox": self.bbox.to_dict(),
            "crop_box": self.crop_box.to_dict(),
            "confidence": self.confidence,
            "masked": self.masked,
            "masks_applied": [m.to_dict() for m in self.masks_applied],
            "vendor_fingerprint": self.vendor_fingerprint,
            "fallback": self.fallback,
        }


@dataclass(frozen=True)
class OcrToken:
    """A recognized word with its page-space box and engine confidence."""

    text: str
    bbox: BoundingBox
    confidence: float
    line_num: int = 0
    block_num: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "bbox": self.bbox.to_dict(),
            "confidence": self.confidence,
            "line_num": self.line_num,
            "block_num": self.block_num,
        }


@dataclass(frozen=True)
class OcrArtifact:
    """Tokens produced by one engine/profile pass over one zone."""

    kind: ClassVar[ArtifactKind] = ArtifactKind.OCR

    zone_id: str
    variant_id: str
    zone_type: ZoneType
    engine: str
    profile_name: str
    profile_fingerprint: str
    tokens: tuple[OcrToken, ...]
    elapsed_ms: float = field(default=0.0, compare=False)
    artifact_id: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "artifact_id",
            ocr_artifact_id(self.zone_id, self.profile_fingerprint),
        )

    @property
    def text(self) -> str:
        return " ".join(t.text for t in self.tokens)

    @property
    def mean_confidence(self) -> float:
        if not self.tokens:
            return 0.0
        return sum(t.confidence for t in self.tokens) / len(self.tokens)

    def parents(self) -> tuple[str, ...]:
        return (self.zone_id,)

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "kind": self.kind.value,
            "zone_id": self.zone_id,
            "variant_id": self.variant_id,
            "zone_type": self.zone_type.value,
            "engine": self.engine,
            "profile": self.profile_name,
            "profile_fingerprint": self.profile_fingerprint,
            "tokens": [t.to_dict() for t in self.tokens],
            "elapsed_ms": self.elapsed_ms,
        }


def ocr_artifact_id(zone_id: str, profile_fingerprint: str) -> str:
    """Identity of the OCR pass a (zone, profile) unit would produce."""
    return content_id(ArtifactKind.OCR, {"zone": zone_id, "profile": profile_fingerprint})


@dataclass(frozen=True)
class CandidateArtifact:
    """A proposed value for one field from one extraction method."""

    kind: ClassVar[ArtifactKind] = ArtifactKind.CANDIDATE

    field_name: str
    raw_span: str
    normalized_value: str | None
    method: ExtractionMethod
    trust_weight: float
    confidence: int
    source_id: str
    bbox: BoundingBox | None = None
    zone_type: ZoneType | None = None
    detail: str = ""
    artifact_id: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "artifact_id",
            content_id(
                self.kind,
                {
                    "field": self.field_name,
                    "raw": self.raw_span,
                    "normalized": self.normalized_value,
                    "method": self.method,
                    "weight": self.trust_weight,
                    "confidence": self.confidence,
                    "source": self.source_id,
                    "bbox": self.bbox,
                    "zone": self.zone_type,
                },
            ),
        )

    @property
    def value(self) -> str:
        """Value used for consensus grouping."""
        if self.normalized_value is not None:
            return self.normalized_value
        return self.raw_span.strip()

    @property
    def weighted_score(self) -> float:
        return self.confidence * self.trust_weight

    def parents(self) -> tuple[str, ...]:
        return (self.source_id,)

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "kind": self.kind.value,
            "field_name": self.field_name,
            "raw_span": self.raw_span,
            "normalized_value": self.normalized_value,
            "method": self.method.value,
            "trust_weight": self.trust_weight,
            "confidence": self.confidence,
            "source_id": self.source_id,
            "bbox": self.bbox.to_dict() if self.bbox else None,
            "zone_type": self.zone_type.value if self.zone_type else None,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class EvidenceRef:
    """Reference from a resolved value to a supporting candidate."""

    candidate_id: str
    source_id: str
    method: ExtractionMethod
    weight: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidate_id": self.candidate_id,
            "source_id": self.source_id,
            "method": self.method.value,
            "weight": self.weight,
        }


@dataclass(frozen=True)
class Alternative:
    """A non-chosen value kept for manual override."""

    value: str
    confidence: int
    candidate_id: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ValidationFlag:
    """Outcome of a cross-field rule that did not pass."""

    rule: str
    severity: Severity
    message: str
    penalty: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule": self.rule,
            "severity": self.severity.value,
            "message": self.message,
            "penalty": self.penalty,
        }


@dataclass(frozen=True)
class ResolvedArtifact:
    """The chosen value for one field in one processing run."""

    kind: ClassVar[ArtifactKind] = ArtifactKind.RESOLVED

    document_id: str
    run: int
    field_name: str
    value: str | None
    raw_confidence: int
    confidence: int
    evidence: tuple[EvidenceRef, ...]
    alternatives: tuple[Alternative, ...] = ()
    flags: tuple[ValidationFlag, ...] = ()
    explanation: str = ""
    unresolved: bool = False
    supersedes: str | None = None
    calibration_scope: str = "identity"
    artifact_id: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "artifact_id",
            content_id(
                self.kind,
                {
                    "document": self.document_id,
                    "run": self.run,
                    "field": self.field_name,
                    "value": self.value,
                    "raw_confidence": self.raw_confidence,
                    "confidence": self.confidence,
                    "evidence": [e.candidate_id for e in self.evidence],
                    "flags": self.flags,
                    "supersedes": self.supersedes,
                },
            ),
        )

    @property
    def severity(self) -> Severity:
        if any(f.severity == Severity.CRITICAL for f in self.flags):
            return Severity.CRITICAL
        if any(f.severity == Severity.WARNING for f in self.flags):
            return Severity.WARNING
        return Severity.NONE

    @property
    def has_critical(self) -> bool:
        return self.severity == Severity.CRITICAL

    def parents(self) -> tuple[str, ...]:
        return tuple(e.candidate_id for e in self.evidence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "kind": self.kind.value,
            "document_id": self.document_id,
            "run": self.run,
            "field_name": self.field_name,
            "value": self.value,
            "raw_confidence": self.raw_confidence,
            "confidence": self.confidence,
            "evidence": [e.to_dict() for e in self.evidence],
            "alternatives": [a.to_dict() for a in self.alternatives],
            "flags": [f.to_dict() for f in self.flags],
            "severity": self.severity.value,
            "explanation": self.explanation,
            "unresolved": self.unresolved,
            "supersedes": self.supersedes,
            "calibration_scope": self.calibration_scope,
        }


Artifact = (
    InputArtifact
    | VariantArtifact
    | ZoneArtifact
    | OcrArtifact
    | CandidateArtifact
    | ResolvedArtifact
)
