"""Interfaces to the systems around the core.

The vendor-profile collaborator answers lookups by vendor fingerprint;
the review workflow reports per-field outcomes back for calibration.
"""

import threading
from dataclasses import dataclass
from typing import Any, Protocol

from invoice_core.zones.masking import MaskRegion, MaskRegistry


@dataclass(frozen=True)
class ReviewOutcome:
    """A human verdict on one resolved field.

    Attributes:
        document_id: Document the field belongs to.
        field_name: Field that was reviewed.
        predicted_confidence: Raw resolver confidence at resolution time.
        correct: Whether the resolved value was accepted unchanged.
        vendor: Calibration bucket of the document's vendor, if known.
        corrected_value: Value the reviewer entered instead, if any.
    """

    document_id: str
    field_name: str
    predicted_confidence: int
    correct: bool
    vendor: str | None = None
    corrected_value: str | None = None


class VendorProfileProvider(Protocol):
    """Lookups keyed by vendor fingerprint."""

    def lexicon_overrides(self, fingerprint: str) -> dict[str, Any] | None: ...

    def masks(self, fingerprint: str) -> tuple[MaskRegion, ...]: ...

    def remember_masks(self, fingerprint: str, masks: list[MaskRegion]) -> None: ...

    def calibration_bucket(self, fingerprint: str) -> str | None: ...


class InMemoryVendorProfileProvider:
    """Vendor profiles held in process memory.

    Masks are kept in a :class:`MaskRegistry`, so giving the registry a
    path makes remembered masks survive restarts.

    Args:
        mask_registry: Where remembered masks live.
    """

    def __init__(self, mask_registry: MaskRegistry | None = None) -> None:
        self.mask_registry = mask_registry or MaskRegistry()
        self._lock = threading.Lock()
        self._overrides: dict[str, dict[str, Any]] = {}
        self._buckets: dict[str, str] = {}

    def set_lexicon_overrides(self, fingerprint: str, overrides: dict[str, Any]) -> None:
        with self._lock:
            self._overrides[fingerprint] = overrides

    def set_calibration_bucket(self, fingerprint: str, bucket: str) -> None:
        with self._lock:
            self._buckets[fingerprint] = bucket

    def lexicon_overrides(self, fingerprint: str) -> dict[str, Any] | None:
        return self._overrides.get(fingerprint)

    def masks(self, fingerprint: str) -> tuple[MaskRegion, ...]:
        return self.mask_registry.masks_for(fingerprint)

    def remember_masks(self, fingerprint: str, masks: list[MaskRegion]) -> None:
        for mask in masks:
            self.mask_registry.add(fingerprint, mask)
        if self.mask_registry.path is not None:
            self.mask_registry.save()

    def calibration_bucket(self, fingerprint: str) -> str | None:
        """Bucket id for calibration; a vendor is its own bucket by default."""
        return self._buckets.get(fingerprint, fingerprint)
