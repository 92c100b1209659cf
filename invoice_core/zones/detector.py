"""Heuristic invoice zone detection, masking, and cropping.

Zones are located from page geometry and scored from simple pixel
statistics inside each candidate region. Every zone type is detected
independently. When no text-bearing zone is confident enough, the whole
page becomes a single fallback zone so recognition still runs.
"""

from dataclasses import dataclass

import numpy as np

from invoice_core.artifacts.models import BoundingBox, VariantArtifact, ZoneArtifact, ZoneType
from invoice_core.artifacts.store import ArtifactStore
from invoice_core.preprocessing.filters import to_gray
from invoice_core.utils.config import ZoneConfig
from invoice_core.utils.logger import get_logger
from invoice_core.zones.cropper import crop, padded_box
from invoice_core.zones.masking import MaskRegion, apply_masks, detect_watermarks

logger = get_logger(__name__)

TEXT_ZONES = frozenset(
    {ZoneType.HEADER_FIELDS, ZoneType.TOTALS_BOX, ZoneType.LINE_ITEMS_TABLE, ZoneType.FOOTER_NOTES}
)


@dataclass(frozen=True)
class DetectedZone:
    """A zone located on a page before masking and cropping."""

    zone_type: ZoneType
    bbox: BoundingBox
    confidence: float
    fallback: bool = False


def text_density_score(gray: np.ndarray) -> float:
    """Score how text-like a region's dark pixel ratio is."""
    if gray.size == 0:
        return 0.0
    density = float(np.count_nonzero(gray < 200)) / gray.size
    if 0.05 <= density <= 0.30:
        return 0.80
    if density > 0.30:
        return 0.60
    return 0.50


def table_line_score(gray: np.ndarray) -> float:
    """Score a region by how many sampled rows hold a long horizontal rule."""
    h, w = gray.shape[:2]
    if h < 10 or w == 0:
        return 0.0
    lines = 0
    for row in gray[::10]:
        dark = row < 150
        # Longest run of consecutive dark pixels in the row.
        padded = np.concatenate(([0], dark.astype(np.int8), [0]))
        edges = np.flatnonzero(np.diff(padded))
        runs = edges[1::2] - edges[::2]
        if runs.size and runs.max() > w // 3:
            lines += 1
    return min(lines / (h // 10) * 2.0, 0.90)


def barcode_score(gray: np.ndarray) -> float:
    """Score a region by dark/light transitions along its middle row."""
    h, w = gray.shape[:2]
    if h == 0 or w == 0:
        return 0.0
    dark = gray[h // 2] < 150
    transitions = int(np.count_nonzero(dark[1:] != dark[:-1])) + int(dark[0])
    density = transitions / w
    if density > 0.3:
        return 0.75
    if density > 0.15:
        return 0.55
    return 0.30


def logo_score(gray: np.ndarray) -> float:
    """Score a region by the share of strong-gradient pixels."""
    h, w = gray.shape[:2]
    if h < 3 or w < 3:
        return 0.0
    img = gray.astype(np.int32)
    center = img[1:-1, 1:-1]
    gradient = (np.abs(center - img[1:-1, 2:]) + np.abs(center - img[2:, 1:-1])) // 2
    density = float(np.count_nonzero(gradient > 30)) / gradient.size
    if 0.10 <= density <= 0.40:
        return 0.70
    if density > 0.40:
        return 0.55
    return 0.40


class ZoneDetector:
    """Locates, masks, and crops invoice zones on a page variant.

    Args:
        config: Zone detection configuration.
        store: Artifact store receiving zone artifacts and their crops.
    """

    def __init__(self, config: ZoneConfig, store: ArtifactStore) -> None:
        self.config = config
        self.store = store

    def detect(self, image: np.ndarray) -> list[DetectedZone]:
        """Detect zones on a page image.

        Args:
            image: Variant image (BGR or grayscale).

        Returns:
            Zones at or above the configured minimum confidence, or a
            single whole-page fallback zone.
        """
        gray = to_gray(image)
        height, width = gray.shape[:2]
        zones: list[DetectedZone] = []

        header = BoundingBox(0, 0, width, int(height * 0.20))
        zones.append(
            DetectedZone(ZoneType.HEADER_FIELDS, header, 0.85 if height > 800 else 0.70)
        )

        totals_w, totals_h = int(width * 0.30), int(height * 0.20)
        totals = BoundingBox(width - totals_w, height - totals_h, totals_w, totals_h)
        zones.append(
            DetectedZone(
                ZoneType.TOTALS_BOX, totals, max(text_density_score(_region(gray, totals)), 0.75)
            )
        )

        table = BoundingBox(0, int(height * 0.25), width, int(height * 0.45))
        zones.append(
            DetectedZone(
                ZoneType.LINE_ITEMS_TABLE, table, max(table_line_score(_region(gray, table)), 0.70)
            )
        )

        footer_h = int(height * 0.15)
        footer = BoundingBox(0, height - footer_h, int(width * 0.60), footer_h)
        zones.append(DetectedZone(ZoneType.FOOTER_NOTES, footer, 0.65))

        barcode_w = int(width * 0.25)
        barcode = BoundingBox(width - barcode_w, 0, barcode_w, int(height * 0.10))
        score = barcode_score(_region(gray, barcode))
        if score > 0.5:
            zones.append(DetectedZone(ZoneType.BARCODE_AREA, barcode, score))

        logo = BoundingBox(0, 0, int(width * 0.25), int(height * 0.15))
        score = logo_score(_region(gray, logo))
        if score > 0.5:
            zones.append(DetectedZone(ZoneType.LOGO_AREA, logo, score))

        kept = [
            z for z in zones if z.confidence >= self.config.min_confidence and z.bbox.area > 0
        ]
        if not any(z.zone_type in TEXT_ZONES for z in kept):
            logger.warning(
                "No text zone reached confidence %.2f, using whole page",
                self.config.min_confidence,
            )
            best = max((z.confidence for z in zones if z.zone_type in TEXT_ZONES), default=0.0)
            page = BoundingBox(0, 0, width, height)
            return [DetectedZone(ZoneType.HEADER_FIELDS, page, best, fallback=True)]
        return kept

    def process(
        self,
        variant: VariantArtifact,
        image: np.ndarray,
        vendor_fingerprint: str | None = None,
        user_masks: tuple[MaskRegion, ...] = (),
        document_masks: tuple[MaskRegion, ...] = (),
    ) -> list[ZoneArtifact]:
        """Detect zones on a variant, apply masks, and store cropped zones.

        Args:
            variant: The variant being processed.
            image: The variant's pixels.
            vendor_fingerprint: Vendor identity, recorded when user masks
                are applied.
            user_masks: Remembered masks for the vendor.
            document_masks: Masks derived from the whole document, such as
                repeated header/footer strips.

        Returns:
            Stored zone artifacts; logo zones are flagged as masked.
        """
        height, width = image.shape[:2]
        detected = self.detect(image)

        masks: list[BoundingBox] = []
        if self.config.auto_mask_logos:
            masks.extend(z.bbox for z in detected if z.zone_type == ZoneType.LOGO_AREA)
        if self.config.auto_mask_watermarks:
            masks.extend(detect_watermarks(image))
        if self.config.auto_mask_repeated_strips:
            masks.extend(m.to_pixels(width, height) for m in document_masks)
        masks.extend(m.to_pixels(width, height) for m in user_masks)
        masked_image = apply_masks(image, masks) if masks else image

        zones: list[ZoneArtifact] = []
        for found in detected:
            crop_box = padded_box(found.bbox, self.config.zone_padding, width, height)
            is_masked = found.zone_type == ZoneType.LOGO_AREA and self.config.auto_mask_logos
            applied = tuple(m for m in masks if m.intersects(crop_box) and m != found.bbox)
            zone = ZoneArtifact(
                variant_id=variant.artifact_id,
                zone_type=found.zone_type,
                bbox=found.bbox,
                crop_box=crop_box,
                confidence=round(found.confidence, 4),
                masked=is_masked,
                masks_applied=applied,
                vendor_fingerprint=vendor_fingerprint if user_masks else None,
                fallback=found.fallback,
            )
            source = image if is_masked else masked_image
            zones.append(self.store.put(zone, payload=crop(source, crop_box)))

        logger.info(
            "Variant %s: %d zones (%s), %d masks",
            variant.transform,
            len(zones),
            ", ".join(z.zone_type.value for z in zones),
            len(masks),
        )
        return zones


def _region(gray: np.ndarray, box: BoundingBox) -> np.ndarray:
    return gray[box.y : box.bottom, box.x : box.right]
