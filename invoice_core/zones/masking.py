"""Noise-region masking ahead of zone cropping.

Masks blank out regions that only add recognition noise: logos,
watermarks, header/footer strips repeated on every page, and rectangles
users have marked for a vendor. User masks are stored in normalized
(0-1) page coordinates so they apply to any scan resolution, and the
:class:`MaskRegistry` remembers them per vendor fingerprint.
"""

import threading
from dataclasses import asdict, dataclass
from pathlib import Path

import cv2
import numpy as np
import yaml

from invoice_core.artifacts.models import BoundingBox
from invoice_core.errors import ConfigError
from invoice_core.preprocessing.filters import to_gray
from invoice_core.utils.config import read_yaml
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MaskRegion:
    """A rectangle in normalized page coordinates."""

    x: float
    y: float
    width: float
    height: float
    label: str = "user"

    def __post_init__(self) -> None:
        for name in ("x", "y", "width", "height"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Mask {name}={value} must be within [0, 1]")
        if self.width == 0.0 or self.height == 0.0:
            raise ValueError("Mask width and height must be non-zero")
        if self.x + self.width > 1.0 + 1e-9 or self.y + self.height > 1.0 + 1e-9:
            raise ValueError("Mask extends past the page edge")

    @classmethod
    def from_pixels(
        cls, bbox: BoundingBox, width: int, height: int, label: str = "user"
    ) -> "MaskRegion":
        box = bbox.clip(width, height)
        return cls(box.x / width, box.y / height, box.width / width, box.height / height, label)

    def to_pixels(self, width: int, height: int) -> BoundingBox:
        x1, y1 = int(round(self.x * width)), int(round(self.y * height))
        x2 = int(round((self.x + self.width) * width))
        y2 = int(round((self.y + self.height) * height))
        return BoundingBox(x1, y1, max(1, x2 - x1), max(1, y2 - y1)).clip(width, height)


class MaskRegistry:
    """Remembered user masks keyed by vendor fingerprint.

    Args:
        path: Optional YAML file the registry is loaded from and saved to.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = Path(path) if path else None
        self._lock = threading.Lock()
        self._masks: dict[str, tuple[MaskRegion, ...]] = {}
        if self.path is not None and self.path.exists():
            self._load(self.path)

    def add(self, vendor_fingerprint: str, region: MaskRegion) -> None:
        """Remember a mask for a vendor, ignoring exact duplicates."""
        with self._lock:
            current = self._masks.get(vendor_fingerprint, ())
            if region in current:
                return
            self._masks[vendor_fingerprint] = current + (region,)
        logger.info("Remembered mask %s for vendor %s", region, vendor_fingerprint)

    def masks_for(self, vendor_fingerprint: str | None) -> tuple[MaskRegion, ...]:
        if vendor_fingerprint is None:
            return ()
        return self._masks.get(vendor_fingerprint, ())

    def vendors(self) -> list[str]:
        return sorted(self._masks)

    def save(self, path: Path | None = None) -> Path:
        """Write the registry to YAML.

        Raises:
            ConfigError: If no path was given here or at construction.
        """
        target = Path(path) if path else self.path
        if target is None:
            raise ConfigError("No path configured for the mask registry")
        data = {
            vendor: [asdict(region) for region in regions]
            for vendor, regions in sorted(self._masks.items())
        }
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w") as f:
            yaml.safe_dump({"vendors": data}, f, sort_keys=True)
        logger.info("Saved masks for %d vendors to %s", len(data), target)
        return target

    def _load(self, path: Path) -> None:
        data = read_yaml(path).get("vendors", {}) or {}
        try:
            for vendor, regions in data.items():
                self._masks[str(vendor)] = tuple(MaskRegion(**r) for r in regions or [])
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid mask entry in {path}: {exc}") from exc
        logger.info("Loaded masks for %d vendors from %s", len(self._masks), path)


def detect_watermarks(image: np.ndarray, min_area_ratio: float = 0.02) -> list[BoundingBox]:
    """Find large, faint, low-saturation blobs.

    Args:
        image: Page image (BGR or grayscale).
        min_area_ratio: Minimum blob area as a fraction of the page.

    Returns:
        Bounding boxes of suspected watermarks.
    """
    gray = to_gray(image)
    faint = ((gray > 180) & (gray < 235)).astype(np.uint8) * 255
    if image.ndim == 3 and image.shape[2] == 3:
        saturation = cv2.cvtColor(image, cv2.COLOR_BGR2HSV)[:, :, 1]
        faint[saturation > 60] = 0

    kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (15, 15))
    closed = cv2.morphologyEx(faint, cv2.MORPH_CLOSE, kernel)
    contours, _ = cv2.findContours(closed, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    page_area = gray.shape[0] * gray.shape[1]
    boxes = []
    for contour in contours:
        x, y, w, h = cv2.boundingRect(contour)
        if w * h < page_area * min_area_ratio:
            continue
        fill = cv2.contourArea(contour) / float(w * h)
        if fill >= 0.5:
            boxes.append(BoundingBox(int(x), int(y), int(w), int(h)))
    if boxes:
        logger.debug("Detected %d watermark regions", len(boxes))
    return boxes


def strip_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Similarity in [0, 1] of two strips, 1 meaning identical pixels."""
    ga, gb = to_gray(a), to_gray(b)
    if ga.size == 0 or gb.size == 0:
        return 0.0
    if ga.shape != gb.shape:
        gb = cv2.resize(gb, (ga.shape[1], ga.shape[0]), interpolation=cv2.INTER_AREA)
    diff = np.abs(ga.astype(np.float32) - gb.astype(np.float32))
    return 1.0 - float(diff.mean()) / 255.0


def detect_repeated_strips(
    pages: list[np.ndarray],
    height_ratio: float = 0.08,
    threshold: float = 0.85,
) -> list[MaskRegion]:
    """Find header/footer strips that repeat on every page of a document.

    Args:
        pages: Page images of one document, in order.
        height_ratio: Strip height as a fraction of page height.
        threshold: Minimum similarity for a strip to count as repeated.

    Returns:
        Normalized masks for the repeated top and/or bottom strip; empty
        for single-page documents.
    """
    if len(pages) < 2:
        return []

    def top(img: np.ndarray) -> np.ndarray:
        return img[: max(1, int(img.shape[0] * height_ratio))]

    def bottom(img: np.ndarray) -> np.ndarray:
        return img[img.shape[0] - max(1, int(img.shape[0] * height_ratio)) :]

    regions = []
    for label, cut, y in (("repeated_header", top, 0.0), ("repeated_footer", bottom, 1.0 - height_ratio)):
        first = cut(pages[0])
        if all(strip_similarity(first, cut(p)) >= threshold for p in pages[1:]):
            regions.append(MaskRegion(0.0, y, 1.0, height_ratio, label))
    if regions:
        logger.debug("Repeated strips across %d pages: %s", len(pages), [r.label for r in regions])
    return regions


def apply_masks(image: np.ndarray, boxes: list[BoundingBox]) -> np.ndarray:
    """Return a copy of ``image`` with every box filled white."""
    result = image.copy()
    for box in boxes:
        result[box.y : box.bottom, box.x : box.right] = 255
    return result
