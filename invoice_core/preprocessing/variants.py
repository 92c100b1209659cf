"""Page variant generation and ranking.

Builds a fixed set of preprocessed renderings of one page, scores each
for OCR-readiness, stores all of them, and selects the best few for
recognition. Variants outside the selection stay in the store so a
targeted re-recognition can use them later.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import cv2
import numpy as np

from invoice_core.artifacts.models import (
    InputArtifact,
    VariantArtifact,
    variant_artifact_id,
)
from invoice_core.artifacts.store import ArtifactStore
from invoice_core.errors import CorruptInputError
from invoice_core.preprocessing import filters
from invoice_core.preprocessing.readiness import score_readiness
from invoice_core.utils.config import VariantConfig
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)

Step = Callable[[np.ndarray, VariantConfig], np.ndarray]

_STEPS: dict[str, Step] = {
    "grayscale": lambda img, cfg: filters.to_gray(img),
    "adaptive": lambda img, cfg: filters.binarize_adaptive(
        img, cfg.adaptive_block_size, cfg.adaptive_c
    ),
    "otsu": lambda img, cfg: filters.binarize_otsu(img),
    "denoise": lambda img, cfg: filters.denoise(img, cfg.denoise_strength),
    "sharpen": lambda img, cfg: filters.sharpen(img, cfg.sharpen_amount),
    "clahe": lambda img, cfg: filters.apply_clahe(
        img, cfg.clahe_clip_limit, cfg.clahe_tile_size
    ),
    "stretch": lambda img, cfg: filters.stretch_contrast(img, cfg.contrast_factor),
    "upscale": lambda img, cfg: filters.upscale(img, cfg.upscale_factor),
    "deskew": lambda img, cfg: filters.deskew(img, cfg.deskew_angle_threshold),
}

# Config fields each step depends on; they become part of variant identity.
_STEP_PARAMS: dict[str, tuple[str, ...]] = {
    "grayscale": (),
    "adaptive": ("adaptive_block_size", "adaptive_c"),
    "otsu": (),
    "denoise": ("denoise_strength",),
    "sharpen": ("sharpen_amount",),
    "clahe": ("clahe_clip_limit", "clahe_tile_size"),
    "stretch": ("contrast_factor",),
    "upscale": ("upscale_factor",),
    "deskew": ("deskew_angle_threshold",),
}

RECIPES: dict[str, tuple[str, ...]] = {
    "original": (),
    "grayscale": ("grayscale",),
    "adaptive_threshold": ("grayscale", "adaptive"),
    "otsu_threshold": ("grayscale", "otsu"),
    "denoise_sharpen": ("denoise", "sharpen"),
    "clahe": ("clahe",),
    "contrast_stretch": ("stretch",),
    "upscale": ("upscale",),
    "deskew": ("deskew",),
    "clahe_sharpen": ("clahe", "sharpen"),
    "upscale_sharpen": ("upscale", "sharpen"),
    "deskew_adaptive": ("deskew", "adaptive"),
}


def decode_page(page_bytes: bytes, artifact_id: str | None = None) -> np.ndarray:
    """Decode encoded page bytes into a BGR image.

    Args:
        page_bytes: PNG, JPEG, TIFF or other OpenCV-readable bytes.
        artifact_id: Input artifact id, reported on failure.

    Returns:
        Decoded image.

    Raises:
        CorruptInputError: If the bytes are empty or cannot be decoded.
    """
    if not page_bytes:
        raise CorruptInputError("Page bytes are empty", stage="ingested", artifact_id=artifact_id)
    buffer = np.frombuffer(page_bytes, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise CorruptInputError(
            "Page bytes could not be decoded as an image",
            stage="ingested",
            artifact_id=artifact_id,
        )
    return image


@dataclass
class VariantSet:
    """Outcome of variant generation for one page."""

    ranked: list[VariantArtifact]
    selected: list[VariantArtifact]
    fell_back_to_original: bool = False
    rank: dict[str, int] = field(default_factory=dict)
    rotation: int = 0


class VariantGenerator:
    """Generates, scores, and ranks preprocessed page variants.

    Args:
        config: Variant generation configuration.
        store: Artifact store that receives every generated variant.
    """

    def __init__(self, config: VariantConfig, store: ArtifactStore) -> None:
        self.config = config
        self.store = store

    def recipe_params(self, name: str, rotation: int) -> tuple[tuple[str, Any], ...]:
        params: list[tuple[str, Any]] = [("rotation", rotation)]
        for step in RECIPES[name]:
            for key in _STEP_PARAMS[step]:
                params.append((f"{step}.{key}", getattr(self.config, key)))
        return tuple(params)

    def resolve_rotation(self, input_artifact: InputArtifact, image: np.ndarray) -> int:
        """Clockwise rotation that makes the page upright.

        An explicit hint wins. Without one the page is checked for a
        sideways layout, and rotated only when the detector is confident.
        """
        if input_artifact.rotation_hint is not None:
            return (int(round(input_artifact.rotation_hint / 90.0)) * 90) % 360
        if not self.config.auto_orientation:
            return 0
        rotation, confidence = filters.detect_orientation(image)
        if rotation and confidence >= self.config.orientation_min_confidence:
            logger.info(
                "Detected sideways page %s, rotating %d degrees (confidence %.2f)",
                input_artifact.artifact_id,
                rotation,
                confidence,
            )
            return rotation
        return 0

    def generate(self, input_artifact: InputArtifact, image: np.ndarray | None = None) -> VariantSet:
        """Produce and rank variants for one input page.

        Args:
            input_artifact: The stored page.
            image: Already-decoded page, decoded from the artifact when omitted.

        Returns:
            All variants ranked by readiness, plus the selected top K.

        Raises:
            CorruptInputError: If the page cannot be decoded.
        """
        if image is None:
            image = decode_page(input_artifact.page_bytes, input_artifact.artifact_id)
        rotation = self.resolve_rotation(input_artifact, image)
        oriented = filters.rotate_orthogonal(image, rotation)

        variants: list[VariantArtifact] = []
        for name in list(RECIPES)[: max(1, self.config.max_variants)]:
            params = self.recipe_params(name, rotation)
            variant_id = variant_artifact_id(input_artifact.artifact_id, name, params)
            cached = self.store.get(variant_id)
            if cached is not None and self.store.payload(variant_id) is not None:
                variants.append(cached)
                continue

            result = self._apply(name, oriented)
            h, w = result.shape[:2]
            variant = VariantArtifact(
                input_id=input_artifact.artifact_id,
                transform=name,
                params=params,
                readiness=score_readiness(result),
                width=w,
                height=h,
            )
            variants.append(self.store.put(variant, payload=result))

        ranked = sorted(variants, key=lambda v: (-v.readiness.overall, v.transform))
        usable = [v for v in ranked if v.readiness.overall >= self.config.min_readiness_score]
        selected = usable[: self.config.top_k]
        fell_back = False
        if not selected:
            original = next(v for v in ranked if v.is_original)
            selected = [original]
            fell_back = True
            logger.warning(
                "No variant reached readiness %.2f, passing original through",
                self.config.min_readiness_score,
            )

        logger.info(
            "Generated %d variants, selected %s",
            len(ranked),
            ", ".join(f"{v.transform}={v.readiness.overall:.2f}" for v in selected),
        )
        return VariantSet(
            ranked=ranked,
            selected=selected,
            fell_back_to_original=fell_back,
            rank={v.artifact_id: i for i, v in enumerate(ranked)},
            rotation=rotation,
        )

    def _apply(self, name: str, image: np.ndarray) -> np.ndarray:
        result = image.copy()
        for step in RECIPES[name]:
            result = _STEPS[step](result, self.config)
        return result
