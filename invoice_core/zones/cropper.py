"""Zone cropping with page coordinate mapping."""

import numpy as np

from invoice_core.artifacts.models import BoundingBox, OcrToken


def padded_box(bbox: BoundingBox, padding: int, width: int, height: int) -> BoundingBox:
    """Grow a box by ``padding`` on every side, clipped to the page."""
    grown = BoundingBox(
        bbox.x - padding, bbox.y - padding, bbox.width + 2 * padding, bbox.height + 2 * padding
    )
    return grown.clip(width, height)


def crop(image: np.ndarray, box: BoundingBox) -> np.ndarray:
    """Cut ``box`` out of ``image`` as an independent copy."""
    return image[box.y : box.bottom, box.x : box.right].copy()


def tokens_to_page(tokens: list[OcrToken], crop_box: BoundingBox) -> list[OcrToken]:
    """Translate tokens recognized inside a crop into page coordinates.

    Args:
        tokens: Tokens with boxes relative to the crop origin.
        crop_box: The region of the page the crop was cut from.

    Returns:
        New tokens with page-space boxes.
    """
    return [
        OcrToken(
            text=t.text,
            bbox=t.bbox.translate(crop_box.x, crop_box.y),
            confidence=t.confidence,
            line_num=t.line_num,
            block_num=t.block_num,
        )
        for t in tokens
    ]
