"""OCR-readiness scoring for page variants.

Each component maps a raw image statistic onto [0, 1] where 1 means the
image is in the range that recognizes best:

- contrast: intensity range as a fraction of 255, ideal 0.7-0.9
- edge density: Canny edge pixel ratio, ideal 0.05-0.15
- noise: mean squared 3x3 neighbor difference, 0 maps to 1 and 100+ to 0
- sharpness: mean forward-difference gradient, 50+ maps to 1
"""

import cv2
import numpy as np

from invoice_core.artifacts.models import ReadinessScore
from invoice_core.preprocessing.filters import to_gray


def contrast_score(gray: np.ndarray) -> float:
    if gray.size == 0:
        return 0.0
    contrast = (float(gray.max()) - float(gray.min())) / 255.0
    if 0.7 <= contrast <= 0.9:
        return 1.0
    if contrast < 0.7:
        return contrast / 0.7
    return max(0.0, 1.0 - (contrast - 0.9) / 0.1)


def edge_density_score(gray: np.ndarray) -> float:
    if gray.size == 0:
        return 0.0
    edges = cv2.Canny(gray, 50, 100)
    density = float(np.count_nonzero(edges)) / gray.size
    if 0.05 <= density <= 0.15:
        return 1.0
    if density < 0.05:
        return density / 0.05
    return 1.0 - min((density - 0.15) / 0.15, 1.0)


def noise_score(gray: np.ndarray) -> float:
    h, w = gray.shape[:2]
    if h < 3 or w < 3:
        return 1.0
    img = gray.astype(np.float64)
    center = img[1:-1, 1:-1]
    total = np.zeros_like(center)
    for dy in (-1, 0, 1):
        for dx in (-1, 0, 1):
            neighbor = img[1 + dy : h - 1 + dy, 1 + dx : w - 1 + dx]
            total += (neighbor - center) ** 2
    avg_variance = float((total / 9.0).mean())
    return 1.0 - min(avg_variance / 100.0, 1.0)


def sharpness_score(gray: np.ndarray) -> float:
    h, w = gray.shape[:2]
    if h < 3 or w < 3:
        return 0.5
    img = gray.astype(np.float64)
    center = img[1:-1, 1:-1]
    gx = np.abs(img[1:-1, 2:] - center)
    gy = np.abs(img[2:, 1:-1] - center)
    avg_gradient = float(np.sqrt(gx**2 + gy**2).mean())
    return min(avg_gradient / 50.0, 1.0)


def score_readiness(image: np.ndarray) -> ReadinessScore:
    """Compute the readiness breakdown for an image.

    Args:
        image: Variant image (BGR or grayscale).

    Returns:
        Component scores; ``overall`` is their weighted mean.
    """
    gray = to_gray(image)
    return ReadinessScore(
        contrast=contrast_score(gray),
        edge_density=edge_density_score(gray),
        noise=noise_score(gray),
        sharpness=sharpness_score(gray),
    )
