"""Image transforms used to build page variants.

Thresholding, contrast enhancement, noise reduction, sharpening,
upscaling, and rotation correction for scanned invoice pages. Every
function takes and returns a numpy image and never modifies its input.
"""

import cv2
import numpy as np

from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)


def to_gray(image: np.ndarray) -> np.ndarray:
    """Convert an image to grayscale if it has color channels.

    Args:
        image: Input image (BGR, BGRA or grayscale).

    Returns:
        Grayscale image.
    """
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    return image


def binarize_otsu(image: np.ndarray) -> np.ndarray:
    """Binarize an image using Otsu's automatic thresholding.

    Args:
        image: Input image (BGR or grayscale).

    Returns:
        Binary image with pixel values 0 or 255.
    """
    gray = to_gray(image)
    _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    return binary


def binarize_adaptive(image: np.ndarray, block_size: int = 15, c: int = 10) -> np.ndarray:
    """Binarize an image using adaptive Gaussian thresholding.

    Args:
        image: Input image (BGR or grayscale).
        block_size: Neighborhood size, forced odd and at least 3.
        c: Constant subtracted from the weighted mean.

    Returns:
        Binary image with pixel values 0 or 255.
    """
    block_size = max(3, block_size | 1)
    return cv2.adaptiveThreshold(
        to_gray(image),
        255,
        cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
        cv2.THRESH_BINARY,
        block_size,
        c,
    )


def apply_clahe(image: np.ndarray, clip_limit: float = 2.0, tile_size: int = 8) -> np.ndarray:
    """Enhance local contrast with CLAHE.

    Args:
        image: Input image (BGR or grayscale).
        clip_limit: Threshold for contrast limiting.
        tile_size: Size of the grid for histogram equalization.

    Returns:
        Contrast-enhanced grayscale image.
    """
    clahe = cv2.createCLAHE(clipLimit=clip_limit, tileGridSize=(tile_size, tile_size))
    return clahe.apply(to_gray(image))


def stretch_contrast(image: np.ndarray, factor: float = 1.3) -> np.ndarray:
    """Scale intensities around mid-gray by a linear factor."""
    gray = to_gray(image).astype(np.float32)
    stretched = (gray - 128.0) * factor + 128.0
    return np.clip(stretched, 0, 255).astype(np.uint8)


def denoise(image: np.ndarray, strength: int = 10) -> np.ndarray:
    """Remove speckle noise with non-local means on the grayscale image.

    Args:
        image: Input image (BGR or grayscale).
        strength: Filter strength; larger removes more noise and detail.

    Returns:
        Denoised grayscale image.
    """
    return cv2.fastNlMeansDenoising(to_gray(image), None, h=strength)


def denoise_bilateral(image: np.ndarray, d: int = 9, sigma: int = 75) -> np.ndarray:
    """Smooth noise while preserving text edges."""
    return cv2.bilateralFilter(to_gray(image), d, sigma, sigma)


def sharpen(image: np.ndarray, amount: float = 0.5) -> np.ndarray:
    """Unsharp-mask an image.

    Args:
        image: Input image (BGR or grayscale).
        amount: Weight of the high-frequency detail added back.

    Returns:
        Sharpened grayscale image.
    """
    gray = to_gray(image)
    blurred = cv2.GaussianBlur(gray, (0, 0), sigmaX=3)
    return cv2.addWeighted(gray, 1.0 + amount, blurred, -amount, 0)


def upscale(image: np.ndarray, factor: float = 1.5) -> np.ndarray:
    """Enlarge an image with cubic interpolation."""
    h, w = image.shape[:2]
    size = (max(1, int(round(w * factor))), max(1, int(round(h * factor))))
    return cv2.resize(image, size, interpolation=cv2.INTER_CUBIC)


def detect_skew_angle(image: np.ndarray) -> float:
    """Estimate page skew from the median angle of long straight lines.

    Args:
        image: Input image (BGR or grayscale).

    Returns:
        Estimated skew angle in degrees, 0.0 when no lines are found.
    """
    edges = cv2.Canny(to_gray(image), 50, 150, apertureSize=3)
    lines = cv2.HoughLinesP(edges, 1, np.pi / 180, 100, minLineLength=100, maxLineGap=10)

    if lines is None:
        return 0.0

    angles = [np.arctan2(y2 - y1, x2 - x1) * 180 / np.pi for x1, y1, x2, y2 in lines[:, 0]]
    # Vertical rules report +-90; fold everything into (-45, 45].
    folded = [a - 90 if a > 45 else a + 90 if a <= -45 else a for a in angles]
    return float(np.median(folded))


def deskew(image: np.ndarray, angle_threshold: float = 0.5) -> np.ndarray:
    """Correct rotational skew.

    Args:
        image: Input image (BGR or grayscale).
        angle_threshold: Minimum angle in degrees that triggers correction.

    Returns:
        Deskewed image with the same shape and dtype as the input.
    """
    angle = detect_skew_angle(image)

    if abs(angle) < angle_threshold:
        return image

    h, w = image.shape[:2]
    rotation_matrix = cv2.getRotationMatrix2D((w // 2, h // 2), angle, 1.0)
    result = cv2.warpAffine(
        image,
        rotation_matrix,
        (w, h),
        flags=cv2.INTER_CUBIC,
        borderMode=cv2.BORDER_REPLICATE,
    )
    logger.debug("Applied deskew correction: %.2f degrees", angle)
    return result


_ORTHOGONAL_ROTATIONS = {
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}


def rotate_orthogonal(image: np.ndarray, degrees: int) -> np.ndarray:
    """Rotate clockwise by a multiple of 90 degrees.

    Args:
        image: Input image.
        degrees: Clockwise rotation; values that are not a multiple of 90
            are rounded to the nearest one.

    Returns:
        Rotated image, or the input itself for a zero rotation.
    """
    normalized = (int(round(degrees / 90.0)) * 90) % 360
    if normalized == 0:
        return image
    return cv2.rotate(image, _ORTHOGONAL_ROTATIONS[normalized])


def _line_counts(image: np.ndarray, max_side: int = 1000) -> tuple[int, int]:
    """Count near-horizontal and near-vertical line segments."""
    gray = to_gray(image)
    h, w = gray.shape[:2]
    scale = max_side / max(h, w)
    if scale < 1.0:
        gray = cv2.resize(gray, (max(1, int(w * scale)), max(1, int(h * scale))), interpolation=cv2.INTER_AREA)
        h, w = gray.shape[:2]

    edges = cv2.Canny(gray, 50, 100, apertureSize=3)
    lines = cv2.HoughLinesP(
        edges, 1, np.pi / 180, 40, minLineLength=max(20, min(h, w) // 10), maxLineGap=5
    )
    if lines is None:
        return 0, 0

    horizontal = vertical = 0
    for x1, y1, x2, y2 in lines[:, 0]:
        angle = abs(np.degrees(np.arctan2(y2 - y1, x2 - x1))) % 180
        angle = min(angle, 180 - angle)
        if angle < 15:
            horizontal += 1
        elif angle > 75:
            vertical += 1
    return horizontal, vertical


def detect_orientation(image: np.ndarray) -> tuple[int, float]:
    """Guess which orthogonal rotation puts the page's text lines horizontal.

    Printed lines and rules dominate an upright page, so the axis with
    more long straight segments is taken as the text direction. Lines
    alone cannot tell 0 from 180 or 90 from 270; the smaller angle wins.

    Args:
        image: Input image (BGR or grayscale).

    Returns:
        Clockwise rotation (0 or 90) and a confidence in [0, 1].
    """
    horizontal, vertical = _line_counts(image)
    total = horizontal + vertical + 1
    upright, sideways = horizontal / total, vertical / total

    if sideways > upright:
        rotation, best, other, along = 90, sideways, upright, vertical
    else:
        rotation, best, other, along = 0, upright, sideways, horizontal

    confidence = best * 0.5 + (best - other) * 0.3 + min(along / 20, 1.0) * 0.2
    logger.debug(
        "Orientation %d (confidence %.2f, %d horizontal, %d vertical lines)",
        rotation,
        confidence,
        horizontal,
        vertical,
    )
    return rotation, float(confidence)
