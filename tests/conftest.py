"""Shared test fixtures for the invoice core test suite."""

import threading
from pathlib import Path

import cv2
import numpy as np
import pytest

from invoice_core.artifacts.models import BoundingBox, OcrToken

INVOICE_LINES = [
    "Vendor: ACME Corp",
    "Invoice # INV-1001",
    "Date: 01/15/2024",
    "Widget 2 50.00 100.00",
    "Subtotal 100.00",
    "Tax 10.00",
    "Total 110.00",
]


def tokens_for(lines: list[str], confidence: float = 0.95, x0: int = 10, y0: int = 10) -> list[OcrToken]:
    """Lay out text lines as tokens: 10px per character, 30px per line."""
    tokens = []
    for line_num, line in enumerate(lines):
        column = 0
        for word in line.split(" "):
            if word:
                tokens.append(
                    OcrToken(
                        text=word,
                        bbox=BoundingBox(x0 + column * 10, y0 + line_num * 30, len(word) * 10, 20),
                        confidence=confidence,
                        line_num=line_num,
                    )
                )
            column += len(word) + 1
    return tokens


class FakeEngine:
    """Scripted recognition engine that counts its calls.

    Args:
        lines: Text returned for every call, laid out by :func:`tokens_for`.
        confidence: Confidence of every token.
        errors: Exceptions raised by the first calls, in order.
        name: Engine name the profiles refer to.
    """

    def __init__(
        self,
        lines: list[str] | None = None,
        confidence: float = 0.95,
        errors: list[Exception] | None = None,
        name: str = "tesseract",
    ) -> None:
        self.name = name
        self.lines = INVOICE_LINES if lines is None else lines
        self.confidence = confidence
        self.errors = list(errors or [])
        self.calls = 0
        self._lock = threading.Lock()

    def run(self, image, profile, timeout=None) -> list[OcrToken]:
        with self._lock:
            self.calls += 1
            error = self.errors.pop(0) if self.errors else None
        if error is not None:
            raise error
        return tokens_for(self.lines, self.confidence)


def draw_invoice(height: int = 900, width: int = 700) -> np.ndarray:
    """A white BGR page with dark text-like bars and a ruled table."""
    page = np.full((height, width, 3), 255, dtype=np.uint8)
    for i in range(4):
        y = 30 + i * 35
        cv2.rectangle(page, (40, y), (40 + 200 + 30 * i, y + 14), (20, 20, 20), -1)
    top, bottom = int(height * 0.30), int(height * 0.62)
    for y in range(top, bottom, 40):
        cv2.line(page, (30, y), (width - 30, y), (0, 0, 0), 2)
        cv2.rectangle(page, (50, y + 12), (300, y + 26), (40, 40, 40), -1)
    for i in range(3):
        y = height - 150 + i * 40
        cv2.rectangle(page, (width - 190, y), (width - 40, y + 14), (30, 30, 30), -1)
    return page


def encode_png(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def sample_image() -> np.ndarray:
    """Create a simple synthetic grayscale test image."""
    image = np.zeros((200, 300), dtype=np.uint8)
    image[50:150, 50:250] = 255
    return image


@pytest.fixture
def sample_color_image() -> np.ndarray:
    """Create a simple synthetic BGR test image."""
    image = np.zeros((200, 300, 3), dtype=np.uint8)
    image[50:150, 50:250] = (255, 255, 255)
    return image


@pytest.fixture
def invoice_image() -> np.ndarray:
    return draw_invoice()


@pytest.fixture
def invoice_png(invoice_image: np.ndarray) -> bytes:
    return encode_png(invoice_image)


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def config_dir(project_root: Path) -> Path:
    """Return the configs directory path."""
    return project_root / "configs"
