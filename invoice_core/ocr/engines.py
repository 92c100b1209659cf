"""Text recognition engines behind one capability interface.

Every engine exposes ``run(image, profile, timeout)`` and returns word
tokens with boxes relative to the image it was given. The set of engines
is closed: ``tesseract`` (pytesseract) and ``easyocr`` (optional extra).
"""

import threading
from typing import Protocol

import numpy as np
import pytesseract
from PIL import Image

from invoice_core.artifacts.models import BoundingBox, OcrToken
from invoice_core.errors import (
    EngineCrashError,
    EngineTimeoutError,
    EngineUnavailableError,
)
from invoice_core.ocr.profiles import OcrProfile
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)


class OcrEngine(Protocol):
    """Capability interface shared by all recognition engines."""

    name: str

    def run(
        self, image: np.ndarray, profile: OcrProfile, timeout: float | None = None
    ) -> list[OcrToken]: ...


class TesseractEngine:
    """Tesseract recognition through pytesseract.

    Args:
        tesseract_cmd: Path to the Tesseract executable.
            If ``None``, uses the system default.
    """

    name = "tesseract"

    def __init__(self, tesseract_cmd: str | None = None) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    def run(
        self, image: np.ndarray, profile: OcrProfile, timeout: float | None = None
    ) -> list[OcrToken]:
        """Recognize words in an image.

        Args:
            image: Zone crop as a numpy array.
            profile: Recognition settings.
            timeout: Seconds before the Tesseract process is killed.

        Returns:
            Tokens with confidence scaled to [0, 1].

        Raises:
            EngineTimeoutError: If Tesseract exceeded the timeout.
            EngineCrashError: If Tesseract failed while recognizing.
            EngineUnavailableError: If the Tesseract binary is missing.
        """
        pil_image = Image.fromarray(image)
        try:
            data = pytesseract.image_to_data(
                pil_image,
                lang=profile.language,
                config=profile.tesseract_config(),
                output_type=pytesseract.Output.DICT,
                timeout=timeout or 0,
            )
        except pytesseract.TesseractNotFoundError as exc:
            raise EngineUnavailableError(str(exc), stage="ocr") from exc
        except pytesseract.TesseractError as exc:
            raise EngineCrashError(f"Tesseract failed: {exc}", stage="ocr") from exc
        except RuntimeError as exc:
            # pytesseract signals a killed process with a bare RuntimeError.
            raise EngineTimeoutError(f"Tesseract timed out after {timeout}s", stage="ocr") from exc

        tokens: list[OcrToken] = []
        for i in range(len(data["text"])):
            conf = float(data["conf"][i])
            word_text = str(data["text"][i]).strip()

            if conf > 0 and word_text:
                tokens.append(
                    OcrToken(
                        text=word_text,
                        bbox=BoundingBox(
                            x=int(data["left"][i]),
                            y=int(data["top"][i]),
                            width=int(data["width"][i]),
                            height=int(data["height"][i]),
                        ),
                        confidence=conf / 100.0,
                        line_num=int(data["line_num"][i]),
                        block_num=int(data["block_num"][i]),
                    )
                )

        logger.debug("Tesseract profile %s produced %d tokens", profile.name, len(tokens))
        return tokens


class EasyOcrEngine:
    """Deep-learning recognition through EasyOCR.

    The ``easyocr`` package is an optional dependency and readers are
    created lazily, one per language.
    """

    name = "easyocr"

    def __init__(self, gpu: bool = False) -> None:
        self.gpu = gpu
        self._readers: dict[str, object] = {}
        self._lock = threading.Lock()

    def _get_reader(self, language: str):
        with self._lock:
            reader = self._readers.get(language)
            if reader is None:
                try:
                    import easyocr
                except ImportError as exc:
                    raise EngineUnavailableError(
                        "easyocr is not installed; install the 'easyocr' extra",
                        stage="ocr",
                    ) from exc
                # EasyOCR uses ISO 639-1 codes, Tesseract uses 639-2.
                codes = [_EASYOCR_LANGS.get(code, code) for code in language.split("+")]
                reader = easyocr.Reader(codes, gpu=self.gpu)
                self._readers[language] = reader
            return reader

    def run(
        self, image: np.ndarray, profile: OcrProfile, timeout: float | None = None
    ) -> list[OcrToken]:
        reader = self._get_reader(profile.language)
        try:
            results = reader.readtext(
                image,
                allowlist=profile.whitelist,
                blocklist=profile.blacklist or "",
            )
        except RuntimeError as exc:
            raise EngineCrashError(f"EasyOCR failed: {exc}", stage="ocr") from exc

        tokens: list[OcrToken] = []
        for line_num, (points, text, conf) in enumerate(results):
            xs = [int(p[0]) for p in points]
            ys = [int(p[1]) for p in points]
            box = BoundingBox(min(xs), min(ys), max(xs) - min(xs), max(ys) - min(ys))
            tokens.extend(_split_words(str(text), box, float(conf), line_num))
        return tokens


_EASYOCR_LANGS = {"eng": "en", "deu": "de", "fra": "fr", "spa": "es", "ita": "it", "por": "pt"}


def _split_words(text: str, box: BoundingBox, confidence: float, line_num: int) -> list[OcrToken]:
    """Split a detected phrase into word tokens with proportional boxes."""
    words = text.split()
    if not words:
        return []
    total_chars = sum(len(w) for w in words) + len(words) - 1
    tokens = []
    offset = 0
    for word in words:
        x = box.x + int(box.width * offset / total_chars)
        width = max(1, int(box.width * len(word) / total_chars))
        tokens.append(
            OcrToken(word, BoundingBox(x, box.y, width, box.height), confidence, line_num=line_num)
        )
        offset += len(word) + 1
    return tokens


class EngineRegistry:
    """Engines available to the orchestrator, keyed by name."""

    def __init__(self, engines: list[OcrEngine] | None = None) -> None:
        self._engines: dict[str, OcrEngine] = {}
        for engine in engines or []:
            self.register(engine)

    def register(self, engine: OcrEngine) -> None:
        self._engines[engine.name] = engine

    def get(self, name: str) -> OcrEngine:
        """Look up an engine.

        Raises:
            EngineUnavailableError: If no engine has that name.
        """
        engine = self._engines.get(name)
        if engine is None:
            raise EngineUnavailableError(f"No OCR engine registered as '{name}'", stage="ocr")
        return engine

    def names(self) -> list[str]:
        return sorted(self._engines)


def default_registry(tesseract_cmd: str | None = None) -> EngineRegistry:
    return EngineRegistry([TesseractEngine(tesseract_cmd), EasyOcrEngine()])
