"""Centralized logging setup for the invoice document core.

Provides the root logging configuration plus a document-scoped adapter so
that messages emitted while processing one document carry its identity
and current pipeline stage.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that flood DEBUG output during page decoding and OCR.
NOISY_LOGGERS = ("PIL", "easyocr", "pytesseract")


def setup_logging(level: str = "INFO", quiet: tuple[str, ...] = NOISY_LOGGERS) -> None:
    """Configure the root logger with a standard format.

    Calling this more than once leaves existing handlers in place. The
    ``quiet`` loggers are held at WARNING whatever the root level is.

    Args:
        level: Logging level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        quiet: Names of library loggers to hold at WARNING.
    """
    for name in quiet:
        logging.getLogger(name).setLevel(logging.WARNING)

    root = logging.getLogger()
    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def get_logger(name: str) -> logging.Logger:
    """Get a named logger instance.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)


class DocumentLogAdapter(logging.LoggerAdapter):
    """Prefixes log messages with a document id and the active stage."""

    def __init__(self, logger: logging.Logger, document_id: str) -> None:
        super().__init__(logger, {"document_id": document_id, "stage": "-"})

    def set_stage(self, stage: str) -> None:
        self.extra["stage"] = stage

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        doc = str(self.extra["document_id"])[:12]
        return f"[doc={doc} stage={self.extra['stage']}] {msg}", kwargs


def get_document_logger(name: str, document_id: str) -> DocumentLogAdapter:
    """Get a logger adapter bound to a single document.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.
        document_id: Identity of the document being processed.

    Returns:
        Adapter that tags every message with document and stage.
    """
    return DocumentLogAdapter(logging.getLogger(name), document_id)
