"""Regex-based value matching over reconstructed text lines.

Two families of patterns are applied: field patterns from the lexicon
(which know what field they describe) and generic format patterns for
dates and amounts (which only know the value's shape).
"""

import re
from collections.abc import Iterator
from dataclasses import dataclass

from invoice_core.artifacts.models import OcrToken
from invoice_core.extraction.lexicon import Lexicon
from invoice_core.extraction.lines import TextLine

# Pattern definitions: (regex, base_confidence)
_DATE_PATTERNS: list[tuple[re.Pattern, float]] = [
    (re.compile(r"\b(\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4})\b"), 0.9),
    (re.compile(r"\b(\d{4}[/\-]\d{1,2}[/\-]\d{1,2})\b"), 0.9),
    (
        re.compile(
            r"\b(\d{1,2}\s+(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\s+\d{4})\b",
            re.IGNORECASE,
        ),
        0.85,
    ),
    (
        re.compile(
            r"\b((?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\s+\d{1,2},?\s+\d{4})\b",
            re.IGNORECASE,
        ),
        0.85,
    ),
]

_AMOUNT_PATTERNS: list[tuple[re.Pattern, float]] = [
    (re.compile(r"([$€£]\s*[\d,]+\.\d{2})\b"), 0.95),
    (re.compile(r"\b([\d,]+\.\d{2})\s*(?:USD|EUR|GBP)\b"), 0.9),
    (re.compile(r"(?<![\w.])(-?[\d,]*\d\.\d{2})(?![\w.])"), 0.8),
]

FORMAT_PATTERNS = {"date": _DATE_PATTERNS, "amount": _AMOUNT_PATTERNS}


@dataclass(frozen=True)
class RegexMatch:
    """A matched value with the tokens it was read from."""

    field_name: str
    raw: str
    tokens: tuple[OcrToken, ...]
    pattern_confidence: float

    @property
    def ocr_confidence(self) -> float:
        if not self.tokens:
            return 0.0
        return sum(t.confidence for t in self.tokens) / len(self.tokens)


class RuleExtractor:
    """Matches lexicon and format patterns against text lines.

    Args:
        lexicon: Vocabulary supplying per-field patterns.
    """

    def __init__(self, lexicon: Lexicon) -> None:
        self.lexicon = lexicon

    def field_matches(self, line: TextLine) -> Iterator[RegexMatch]:
        """Yield matches of every field's own patterns in a line."""
        text = line.text
        for name, spec in self.lexicon.fields.items():
            for pattern in spec.patterns:
                for match in pattern.finditer(text):
                    group = 1 if match.groups() else 0
                    raw = match.group(group).strip()
                    if not raw:
                        continue
                    start, end = match.span(group)
                    yield RegexMatch(name, raw, tuple(line.span(start, end)), 0.9)

    def format_matches(self, line: TextLine, kind: str) -> Iterator[RegexMatch]:
        """Yield shape-only matches (``date`` or ``amount``) in a line.

        Overlapping matches from lower-confidence patterns are dropped.
        """
        text = line.text
        taken: list[tuple[int, int]] = []
        for pattern, confidence in FORMAT_PATTERNS.get(kind, []):
            for match in pattern.finditer(text):
                start, end = match.span(1)
                if any(start < e and s < end for s, e in taken):
                    continue
                taken.append((start, end))
                yield RegexMatch("", match.group(1), tuple(line.span(start, end)), confidence)
