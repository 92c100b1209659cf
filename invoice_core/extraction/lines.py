"""Reading-order reconstruction from positioned tokens.

Tokens are grouped into lines by vertical overlap rather than by engine
line numbers, so output from any engine (or the native text layer) can
be treated the same way.
"""

from dataclasses import dataclass, field

from invoice_core.artifacts.models import BoundingBox, OcrToken


@dataclass
class TextLine:
    """Tokens sharing a baseline, ordered left to right."""

    tokens: list[OcrToken] = field(default_factory=list)

    @property
    def text(self) -> str:
        return " ".join(t.text for t in self.tokens)

    @property
    def bbox(self) -> BoundingBox:
        return bbox_of(self.tokens)

    @property
    def confidence(self) -> float:
        if not self.tokens:
            return 0.0
        return sum(t.confidence for t in self.tokens) / len(self.tokens)

    @property
    def center_y(self) -> float:
        return sum(t.bbox.center_y for t in self.tokens) / len(self.tokens)

    def span(self, start: int, end: int) -> list[OcrToken]:
        """Tokens overlapping a character range of :attr:`text`."""
        selected = []
        offset = 0
        for token in self.tokens:
            token_end = offset + len(token.text)
            if offset < end and start < token_end:
                selected.append(token)
            offset = token_end + 1
        return selected


def bbox_of(tokens: list[OcrToken]) -> BoundingBox:
    """Smallest box enclosing every token."""
    box = tokens[0].bbox
    for token in tokens[1:]:
        box = box.union(token.bbox)
    return box


def group_lines(tokens: list[OcrToken] | tuple[OcrToken, ...], tolerance: float = 0.5) -> list[TextLine]:
    """Group tokens into lines, top to bottom.

    Args:
        tokens: Tokens in page coordinates.
        tolerance: Maximum vertical center offset, as a fraction of the
            taller token's height, for two tokens to share a line.

    Returns:
        Lines sorted by vertical position, tokens sorted by x.
    """
    lines: list[TextLine] = []
    for token in sorted(tokens, key=lambda t: (t.bbox.center_y, t.bbox.x)):
        for line in reversed(lines):
            reference = max(line.tokens, key=lambda t: t.bbox.height)
            limit = tolerance * max(reference.bbox.height, token.bbox.height, 1)
            if abs(line.center_y - token.bbox.center_y) <= limit:
                line.tokens.append(token)
                break
        else:
            lines.append(TextLine([token]))

    for line in lines:
        line.tokens.sort(key=lambda t: t.bbox.x)
    lines.sort(key=lambda ln: ln.center_y)
    return lines


def text_layer_tokens(text: str) -> list[OcrToken]:
    """Lay out native text-layer lines as tokens on a synthetic grid.

    Each character is 10 units wide and each line 20 units tall, so the
    same line grouping and proximity rules apply as for recognized text.
    """
    tokens = []
    for line_num, raw_line in enumerate(text.splitlines()):
        column = 0
        for word in raw_line.replace("\t", " ").split(" "):
            if word.strip():
                tokens.append(
                    OcrToken(
                        text=word.strip(),
                        bbox=BoundingBox(column * 10, line_num * 20, len(word) * 10, 10),
                        confidence=1.0,
                        line_num=line_num,
                    )
                )
            column += len(word) + 1
    return tokens
