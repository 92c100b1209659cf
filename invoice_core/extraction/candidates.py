"""Multi-method candidate generation for invoice fields.

Every OCR artifact (and the native text layer, when present) is scanned
by several independent methods, each proposing values with its own
confidence and a trust weight:

- label proximity: a lexicon label followed by a value to its right or
  on the line below
- regex: the lexicon's own field patterns
- format parsing: unlabeled dates and amounts inside a field's expected zone
- zone prior: the leading text line of a zone where a text field usually sits
- native text layer: label and regex matches over embedded PDF text

Candidates found inside a field's expected zone get a confidence bonus.
"""

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field

from invoice_core.artifacts.models import (
    CandidateArtifact,
    ExtractionMethod,
    InputArtifact,
    OcrArtifact,
    OcrToken,
    ZoneType,
)
from invoice_core.extraction.lexicon import Lexicon
from invoice_core.extraction.lines import TextLine, bbox_of, group_lines, text_layer_tokens
from invoice_core.extraction.normalizers import normalize, parse_amount
from invoice_core.extraction.rule_extractor import RuleExtractor
from invoice_core.utils.config import ExtractionConfig
from invoice_core.utils.hashing import canonical_json
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)

_MAX_LABEL_TOKENS = 4
_IDENTIFIER_SKIP = frozenset({":", "#", "no", "no.", "no:", "number", "num", "nr", "nr."})
_UNPARSED_PENALTY = 0.5


@dataclass
class ExtractionResult:
    """Candidates per field after ranking."""

    ranked: dict[str, list[CandidateArtifact]] = field(default_factory=dict)
    deprioritized: dict[str, list[CandidateArtifact]] = field(default_factory=dict)
    unresolved: list[str] = field(default_factory=list)

    def all_candidates(self) -> list[CandidateArtifact]:
        result = []
        for name in self.ranked:
            result.extend(self.ranked[name])
            result.extend(self.deprioritized.get(name, []))
        return result


@dataclass(frozen=True)
class _Label:
    field_name: str
    score: float
    start: int
    end: int


class CandidateExtractor:
    """Proposes field values from OCR tokens and native text.

    Args:
        config: Extraction configuration (weights, bonus, top N).
        lexicon: Vocabulary, already layered for the vendor if known.
    """

    def __init__(self, config: ExtractionConfig, lexicon: Lexicon) -> None:
        self.config = config
        self.lexicon = lexicon
        self.rules = RuleExtractor(lexicon)

    def weight(self, method: ExtractionMethod) -> float:
        return self.config.method_weights.get(method.value, 0.5)

    def extract(
        self,
        ocr_artifacts: list[OcrArtifact],
        inputs: Iterable[InputArtifact] = (),
    ) -> ExtractionResult:
        """Generate and rank candidates for every lexicon field.

        Args:
            ocr_artifacts: Recognition output for the document.
            inputs: Source pages, used for their native text layers.

        Returns:
            Ranked candidates; fields with none are listed as unresolved.
        """
        candidates: list[CandidateArtifact] = []
        for input_artifact in inputs:
            if input_artifact.text_layer:
                candidates.extend(self.from_text_layer(input_artifact))
        for artifact in ocr_artifacts:
            candidates.extend(self.from_ocr(artifact))
        result = self.rank(candidates)
        logger.info(
            "Extracted %d candidates from %d OCR artifacts, %d fields unresolved",
            len(candidates),
            len(ocr_artifacts),
            len(result.unresolved),
        )
        return result

    def from_ocr(self, artifact: OcrArtifact) -> list[CandidateArtifact]:
        """All candidates one OCR artifact supports."""
        lines = group_lines(artifact.tokens)
        return self._extract_lines(lines, artifact.artifact_id, artifact.zone_type, native=False)

    def from_text_layer(self, input_artifact: InputArtifact) -> list[CandidateArtifact]:
        """Candidates from the page's embedded text layer."""
        lines = group_lines(text_layer_tokens(input_artifact.text_layer or ""))
        return self._extract_lines(lines, input_artifact.artifact_id, None, native=True)

    def rank(self, candidates: list[CandidateArtifact]) -> ExtractionResult:
        """Order candidates per field and keep the top N distinct ones.

        Candidates are distinct by (source, value); repeats and ranks past N
        are kept as deprioritized rather than dropped.
        """
        by_field: dict[str, list[CandidateArtifact]] = defaultdict(list)
        for candidate in candidates:
            by_field[candidate.field_name].append(candidate)

        result = ExtractionResult()
        limit = self.config.max_candidates_per_field
        for name in self.lexicon.fields:
            ordered = sorted(
                by_field.get(name, []),
                key=lambda c: (-c.weighted_score, -c.confidence, c.artifact_id),
            )
            seen: set[tuple[str, str]] = set()
            unique, repeats = [], []
            for candidate in ordered:
                key = (candidate.source_id, candidate.value)
                (repeats if key in seen else unique).append(candidate)
                seen.add(key)
            result.ranked[name] = unique[:limit]
            result.deprioritized[name] = unique[limit:] + repeats
            if not unique:
                result.unresolved.append(name)
        return result

    def _extract_lines(
        self,
        lines: list[TextLine],
        source_id: str,
        zone_type: ZoneType | None,
        native: bool,
    ) -> list[CandidateArtifact]:
        labels = [self._find_labels(line) for line in lines]
        found: list[CandidateArtifact] = []
        found.extend(self._label_proximity(lines, labels, source_id, zone_type, native))
        found.extend(self._regex(lines, source_id, zone_type, native))
        if not native and zone_type is not None:
            found.extend(self._format_parse(lines, labels, source_id, zone_type))
            found.extend(self._zone_prior(lines, labels, source_id, zone_type))
            found.extend(self._line_items(lines, source_id, zone_type))
        return found

    def _find_labels(self, line: TextLine) -> list[_Label]:
        """Best label span per field in a line, dropping spans nested in stronger ones."""
        tokens = line.tokens
        best: dict[str, _Label] = {}
        for name, spec in self.lexicon.fields.items():
            if not spec.labels:
                continue
            for start in range(len(tokens)):
                for end in range(start + 1, min(start + _MAX_LABEL_TOKENS, len(tokens)) + 1):
                    text = " ".join(t.text for t in tokens[start:end])
                    score = self.lexicon.label_score(text, name)
                    if score < self.lexicon.min_label_score:
                        continue
                    current = best.get(name)
                    if (
                        current is None
                        or score > current.score
                        or (score == current.score and end - start > current.end - current.start)
                    ):
                        best[name] = _Label(name, score, start, end)

        labels = list(best.values())
        kept = []
        for label in labels:
            nested = any(
                other is not label
                and other.start <= label.start
                and label.end <= other.end
                and (other.end - other.start) > (label.end - label.start)
                and other.score >= label.score
                for other in labels
            )
            if not nested:
                kept.append(label)
        kept.sort(key=lambda lb: lb.start)
        return kept

    def _label_proximity(
        self,
        lines: list[TextLine],
        labels: list[list[_Label]],
        source_id: str,
        zone_type: ZoneType | None,
        native: bool,
    ) -> list[CandidateArtifact]:
        rules = self.lexicon.proximity
        found = []
        for index, line in enumerate(lines):
            line_labels = labels[index]
            for position, label in enumerate(line_labels):
                spec = self.lexicon.fields[label.field_name]
                label_tokens = line.tokens[label.start : label.end]
                label_right = label_tokens[-1].bbox.right
                stop = (
                    line_labels[position + 1].start
                    if position + 1 < len(line_labels)
                    else len(line.tokens)
                )
                value_tokens = [
                    t
                    for t in line.tokens[label.end : stop]
                    if t.bbox.x - label_right <= rules.max_horizontal_distance
                ]
                if not value_tokens:
                    value_tokens = self._tokens_below(lines, index, label_tokens)
                picked = _pick_value(spec.kind, value_tokens)
                if not picked:
                    continue
                raw = " ".join(t.text for t in picked)
                confidence = 100.0 * label.score * _mean_confidence(picked)
                label_text = " ".join(t.text for t in label_tokens)
                found.append(
                    self._make(
                        label.field_name,
                        raw,
                        ExtractionMethod.LABEL_PROXIMITY,
                        confidence,
                        source_id,
                        picked,
                        zone_type,
                        f"near label '{label_text}'",
                        native,
                    )
                )
        return found

    def _tokens_below(
        self, lines: list[TextLine], index: int, label_tokens: list[OcrToken]
    ) -> list[OcrToken]:
        if index + 1 >= len(lines):
            return []
        rules = self.lexicon.proximity
        current, below = lines[index], lines[index + 1]
        gap = below.bbox.y - current.bbox.bottom
        if gap > rules.max_vertical_distance:
            return []
        left = label_tokens[0].bbox.x
        right = label_tokens[-1].bbox.right + rules.max_horizontal_distance
        return [t for t in below.tokens if t.bbox.right >= left and t.bbox.x <= right]

    def _regex(
        self,
        lines: list[TextLine],
        source_id: str,
        zone_type: ZoneType | None,
        native: bool,
    ) -> list[CandidateArtifact]:
        found = []
        for line in lines:
            for match in self.rules.field_matches(line):
                confidence = 100.0 * match.pattern_confidence * match.ocr_confidence
                found.append(
                    self._make(
                        match.field_name,
                        match.raw,
                        ExtractionMethod.REGEX,
                        confidence,
                        source_id,
                        list(match.tokens),
                        zone_type,
                        "field pattern",
                        native,
                    )
                )
        return found

    def _format_parse(
        self,
        lines: list[TextLine],
        labels: list[list[_Label]],
        source_id: str,
        zone_type: ZoneType,
    ) -> list[CandidateArtifact]:
        targets = [
            spec
            for spec in self.lexicon.fields.values()
            if spec.kind in ("date", "amount") and zone_type in spec.zones
        ]
        if not targets:
            return []
        found = []
        for index, line in enumerate(lines):
            # A labelled line already says which field its value belongs to.
            if labels[index]:
                continue
            for spec in targets:
                for match in self.rules.format_matches(line, spec.kind):
                    confidence = 100.0 * match.pattern_confidence * match.ocr_confidence
                    found.append(
                        self._make(
                            spec.name,
                            match.raw,
                            ExtractionMethod.FORMAT_PARSE,
                            confidence,
                            source_id,
                            list(match.tokens),
                            zone_type,
                            f"unlabelled {spec.kind}",
                            False,
                        )
                    )
        return found

    def _zone_prior(
        self,
        lines: list[TextLine],
        labels: list[list[_Label]],
        source_id: str,
        zone_type: ZoneType,
    ) -> list[CandidateArtifact]:
        found = []
        for spec in self.lexicon.fields.values():
            if spec.kind != "text" or zone_type not in spec.zones:
                continue
            for index, line in enumerate(lines):
                text = line.text
                if labels[index] or not any(ch.isalpha() for ch in text):
                    continue
                if self.lexicon.is_placeholder(text) or text.strip().lower() == "invoice":
                    continue
                found.append(
                    self._make(
                        spec.name,
                        text,
                        ExtractionMethod.ZONE_PRIOR,
                        100.0 * line.confidence,
                        source_id,
                        line.tokens,
                        zone_type,
                        f"leading line of {zone_type.value}",
                        False,
                    )
                )
                break
        return found

    def _line_items(
        self, lines: list[TextLine], source_id: str, zone_type: ZoneType
    ) -> list[CandidateArtifact]:
        spec = self.lexicon.fields.get("line_items")
        if spec is None or spec.kind != "table" or zone_type not in spec.zones:
            return []
        rows = []
        row_tokens: list[OcrToken] = []
        for line in lines:
            row = self._parse_row(line)
            if row is not None:
                rows.append(row)
                row_tokens.extend(line.tokens)
        if not rows:
            return []
        return [
            self._make(
                "line_items",
                canonical_json(rows),
                ExtractionMethod.FORMAT_PARSE,
                100.0 * _mean_confidence(row_tokens),
                source_id,
                row_tokens,
                zone_type,
                f"{len(rows)} table rows",
                False,
            )
        ]

    def _parse_row(self, line: TextLine) -> dict[str, str] | None:
        tokens = line.tokens
        amounts = []
        cut = len(tokens)
        while cut > 0 and len(amounts) < 3:
            value = parse_amount(tokens[cut - 1].text)
            if value is None:
                break
            amounts.insert(0, value)
            cut -= 1
        description = " ".join(t.text for t in tokens[:cut]).strip()
        if not amounts or not description:
            return None
        for name, spec in self.lexicon.fields.items():
            if spec.kind == "amount" and self.lexicon.label_score(description, name) >= (
                self.lexicon.min_label_score
            ):
                return None

        row = {"description": description, "amount": f"{amounts[-1]:.2f}"}
        if len(amounts) >= 2:
            row["unit_price"] = f"{amounts[-2]:.2f}"
        if len(amounts) == 3:
            row["quantity"] = format(amounts[0].normalize(), "f")
        return row

    def _make(
        self,
        field_name: str,
        raw: str,
        method: ExtractionMethod,
        confidence: float,
        source_id: str,
        tokens: list[OcrToken],
        zone_type: ZoneType | None,
        detail: str,
        native: bool,
    ) -> CandidateArtifact:
        spec = self.lexicon.fields[field_name]
        normalized = raw if spec.kind == "table" else normalize(spec.kind, raw)
        if normalized is None and spec.kind in ("date", "amount"):
            confidence *= _UNPARSED_PENALTY
            detail = f"{detail}, unparsed"
        if zone_type is not None and zone_type in spec.zones and method != ExtractionMethod.ZONE_PRIOR:
            confidence += self.config.zone_prior_bonus
            detail = f"{detail}, in {zone_type.value}"
        if native:
            method = ExtractionMethod.NATIVE_TEXT_LAYER
        return CandidateArtifact(
            field_name=field_name,
            raw_span=raw,
            normalized_value=normalized,
            method=method,
            trust_weight=self.weight(method),
            confidence=int(round(max(0.0, min(100.0, confidence)))),
            source_id=source_id,
            bbox=bbox_of(tokens) if tokens and not native else None,
            zone_type=zone_type,
            detail=detail,
        )


def _mean_confidence(tokens: list[OcrToken]) -> float:
    if not tokens:
        return 0.0
    return sum(t.confidence for t in tokens) / len(tokens)


def _pick_value(kind: str, tokens: list[OcrToken]) -> list[OcrToken]:
    """Choose the tokens after a label that make up its value."""
    if not tokens:
        return []
    if kind == "amount":
        for i, token in enumerate(tokens):
            if parse_amount(token.text) is not None:
                return [token]
            if i + 1 < len(tokens) and parse_amount(token.text + tokens[i + 1].text) is not None:
                return [token, tokens[i + 1]]
        return [next((t for t in tokens if any(c.isdigit() for c in t.text)), tokens[0])]
    if kind == "date":
        for i in range(len(tokens)):
            for width in (3, 2, 1):
                window = tokens[i : i + width]
                if len(window) == width and normalize("date", " ".join(t.text for t in window)):
                    return window
        return [next((t for t in tokens if any(c.isdigit() for c in t.text)), tokens[0])]
    if kind == "identifier":
        for token in tokens:
            if token.text.strip().lower() not in _IDENTIFIER_SKIP:
                return [token]
        return []
    if kind == "table":
        return []
    return tokens
