"""Tests for the lexicon, normalizers, line grouping, and candidate extraction."""

import json
from datetime import date

import pytest
from conftest import INVOICE_LINES, tokens_for

from invoice_core.artifacts.models import (
    BoundingBox,
    CandidateArtifact,
    ExtractionMethod,
    InputArtifact,
    OcrArtifact,
    OcrToken,
    ZoneType,
)
from invoice_core.errors import LexiconConfigError
from invoice_core.extraction.candidates import CandidateExtractor
from invoice_core.extraction.lexicon import Lexicon, default_lexicon
from invoice_core.extraction.lines import group_lines, text_layer_tokens
from invoice_core.extraction.normalizers import (
    normalize,
    normalize_amount,
    normalize_identifier,
    normalize_text,
    parse_amount,
    parse_date,
)
from invoice_core.ocr.early_stop import EarlyStopMonitor
from invoice_core.utils.config import ExtractionConfig


def _ocr(lines: list[str], zone_type: ZoneType, profile: str = "p1", confidence: float = 0.95) -> OcrArtifact:
    return OcrArtifact(
        zone_id=f"zone-{zone_type.value}",
        variant_id="variant",
        zone_type=zone_type,
        engine="tesseract",
        profile_name=profile,
        profile_fingerprint=f"fp-{profile}",
        tokens=tuple(tokens_for(lines, confidence)),
    )


class TestLexicon:
    """Tests for label matching and vendor layering."""

    def setup_method(self) -> None:
        self.lexicon = default_lexicon()

    def test_exact_label_ignores_trailing_punctuation(self) -> None:
        assert self.lexicon.label_score("Invoice No:", "invoice_number") == 1.0
        assert self.lexicon.label_score("TOTAL", "total") == 1.0

    def test_fuzzy_label(self) -> None:
        assert self.lexicon.label_score("Tota1", "total") == pytest.approx(0.8)

    def test_unrelated_text(self) -> None:
        assert self.lexicon.label_score("Widget", "total") < self.lexicon.min_label_score
        assert self.lexicon.label_score("Total", "no_such_field") == 0.0

    def test_subtotal_is_not_total(self) -> None:
        assert self.lexicon.label_score("Subtotal", "total") < self.lexicon.min_label_score
        assert self.lexicon.label_score("Subtotal", "subtotal") == 1.0

    def test_fields_for_zone(self) -> None:
        assert set(self.lexicon.fields_for_zone(ZoneType.TOTALS_BOX)) == {"subtotal", "tax", "total"}

    def test_vendor_override_layers_on_top(self) -> None:
        lexicon = self.lexicon.with_vendor_override(
            "acme",
            {"fields": {"invoice_number": {"labels": ["ref"], "format": r"R-\d+"}}, "placeholders": ["acme"]},
        )
        layered = lexicon.for_vendor("acme")

        spec = layered.fields["invoice_number"]
        assert spec.labels[0] == "ref"
        assert "invoice number" in spec.labels
        assert layered.matches_format("invoice_number", "R-12")
        assert not layered.matches_format("invoice_number", "INV-1001")
        assert layered.is_placeholder("ACME")
        assert layered.vendor == "acme"

        assert lexicon.for_vendor(None) is lexicon
        assert lexicon.for_vendor("other") is lexicon
        assert not lexicon.is_placeholder("acme")

    def test_override_of_unknown_field(self) -> None:
        with pytest.raises(LexiconConfigError):
            self.lexicon.with_vendor_override("acme", {"fields": {"po_box": {"labels": ["po"]}}})

    def test_unknown_kind(self) -> None:
        with pytest.raises(LexiconConfigError):
            Lexicon.from_dict({"fields": {"x": {"kind": "colour"}}})

    def test_invalid_pattern(self) -> None:
        with pytest.raises(LexiconConfigError):
            Lexicon.from_dict({"fields": {"x": {"patterns": ["("]}}})

    def test_unknown_zone(self) -> None:
        with pytest.raises(LexiconConfigError):
            Lexicon.from_dict({"fields": {"x": {"zones": ["Margin"]}}})


class TestNormalizers:
    """Tests for canonical value forms."""

    def test_dates(self) -> None:
        assert parse_date("01/15/2024") == date(2024, 1, 15)
        assert parse_date("15/01/2024") == date(2024, 1, 15)
        assert parse_date("15.01.2024") == date(2024, 1, 15)
        assert parse_date("January 5th, 2024") == date(2024, 1, 5)
        assert parse_date("not a date") is None

    def test_amounts(self) -> None:
        assert normalize_amount("$1,234.5") == "1234.50"
        assert normalize_amount("(12.00)") == "-12.00"
        assert normalize_amount("110.00 USD") == "110.00"
        assert parse_amount("123.4S") is None
        assert normalize_amount("12.345") is None

    def test_identifier_and_text(self) -> None:
        assert normalize_identifier("#inv-1001.") == "INV-1001"
        assert normalize_text("  ACME   Corp: ") == "ACME Corp"
        assert normalize_text(" : ") is None

    def test_dispatch(self) -> None:
        assert normalize("date", "2024-01-15") == "2024-01-15"
        assert normalize("table", " rows ") == "rows"


class TestLines:
    """Tests for reading-order reconstruction."""

    def test_groups_shuffled_tokens(self) -> None:
        tokens = tokens_for(["Total 110.00", "Tax 10.00"])
        lines = group_lines(list(reversed(tokens)))
        assert [line.text for line in lines] == ["Total 110.00", "Tax 10.00"]

    def test_slight_vertical_jitter_same_line(self) -> None:
        tokens = [
            OcrToken("Total", BoundingBox(10, 100, 50, 20), 0.9),
            OcrToken("110.00", BoundingBox(80, 104, 60, 20), 0.9),
        ]
        assert len(group_lines(tokens)) == 1

    def test_span(self) -> None:
        line = group_lines(tokens_for(["Invoice # INV-1001"]))[0]
        assert [t.text for t in line.span(10, 18)] == ["INV-1001"]

    def test_text_layer_tokens(self) -> None:
        tokens = text_layer_tokens("Total 110.00\n\nTax\t10.00")
        assert [t.text for t in tokens] == ["Total", "110.00", "Tax", "10.00"]
        assert all(t.confidence == 1.0 for t in tokens)
        assert tokens[2].line_num == 2


class TestCandidateExtractor:
    """Tests for CandidateExtractor."""

    def setup_method(self) -> None:
        self.extractor = CandidateExtractor(ExtractionConfig(), default_lexicon())

    def _by_field(self, candidates: list[CandidateArtifact], name: str) -> list[CandidateArtifact]:
        return [c for c in candidates if c.field_name == name]

    def test_header_fields_by_label(self) -> None:
        result = self.extractor.extract([_ocr(INVOICE_LINES[:3], ZoneType.HEADER_FIELDS)])
        assert result.ranked["vendor_name"][0].value == "ACME Corp"
        assert result.ranked["invoice_number"][0].value == "INV-1001"
        assert result.ranked["invoice_date"][0].value == "2024-01-15"
        assert result.ranked["vendor_name"][0].method == ExtractionMethod.LABEL_PROXIMITY

    def test_regex_candidate(self) -> None:
        candidates = self.extractor.from_ocr(_ocr(["Invoice # INV-1001"], ZoneType.HEADER_FIELDS))
        methods = {c.method for c in self._by_field(candidates, "invoice_number")}
        assert methods == {ExtractionMethod.LABEL_PROXIMITY, ExtractionMethod.REGEX}

    def test_value_on_line_below(self) -> None:
        artifact = _ocr(["Invoice Date", "01/15/2024"], ZoneType.HEADER_FIELDS)
        result = self.extractor.extract([artifact])
        best = result.ranked["invoice_date"][0]
        assert best.value == "2024-01-15"
        assert best.method == ExtractionMethod.LABEL_PROXIMITY
        # The longer "invoice date" label wins over the nested "invoice".
        assert all(
            c.method != ExtractionMethod.LABEL_PROXIMITY for c in result.ranked["invoice_number"]
        )

    def test_totals(self) -> None:
        result = self.extractor.extract([_ocr(INVOICE_LINES[4:], ZoneType.TOTALS_BOX)])
        assert result.ranked["subtotal"][0].value == "100.00"
        assert result.ranked["tax"][0].value == "10.00"
        assert result.ranked["total"][0].value == "110.00"

    def test_zone_bonus(self) -> None:
        in_zone = self.extractor.from_ocr(_ocr(["Vendor: ACME Corp"], ZoneType.HEADER_FIELDS))
        out_of_zone = self.extractor.from_ocr(_ocr(["Vendor: ACME Corp"], ZoneType.FOOTER_NOTES))
        assert self._by_field(in_zone, "vendor_name")[0].confidence == 100
        assert self._by_field(out_of_zone, "vendor_name")[0].confidence == 95

    def test_unlabelled_amounts_by_format(self) -> None:
        candidates = self.extractor.from_ocr(_ocr(["Widget 2 50.00 100.00"], ZoneType.TOTALS_BOX))
        totals = self._by_field(candidates, "total")
        assert {c.value for c in totals} == {"50.00", "100.00"}
        assert all(c.method == ExtractionMethod.FORMAT_PARSE for c in totals)

    def test_zone_prior_skips_placeholders(self) -> None:
        candidates = self.extractor.from_ocr(_ocr(["N/A", "ACME Corp"], ZoneType.HEADER_FIELDS))
        vendor = self._by_field(candidates, "vendor_name")
        assert len(vendor) == 1
        assert vendor[0].method == ExtractionMethod.ZONE_PRIOR
        assert vendor[0].value == "ACME Corp"
        assert vendor[0].confidence == 95

    def test_misread_amount_is_penalized(self) -> None:
        candidates = self.extractor.from_ocr(_ocr(["Total 123.4S"], ZoneType.TOTALS_BOX))
        total = self._by_field(candidates, "total")[0]
        assert total.normalized_value is None
        assert total.value == "123.4S"
        assert total.confidence < 70

    def test_native_text_layer_beats_misread(self) -> None:
        page = InputArtifact(b"page", "doc-1", text_layer="Total 123.45")
        result = self.extractor.extract([_ocr(["Total 123.4S"], ZoneType.TOTALS_BOX)], inputs=[page])
        best = result.ranked["total"][0]
        assert best.value == "123.45"
        assert best.method == ExtractionMethod.NATIVE_TEXT_LAYER
        assert best.bbox is None
        assert best.source_id == page.artifact_id

    def test_line_items(self) -> None:
        candidates = self.extractor.from_ocr(_ocr(INVOICE_LINES, ZoneType.LINE_ITEMS_TABLE))
        items = self._by_field(candidates, "line_items")
        assert len(items) == 1
        rows = json.loads(items[0].value)
        assert rows == [{"amount": "100.00", "description": "Widget", "quantity": "2", "unit_price": "50.00"}]

    def test_unresolved_fields(self) -> None:
        result = self.extractor.extract([_ocr(["Total 110.00"], ZoneType.TOTALS_BOX)])
        assert "total" not in result.unresolved
        assert {"vendor_name", "invoice_number", "line_items"} <= set(result.unresolved)

    def test_rank_distinct_by_source_and_value(self) -> None:
        def candidate(method: ExtractionMethod, source: str, value: str) -> CandidateArtifact:
            return CandidateArtifact("total", value, value, method, 0.9, 90, source)

        result = self.extractor.rank(
            [
                candidate(ExtractionMethod.LABEL_PROXIMITY, "a", "110.00"),
                candidate(ExtractionMethod.REGEX, "a", "110.00"),
                candidate(ExtractionMethod.LABEL_PROXIMITY, "b", "110.00"),
            ]
        )
        assert len(result.ranked["total"]) == 2
        assert len(result.deprioritized["total"]) == 1
        assert len(result.all_candidates()) == 3

    def test_rank_keeps_top_n(self) -> None:
        extractor = CandidateExtractor(ExtractionConfig(max_candidates_per_field=2), default_lexicon())
        candidates = [
            CandidateArtifact("total", f"{i}.00", f"{i}.00", ExtractionMethod.REGEX, 0.8, 50 + i, "src")
            for i in range(5)
        ]
        result = extractor.rank(candidates)
        assert [c.value for c in result.ranked["total"]] == ["4.00", "3.00"]
        assert len(result.deprioritized["total"]) == 3


class TestEarlyStopWithExtractor:
    """Tests for early-stop tracking driven by real candidates."""

    def setup_method(self) -> None:
        self.extractor = CandidateExtractor(ExtractionConfig(), default_lexicon())
        self.monitor = EarlyStopMonitor(["total"], 85, 2, self.extractor.from_ocr)

    def test_needs_two_agreeing_sources(self) -> None:
        assert not self.monitor.observe(_ocr(["Total 110.00"], ZoneType.TOTALS_BOX, "p1"))
        assert self.monitor.observe(_ocr(["Total 110.00"], ZoneType.TOTALS_BOX, "p2"))
        assert self.monitor.satisfied

    def test_same_source_twice_does_not_settle(self) -> None:
        artifact = _ocr(["Total 110.00"], ZoneType.TOTALS_BOX, "p1")
        self.monitor.observe(artifact)
        assert not self.monitor.observe(artifact)

    def test_disagreeing_sources(self) -> None:
        self.monitor.observe(_ocr(["Total 110.00"], ZoneType.TOTALS_BOX, "p1"))
        assert not self.monitor.observe(_ocr(["Total 111.00"], ZoneType.TOTALS_BOX, "p2"))
        assert self.monitor.settled_fields() == set()

    def test_low_confidence_ignored(self) -> None:
        self.monitor.observe(_ocr(["Total 110.00"], ZoneType.FOOTER_NOTES, "p1", confidence=0.5))
        assert not self.monitor.observe(_ocr(["Total 110.00"], ZoneType.FOOTER_NOTES, "p2", confidence=0.5))

    def test_text_layer_counts_as_one_source(self) -> None:
        page = InputArtifact(b"page", "doc-1", text_layer="Total 110.00")
        assert not self.monitor.seed(self.extractor.from_text_layer(page))
        assert self.monitor.settled_fields() == set()
        assert self.monitor.observe(_ocr(["Total 110.00"], ZoneType.TOTALS_BOX, "p1"))

    def test_text_layer_and_disagreeing_read(self) -> None:
        page = InputArtifact(b"page", "doc-1", text_layer="Total 110.00")
        self.monitor.seed(self.extractor.from_text_layer(page))
        assert not self.monitor.observe(_ocr(["Total 111.00"], ZoneType.TOTALS_BOX, "p1"))
