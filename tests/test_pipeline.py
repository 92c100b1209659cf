"""End-to-end tests for the document pipeline with a scripted engine."""

from datetime import date
from pathlib import Path

import pytest
from conftest import INVOICE_LINES, FakeEngine

from invoice_core.artifacts.models import BoundingBox, ZoneType
from invoice_core.errors import UnknownArtifactError
from invoice_core.extraction.lexicon import default_lexicon
from invoice_core.ocr.engines import EngineRegistry
from invoice_core.ocr.profiles import ProfileSet
from invoice_core.pipeline import DocumentPipeline, DocumentState, PageInput
from invoice_core.resolution.rules import RulesEngine
from invoice_core.utils.config import AppConfig

COMPLETED = [
    DocumentState.INGESTED,
    DocumentState.PREPROCESSING,
    DocumentState.ZONE_DETECTION,
    DocumentState.OCR_RUNNING,
    DocumentState.CANDIDATE_EXTRACTION,
    DocumentState.RESOLUTION,
    DocumentState.CALIBRATED,
]


def _pipeline(engine: FakeEngine, **orchestrator) -> DocumentPipeline:
    config = AppConfig(
        variants={"max_variants": 2, "top_k": 1},
        orchestrator={"max_concurrent": 1, **orchestrator},
    )
    return DocumentPipeline(
        config=config,
        engines=EngineRegistry([engine]),
        profiles=ProfileSet.default(),
        lexicon=default_lexicon(),
        rules=RulesEngine.default(today=lambda: date(2024, 6, 1)),
    )


class CancellingEngine(FakeEngine):
    """Cancels its document from inside the first recognition call."""

    pipeline: DocumentPipeline | None = None

    def run(self, image, profile, timeout=None):
        self.pipeline.cancel("doc-1")
        return super().run(image, profile, timeout)


class TestDocumentPipeline:
    """Tests for DocumentPipeline."""

    def test_end_to_end_values(self, invoice_png: bytes) -> None:
        engine = FakeEngine()
        result = _pipeline(engine).process("doc-1", [PageInput(invoice_png)])

        assert result.state == DocumentState.CALIBRATED
        assert result.transitions == COMPLETED
        values = result.values()
        assert values["vendor_name"] == "ACME Corp"
        assert values["invoice_number"] == "INV-1001"
        assert values["invoice_date"] == "2024-01-15"
        assert values["subtotal"] == "100.00"
        assert values["tax"] == "10.00"
        assert values["total"] == "110.00"
        assert result.run == 1
        assert not result.has_critical

    def test_early_stop_skips_units(self, invoice_png: bytes) -> None:
        engine = FakeEngine()
        result = _pipeline(engine).process("doc-1", [PageInput(invoice_png)])
        assert result.ocr.early_stopped
        assert result.ocr.executed <= 3
        assert result.ocr.skipped > 0
        assert engine.calls == result.ocr.executed

    def test_confidence_and_review_routing(self, invoice_png: bytes) -> None:
        result = _pipeline(FakeEngine()).process("doc-1", [PageInput(invoice_png)])
        total = result.resolved["total"]
        assert 85 <= total.confidence <= 100
        assert "total" not in result.review_fields
        assert "due_date" in result.review_fields
        assert result.resolved["due_date"].unresolved
        assert not result.auto_approvable

    def test_provenance_reaches_input(self, invoice_png: bytes) -> None:
        pipeline = _pipeline(FakeEngine())
        result = pipeline.process("doc-1", [PageInput(invoice_png)])
        kinds = {node["kind"] for node in result.provenance["nodes"]}
        assert {"input", "variant", "zone", "ocr", "candidate", "resolved"} <= kinds
        total = result.resolved["total"]
        assert pipeline.store.require(total.evidence[0].candidate_id)

    def test_reprocessing_uses_cache(self, invoice_png: bytes) -> None:
        engine = FakeEngine()
        pipeline = _pipeline(engine, early_stop_enabled=False)
        first = pipeline.process("doc-1", [PageInput(invoice_png)])
        calls = engine.calls
        assert first.ocr.executed == calls

        second = pipeline.process("doc-1", [PageInput(invoice_png)])
        assert second.ocr.executed == 0
        assert second.ocr.cache_hits == first.ocr.planned
        assert engine.calls == calls
        assert second.run == 2
        assert second.resolved["total"].supersedes == first.resolved["total"].artifact_id
        assert second.values() == first.values()

    def test_line_items_when_table_is_read(self, invoice_png: bytes) -> None:
        result = _pipeline(FakeEngine(), early_stop_enabled=False).process("doc-1", [PageInput(invoice_png)])
        assert result.values()["line_items"] is not None
        assert not result.resolved["line_items"].has_critical

    def test_corrupt_bytes_fail_at_ingest(self) -> None:
        result = _pipeline(FakeEngine()).process("doc-1", [PageInput(b"definitely not an image")])
        assert result.failed
        assert result.failure.stage == DocumentState.INGESTED
        assert result.transitions == [DocumentState.INGESTED, DocumentState.FAILED]
        assert result.to_dict()["failure"]["stage"] == "Ingested"

    def test_no_pages_fail(self) -> None:
        result = _pipeline(FakeEngine()).process("doc-1", [])
        assert result.failed
        assert result.failure.reason == "Document has no pages"

    def test_contradicting_total_routed_to_review(self, invoice_png: bytes) -> None:
        lines = INVOICE_LINES[:-1] + ["Total 200.00"]
        result = _pipeline(FakeEngine(lines=lines)).process("doc-1", [PageInput(invoice_png)])
        assert result.resolved["total"].has_critical
        assert "total" in result.review_fields
        assert result.has_critical

    def test_low_confidence_routed_to_review(self, invoice_png: bytes) -> None:
        result = _pipeline(FakeEngine(confidence=0.3)).process("doc-1", [PageInput(invoice_png)])
        assert result.resolved["vendor_name"].confidence < 85
        assert "vendor_name" in result.review_fields

    def test_text_layer_settles_with_one_agreeing_read(self, invoice_png: bytes) -> None:
        engine = FakeEngine()
        text = "Vendor: ACME Corp\nInvoice # INV-1001\nDate: 01/15/2024\nTotal 110.00"
        result = _pipeline(engine).process("doc-1", [PageInput(invoice_png, text_layer=text)])
        assert result.ocr.early_stopped
        assert 1 <= engine.calls <= 2
        assert result.values()["total"] == "110.00"
        methods = {e.method.value for e in result.resolved["total"].evidence}
        assert "native_text_layer" in methods
        assert result.resolved["total"].confidence == 100

    def test_vendor_lexicon_override(self, invoice_png: bytes) -> None:
        pipeline = _pipeline(FakeEngine())
        pipeline.vendor_profiles.set_lexicon_overrides(
            "acme", {"fields": {"invoice_number": {"format": r"R-\d+"}}}
        )
        result = pipeline.process("doc-1", [PageInput(invoice_png)], vendor_fingerprint="acme")
        flags = [f.rule for f in result.resolved["invoice_number"].flags]
        assert flags == ["invoice_number_format"]
        assert result.vendor_fingerprint == "acme"

    def test_remember_masks(self) -> None:
        pipeline = _pipeline(FakeEngine())
        pipeline.remember_masks("acme", [BoundingBox(0, 0, 350, 90)], 700, 900)
        masks = pipeline.vendor_profiles.masks("acme")
        assert len(masks) == 1
        assert masks[0].to_pixels(700, 900) == BoundingBox(0, 0, 350, 90)

    def test_reprocess_region(self, invoice_png: bytes) -> None:
        engine = FakeEngine()
        pipeline = _pipeline(engine)
        first = pipeline.process("doc-1", [PageInput(invoice_png)])
        calls = engine.calls

        second = pipeline.reprocess_region(
            "doc-1", BoundingBox(0, 0, 700, 200), ZoneType.HEADER_FIELDS, profile_names=["single_line"]
        )
        assert second.state == DocumentState.CALIBRATED
        assert second.run == 2
        assert second.ocr.executed == 1
        assert engine.calls == calls + 1
        assert second.resolved["vendor_name"].supersedes == first.resolved["vendor_name"].artifact_id

    def test_reprocess_unknown_document(self) -> None:
        with pytest.raises(UnknownArtifactError):
            _pipeline(FakeEngine()).reprocess_region("missing", BoundingBox(0, 0, 10, 10))

    def test_cancel_unknown_document(self) -> None:
        assert not _pipeline(FakeEngine()).cancel("doc-1")

    def test_cancel_during_recognition(self, invoice_png: bytes) -> None:
        engine = CancellingEngine()
        pipeline = _pipeline(engine, early_stop_enabled=False)
        engine.pipeline = pipeline
        result = pipeline.process("doc-1", [PageInput(invoice_png)])
        assert result.failed
        assert result.failure.stage == DocumentState.OCR_RUNNING
        assert result.ocr.cancelled
        assert engine.calls == 1

    def test_calibration_applied_to_later_runs(self, invoice_png: bytes) -> None:
        from invoice_core.collaborators import ReviewOutcome

        pipeline = _pipeline(FakeEngine())
        for i in range(60):
            pipeline.record_outcome(ReviewOutcome(f"doc-{i}", "total", 100, i % 2 == 0))
        pipeline.calibrator.flush()

        result = pipeline.process("doc-1", [PageInput(invoice_png)])
        total = result.resolved["total"]
        assert total.raw_confidence >= 90
        assert total.calibration_scope == "global"
        assert total.confidence == total.raw_confidence - 50
        assert "total" in result.review_fields
        assert result.calibration["curves"]["global"]["samples"] == 60

    def test_from_config_file(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("log_level: DEBUG\norchestrator:\n  max_concurrent: 3\n")
        pipeline = DocumentPipeline.from_config_file(path, engines=EngineRegistry([FakeEngine()]))
        assert pipeline.config.orchestrator.max_concurrent == 3
        assert pipeline.config.log_level == "DEBUG"
