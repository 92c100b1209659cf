"""Tests for configuration loading and hot reloading."""

import os
from pathlib import Path

import pytest
import yaml

from invoice_core.errors import ConfigError
from invoice_core.extraction.lexicon import Lexicon
from invoice_core.ocr.profiles import ProfileSet
from invoice_core.resolution.rules import RulesEngine
from invoice_core.utils.config import (
    AppConfig,
    CalibrationConfig,
    ExtractionConfig,
    OrchestratorConfig,
    ReloadingYamlSource,
    VariantConfig,
    load_config,
    read_yaml,
)


class TestSectionDefaults:
    """Tests for configuration section defaults."""

    def test_variant_defaults(self) -> None:
        cfg = VariantConfig()
        assert cfg.top_k == 4
        assert cfg.min_readiness_score == 0.3

    def test_orchestrator_defaults(self) -> None:
        cfg = OrchestratorConfig()
        assert cfg.early_stop_threshold == 85
        assert cfg.early_stop_min_sources == 2
        assert set(cfg.critical_fields) == {"vendor_name", "invoice_number", "invoice_date", "total"}

    def test_native_text_layer_has_highest_weight(self) -> None:
        weights = ExtractionConfig().method_weights
        assert weights["native_text_layer"] == max(weights.values())

    def test_calibration_defaults(self) -> None:
        cfg = CalibrationConfig()
        assert cfg.bucket_width == 10
        assert cfg.drift_threshold == 5.0

    def test_override(self) -> None:
        cfg = AppConfig(variants={"top_k": 2}, log_level="DEBUG")
        assert cfg.variants.top_k == 2
        assert cfg.log_level == "DEBUG"
        assert cfg.zones.min_confidence == 0.5


class TestLoadConfig:
    """Tests for load_config and read_yaml."""

    def test_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        cfg = load_config(tmp_path / "missing.yaml")
        assert cfg == AppConfig()

    def test_load_from_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"orchestrator": {"max_concurrent": 2}, "log_level": "WARNING"}))
        cfg = load_config(path)
        assert cfg.orchestrator.max_concurrent == 2
        assert cfg.log_level == "WARNING"

    def test_invalid_yaml_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("key: [unclosed")
        with pytest.raises(ConfigError):
            read_yaml(path)

    def test_non_mapping_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError):
            read_yaml(path)

    def test_empty_file_is_empty_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert read_yaml(path) == {}

    def test_shipped_configs_load(self, config_dir: Path) -> None:
        cfg = load_config(config_dir / "config.yaml")
        assert cfg.extraction.zone_prior_bonus == 15
        profiles = ProfileSet.load(config_dir / "ocr_profiles.yaml")
        assert "single_block" in profiles.profiles
        lexicon = Lexicon.load(config_dir / "lexicon.yaml")
        assert "total" in lexicon.fields
        rules = RulesEngine.load(config_dir / "validation_rules.yaml")
        assert any(r.name == "total_matches_components" for r in rules.rules)


class TestReloadingYamlSource:
    """Tests for hot reloading of YAML-backed objects."""

    def _source(self, path: Path) -> ReloadingYamlSource:
        return ReloadingYamlSource(path, lambda data: data["value"], lambda: "default")

    def test_default_when_missing(self, tmp_path: Path) -> None:
        assert self._source(tmp_path / "none.yaml").get() == "default"

    def test_reloads_on_change(self, tmp_path: Path) -> None:
        path = tmp_path / "data.yaml"
        path.write_text("value: one\n")
        source = self._source(path)
        assert source.get() == "one"

        path.write_text("value: two\n")
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))
        assert source.get() == "two"

    def test_failed_reload_keeps_previous(self, tmp_path: Path) -> None:
        path = tmp_path / "data.yaml"
        path.write_text("value: good\n")
        source = self._source(path)
        assert source.get() == "good"

        path.write_text("value: [broken")
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))
        assert source.get() == "good"

    def test_first_load_failure_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "data.yaml"
        path.write_text("value: [broken")
        with pytest.raises(ConfigError):
            self._source(path).get()
