"""Configuration management for the invoice document core.

Loads and validates YAML configuration with defaults for variant
generation, zone detection, OCR orchestration, extraction, resolution,
calibration, and the artifact cache. Data files that operators edit while
the service runs (OCR profiles, lexicon, validation rules) are wrapped in
a reloading source that re-reads them when they change on disk.
"""

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any, Generic, TypeVar

import yaml
from pydantic import BaseModel, Field

from invoice_core.errors import ConfigError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class VariantConfig(BaseModel):
    """Configuration for page variant generation and ranking."""

    top_k: int = 4
    max_variants: int = 12
    min_readiness_score: float = 0.3
    adaptive_block_size: int = 15
    adaptive_c: int = 10
    denoise_strength: int = 10
    sharpen_amount: float = 0.5
    contrast_factor: float = 1.3
    clahe_clip_limit: float = 2.0
    clahe_tile_size: int = 8
    upscale_factor: float = 1.5
    deskew_angle_threshold: float = 0.5
    auto_orientation: bool = True
    orientation_min_confidence: float = 0.6


class ZoneConfig(BaseModel):
    """Configuration for zone detection, masking, and cropping."""

    min_confidence: float = 0.5
    zone_padding: int = 5
    auto_mask_logos: bool = True
    auto_mask_watermarks: bool = True
    auto_mask_repeated_strips: bool = True
    strip_height_ratio: float = 0.08
    strip_similarity_threshold: float = 0.85
    mask_registry_path: str | None = None


class OrchestratorConfig(BaseModel):
    """Configuration for budgeted OCR orchestration."""

    max_concurrent: int = 4
    per_call_timeout_s: float = 30.0
    document_budget_s: float = 30.0
    max_passes_per_zone: int = 5
    early_stop_enabled: bool = True
    early_stop_threshold: int = 85
    early_stop_min_sources: int = 2
    critical_fields: list[str] = Field(
        default_factory=lambda: [
            "vendor_name",
            "invoice_number",
            "invoice_date",
            "total",
        ]
    )
    retry_max_attempts: int = 3
    retry_backoff_s: list[float] = Field(default_factory=lambda: [0.25, 0.5, 1.0])


class ExtractionConfig(BaseModel):
    """Configuration for candidate extraction."""

    max_candidates_per_field: int = 5
    zone_prior_bonus: int = 15
    method_weights: dict[str, float] = Field(
        default_factory=lambda: {
            "native_text_layer": 1.0,
            "label_proximity": 0.9,
            "regex": 0.8,
            "format_parse": 0.75,
            "zone_prior": 0.6,
        }
    )


class ResolutionConfig(BaseModel):
    """Configuration for field resolution and cross-field validation."""

    consensus_increment: int = 10
    consensus_max_boost: int = 20
    max_alternatives: int = 3
    auto_approval_threshold: int = 85


class CalibrationConfig(BaseModel):
    """Configuration for confidence calibration and drift detection."""

    bucket_width: int = 10
    min_samples: int = 50
    min_bucket_samples: int = 5
    drift_threshold: float = 5.0
    window_size: int = 1000
    maintenance_interval_s: float = 60.0


class CacheConfig(BaseModel):
    """Configuration for the content-addressed artifact cache."""

    ttl_seconds: float = 86400.0
    max_entries: int = 5000


class PathsConfig(BaseModel):
    """Locations of hot-reloadable data files."""

    profiles_path: str = "configs/ocr_profiles.yaml"
    lexicon_path: str = "configs/lexicon.yaml"
    rules_path: str = "configs/validation_rules.yaml"


class AppConfig(BaseModel):
    """Top-level configuration."""

    variants: VariantConfig = Field(default_factory=VariantConfig)
    zones: ZoneConfig = Field(default_factory=ZoneConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    resolution: ResolutionConfig = Field(default_factory=ResolutionConfig)
    calibration: CalibrationConfig = Field(default_factory=CalibrationConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    log_level: str = "INFO"


def read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML mapping from disk.

    Args:
        path: File to read.

    Returns:
        Parsed mapping, empty when the file is empty.

    Raises:
        ConfigError: If the file cannot be parsed or is not a mapping.
    """
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at top level of {path}")
    return data


def load_config(path: Path | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file.
            Defaults to configs/config.yaml.

    Returns:
        Validated application configuration.
    """
    if path is None:
        path = Path("configs/config.yaml")

    if path.exists():
        logger.info("Loading configuration from %s", path)
        return AppConfig(**read_yaml(path))

    logger.info("No config file found at %s, using defaults", path)
    return AppConfig()


class ReloadingYamlSource(Generic[T]):
    """A YAML-backed object that is re-parsed when its file changes.

    Readers always get a fully built object; a reload that fails to parse
    keeps serving the last good version.

    Args:
        path: YAML file to watch.
        parse: Builds the domain object from the parsed mapping.
        default: Builds the object used when the file does not exist.
    """

    def __init__(
        self,
        path: Path,
        parse: Callable[[dict[str, Any]], T],
        default: Callable[[], T],
    ) -> None:
        self.path = Path(path)
        self._parse = parse
        self._default = default
        self._lock = threading.Lock()
        self._mtime: float | None = None
        self._value: T | None = None

    def get(self) -> T:
        """Return the current object, reloading it if the file changed."""
        mtime = self._current_mtime()
        value = self._value
        if value is not None and mtime == self._mtime:
            return value

        with self._lock:
            if self._value is not None and mtime == self._mtime:
                return self._value
            if mtime is None:
                logger.debug("No file at %s, using defaults", self.path)
                self._value = self._default()
            else:
                try:
                    self._value = self._parse(read_yaml(self.path))
                    logger.info("Loaded %s", self.path)
                except ConfigError as exc:
                    if self._value is None:
                        raise
                    logger.warning("Reload of %s failed, keeping previous: %s", self.path, exc)
            self._mtime = mtime
            return self._value

    def _current_mtime(self) -> float | None:
        try:
            return self.path.stat().st_mtime
        except FileNotFoundError:
            return None
