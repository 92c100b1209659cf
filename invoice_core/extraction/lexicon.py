"""Field vocabulary: label synonyms, value patterns, and zone priors.

The universal lexicon applies to every invoice. Vendor overrides are
layered on top: vendor synonyms are searched first and merged with the
universal ones, vendor patterns are added, and a vendor may replace a
field's expected identifier format.
"""

import re
from dataclasses import dataclass, field, replace
from difflib import SequenceMatcher
from pathlib import Path
from typing import Any

from invoice_core.artifacts.models import ZoneType
from invoice_core.errors import ConfigError, LexiconConfigError
from invoice_core.utils.config import read_yaml
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)

FIELD_KINDS = ("text", "identifier", "date", "amount", "table")


@dataclass(frozen=True)
class FieldSpec:
    """Vocabulary for one invoice field."""

    name: str
    kind: str = "text"
    labels: tuple[str, ...] = ()
    patterns: tuple[re.Pattern, ...] = ()
    format: re.Pattern | None = None
    zones: tuple[ZoneType, ...] = ()


@dataclass(frozen=True)
class ProximityRules:
    """How far from a label a value may sit, in page pixels."""

    max_horizontal_distance: int = 300
    max_vertical_distance: int = 50


@dataclass(frozen=True)
class Lexicon:
    """Resolved vocabulary for one extraction run."""

    fields: dict[str, FieldSpec]
    proximity: ProximityRules = field(default_factory=ProximityRules)
    min_label_score: float = 0.7
    fuzzy_threshold: float = 0.8
    placeholders: frozenset[str] = frozenset()
    vendor_overrides: dict[str, dict[str, Any]] = field(default_factory=dict)
    vendor: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Lexicon":
        """Build a lexicon from parsed YAML.

        Raises:
            LexiconConfigError: If a field definition is invalid.
        """
        settings = data.get("settings", {}) or {}
        proximity = data.get("proximity", {}) or {}
        fields = {
            name: _parse_field(name, raw or {})
            for name, raw in (data.get("fields", {}) or {}).items()
        }
        overrides = data.get("vendor_overrides", {}) or {}
        for vendor, spec in overrides.items():
            for name in (spec or {}).get("fields", {}) or {}:
                if name not in fields:
                    raise LexiconConfigError(
                        f"Vendor '{vendor}' overrides unknown field '{name}'"
                    )
        try:
            rules = ProximityRules(**proximity)
        except TypeError as exc:
            raise LexiconConfigError(f"Invalid proximity rules: {exc}") from exc
        return cls(
            fields=fields,
            proximity=rules,
            min_label_score=float(settings.get("min_label_match_score", 0.7)),
            fuzzy_threshold=float(settings.get("fuzzy_match_threshold", 0.8)),
            placeholders=frozenset(p.lower() for p in data.get("placeholders", []) or []),
            vendor_overrides={str(k): v or {} for k, v in overrides.items()},
        )

    @classmethod
    def load(cls, path: Path) -> "Lexicon":
        try:
            return cls.from_dict(read_yaml(path))
        except LexiconConfigError:
            raise
        except ConfigError as exc:
            raise LexiconConfigError(exc.message) from exc

    def for_vendor(self, vendor: str | None) -> "Lexicon":
        """Return this lexicon with a vendor's overrides layered on top.

        Args:
            vendor: Vendor fingerprint, or ``None`` for the universal lexicon.

        Returns:
            A merged lexicon; the receiver is unchanged.
        """
        if vendor is None or vendor not in self.vendor_overrides:
            return self
        override = self.vendor_overrides[vendor]
        fields = dict(self.fields)
        for name, raw in (override.get("fields", {}) or {}).items():
            base = fields[name]
            extra = _parse_field(name, {"kind": base.kind, **(raw or {})})
            labels = extra.labels + tuple(lb for lb in base.labels if lb not in extra.labels)
            fields[name] = replace(
                base,
                labels=labels,
                patterns=extra.patterns + base.patterns,
                format=extra.format or base.format,
            )
        placeholders = self.placeholders | frozenset(
            p.lower() for p in override.get("placeholders", []) or []
        )
        return replace(self, fields=fields, placeholders=placeholders, vendor=vendor)

    def with_vendor_override(self, vendor: str, override: dict[str, Any]) -> "Lexicon":
        """Register overrides for a vendor, replacing any from the lexicon file.

        Raises:
            LexiconConfigError: If the override names an unknown field.
        """
        unknown = [n for n in (override.get("fields", {}) or {}) if n not in self.fields]
        if unknown:
            raise LexiconConfigError(
                f"Vendor '{vendor}' overrides unknown fields: {', '.join(sorted(unknown))}"
            )
        overrides = {**self.vendor_overrides, vendor: override}
        return replace(self, vendor_overrides=overrides)

    def label_score(self, text: str, field_name: str) -> float:
        """Best match of ``text`` against a field's label synonyms.

        Exact matches score 1.0, substring matches score by length ratio,
        and near-misses score by their ``difflib`` similarity ratio when it
        clears the fuzzy threshold.

        Returns:
            Score in [0, 1].
        """
        spec = self.fields.get(field_name)
        if spec is None:
            return 0.0
        candidate = _normalize_label(text)
        if not candidate:
            return 0.0

        best = 0.0
        for label in spec.labels:
            synonym = _normalize_label(label)
            if candidate == synonym:
                return 1.0
            if synonym in candidate:
                best = max(best, len(synonym) / len(candidate))
            elif candidate in synonym:
                best = max(best, len(candidate) / len(synonym))
            ratio = SequenceMatcher(None, candidate, synonym).ratio()
            if ratio >= self.fuzzy_threshold:
                best = max(best, ratio)
        return best

    def matches_format(self, field_name: str, value: str) -> bool:
        spec = self.fields.get(field_name)
        if spec is None or spec.format is None:
            return True
        return bool(spec.format.fullmatch(value.strip()))

    def is_placeholder(self, value: str) -> bool:
        return value.strip().lower() in self.placeholders

    def fields_for_zone(self, zone_type: ZoneType) -> list[str]:
        return [name for name, spec in self.fields.items() if zone_type in spec.zones]


def _normalize_label(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[:#.]+$", "", text.strip().lower())).strip()


def _parse_field(name: str, raw: dict[str, Any]) -> FieldSpec:
    kind = raw.get("kind", "text")
    if kind not in FIELD_KINDS:
        raise LexiconConfigError(f"Field '{name}' has unknown kind '{kind}'")
    try:
        patterns = tuple(re.compile(p, re.IGNORECASE) for p in raw.get("patterns", []) or [])
        fmt = re.compile(raw["format"]) if raw.get("format") else None
        zones = tuple(ZoneType(z) for z in raw.get("zones", []) or [])
    except re.error as exc:
        raise LexiconConfigError(f"Field '{name}' has an invalid pattern: {exc}") from exc
    except ValueError as exc:
        raise LexiconConfigError(f"Field '{name}' names an unknown zone: {exc}") from exc
    return FieldSpec(
        name=name,
        kind=kind,
        labels=tuple(str(label) for label in raw.get("labels", []) or []),
        patterns=patterns,
        format=fmt,
        zones=zones,
    )


def default_lexicon() -> Lexicon:
    """Built-in vocabulary used when no lexicon file is configured."""
    return Lexicon.from_dict(
        {
            "fields": {
                "vendor_name": {
                    "kind": "text",
                    "labels": ["vendor", "supplier", "from", "sold by", "bill from", "remit to"],
                    "zones": ["HeaderFields"],
                },
                "invoice_number": {
                    "kind": "identifier",
                    "labels": [
                        "invoice number",
                        "invoice no",
                        "invoice #",
                        "invoice",
                        "inv no",
                        "inv #",
                        "bill number",
                    ],
                    "patterns": [r"(?:invoice|inv)\s*(?:no\.?|number|#)?\s*[:#]?\s*([A-Z0-9][A-Z0-9\-/]{2,})"],
                    "format": r"[A-Za-z0-9][A-Za-z0-9\-/]{2,29}",
                    "zones": ["HeaderFields"],
                },
                "invoice_date": {
                    "kind": "date",
                    "labels": ["invoice date", "date", "date of issue", "issued", "bill date"],
                    "zones": ["HeaderFields"],
                },
                "due_date": {
                    "kind": "date",
                    "labels": ["due date", "payment due", "due"],
                    "zones": ["HeaderFields", "FooterNotes"],
                },
                "subtotal": {
                    "kind": "amount",
                    "labels": ["subtotal", "sub total", "sub-total", "net amount"],
                    "zones": ["TotalsBox"],
                },
                "tax": {
                    "kind": "amount",
                    "labels": ["tax", "vat", "sales tax", "gst"],
                    "zones": ["TotalsBox"],
                },
                "total": {
                    "kind": "amount",
                    "labels": ["total", "grand total", "amount due", "total due", "balance due"],
                    "patterns": [
                        r"(?:grand\s*total|total\s*due|amount\s*due|balance\s*due)[:\s]*\$?\s*([\d,]+\.\d{2})",
                    ],
                    "zones": ["TotalsBox"],
                },
                "line_items": {"kind": "table", "zones": ["LineItemsTable"]},
            },
            "placeholders": ["unknown", "vendor", "n/a", "na", "none", "tbd", "-"],
        }
    )
