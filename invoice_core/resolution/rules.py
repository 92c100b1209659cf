"""Configurable cross-field validation for provisionally resolved values.

Rules are loaded from ``configs/validation_rules.yaml``; each names a
check type, the field its flag lands on, a severity, and a confidence
penalty. A rule whose inputs are missing does not fire, except the
placeholder check, which treats a missing vendor as a violation.
"""

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any

from invoice_core.artifacts.models import Severity, ValidationFlag
from invoice_core.errors import ConfigError
from invoice_core.extraction.lexicon import Lexicon
from invoice_core.extraction.normalizers import parse_amount, parse_date
from invoice_core.utils.config import read_yaml
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class RuleSpec:
    """One configured validation rule."""

    name: str
    type: str
    field: str
    severity: Severity
    penalty: int = 0
    params: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True


@dataclass
class ValidationReport:
    """Flags raised for a document, keyed by the field they apply to."""

    flags: dict[str, list[ValidationFlag]] = field(default_factory=dict)
    checked: int = 0

    def for_field(self, field_name: str) -> tuple[ValidationFlag, ...]:
        return tuple(self.flags.get(field_name, ()))

    @property
    def has_critical(self) -> bool:
        return any(
            f.severity == Severity.CRITICAL for flags in self.flags.values() for f in flags
        )


class RulesEngine:
    """Applies cross-field rules to a set of field values.

    Args:
        rules: Rule definitions, applied in order.
        today: Returns the processing date, injectable for tests.
    """

    def __init__(
        self,
        rules: list[RuleSpec],
        today: Callable[[], date] = date.today,
    ) -> None:
        self.rules = rules
        self._today = today
        self._validators: dict[str, Callable[[dict[str, str | None], RuleSpec, Lexicon], str | None]] = {
            "sum_check": self._check_sum,
            "not_future": self._check_not_future,
            "date_order": self._check_date_order,
            "identifier_format": self._check_identifier_format,
            "not_placeholder": self._check_not_placeholder,
            "line_items_sum": self._check_line_items_sum,
            "positive_amount": self._check_positive_amount,
            "amount_range": self._check_amount_range,
        }
        unknown = [r.type for r in rules if r.type not in self._validators]
        if unknown:
            raise ConfigError(f"Unknown rule types: {', '.join(sorted(set(unknown)))}")

    @classmethod
    def from_dict(cls, data: dict[str, Any], today: Callable[[], date] = date.today) -> "RulesEngine":
        """Build an engine from parsed YAML.

        Raises:
            ConfigError: If a rule is malformed.
        """
        rules = []
        for name, raw in (data.get("rules", {}) or {}).items():
            raw = dict(raw or {})
            try:
                severity = Severity(raw.pop("severity", "warning"))
                rule_type = raw.pop("type")
                field_name = raw.pop("field")
            except ValueError as exc:
                raise ConfigError(f"Rule '{name}' has an invalid severity: {exc}") from exc
            except KeyError as exc:
                raise ConfigError(f"Rule '{name}' is missing {exc}") from exc
            rules.append(
                RuleSpec(
                    name=str(name),
                    type=rule_type,
                    field=field_name,
                    severity=severity,
                    penalty=int(raw.pop("penalty", 0)),
                    enabled=bool(raw.pop("enabled", True)),
                    params=raw,
                )
            )
        return cls(rules, today=today)

    @classmethod
    def load(cls, path: Path) -> "RulesEngine":
        return cls.from_dict(read_yaml(path))

    @classmethod
    def default(cls, today: Callable[[], date] = date.today) -> "RulesEngine":
        """Provide the standard invoice rules when no config is available."""
        return cls.from_dict(
            {
                "rules": {
                    "total_matches_components": {
                        "type": "sum_check",
                        "field": "total",
                        "parts": ["subtotal", "tax"],
                        "tolerance": 0.02,
                        "severity": "critical",
                        "penalty": 30,
                    },
                    "invoice_date_not_future": {
                        "type": "not_future",
                        "field": "invoice_date",
                        "severity": "critical",
                        "penalty": 30,
                    },
                    "due_date_after_invoice_date": {
                        "type": "date_order",
                        "field": "due_date",
                        "after": "invoice_date",
                        "severity": "warning",
                        "penalty": 10,
                    },
                    "invoice_number_format": {
                        "type": "identifier_format",
                        "field": "invoice_number",
                        "severity": "warning",
                        "penalty": 15,
                    },
                    "vendor_not_placeholder": {
                        "type": "not_placeholder",
                        "field": "vendor_name",
                        "severity": "critical",
                        "penalty": 40,
                    },
                    "line_items_match_subtotal": {
                        "type": "line_items_sum",
                        "field": "line_items",
                        "against": "subtotal",
                        "tolerance_ratio": 0.05,
                        "severity": "warning",
                        "penalty": 10,
                    },
                    "total_positive": {
                        "type": "positive_amount",
                        "field": "total",
                        "severity": "critical",
                        "penalty": 30,
                    },
                    "total_plausible": {
                        "type": "amount_range",
                        "field": "total",
                        "max": 1000000,
                        "severity": "warning",
                        "penalty": 10,
                    },
                }
            },
            today=today,
        )

    def validate(self, values: dict[str, str | None], lexicon: Lexicon) -> ValidationReport:
        """Run every enabled rule against provisional field values.

        Args:
            values: Normalized value per field, ``None`` when unresolved.
            lexicon: Vocabulary supplying formats and placeholders.

        Returns:
            Report with flags keyed by the field each rule targets.
        """
        report = ValidationReport()
        for rule in self.rules:
            if not rule.enabled:
                continue
            report.checked += 1
            message = self._validators[rule.type](values, rule, lexicon)
            if message is None:
                continue
            report.flags.setdefault(rule.field, []).append(
                ValidationFlag(rule.name, rule.severity, message, rule.penalty)
            )
            log = logger.warning if rule.severity == Severity.CRITICAL else logger.info
            log("Rule %s flagged %s: %s", rule.name, rule.field, message)

        logger.info(
            "Validation %s (%d checks, %d flagged fields)",
            "FAILED" if report.has_critical else "PASSED",
            report.checked,
            len(report.flags),
        )
        return report

    def _check_sum(self, values, rule, lexicon) -> str | None:
        total = _amount(values.get(rule.field))
        parts = [_amount(values.get(name)) for name in rule.params.get("parts", [])]
        if total is None or not parts or any(p is None for p in parts):
            return None
        expected = sum(parts, Decimal("0"))
        tolerance = Decimal(str(rule.params.get("tolerance", 0.02)))
        if abs(total - expected) > tolerance:
            names = " + ".join(rule.params["parts"])
            return f"{rule.field} {total} does not equal {names} ({expected})"
        return None

    def _check_not_future(self, values, rule, lexicon) -> str | None:
        value = values.get(rule.field)
        parsed = parse_date(value) if value else None
        if parsed is None:
            return None
        today = self._today()
        if parsed > today:
            return f"{rule.field} {parsed.isoformat()} is after processing date {today.isoformat()}"
        return None

    def _check_date_order(self, values, rule, lexicon) -> str | None:
        later = values.get(rule.field)
        earlier = values.get(rule.params.get("after", ""))
        later_date = parse_date(later) if later else None
        earlier_date = parse_date(earlier) if earlier else None
        if later_date is None or earlier_date is None:
            return None
        if later_date < earlier_date:
            return f"{rule.field} {later_date.isoformat()} is before {rule.params['after']} {earlier_date.isoformat()}"
        return None

    def _check_identifier_format(self, values, rule, lexicon) -> str | None:
        value = values.get(rule.field)
        if not value or lexicon.matches_format(rule.field, value):
            return None
        return f"{rule.field} '{value}' does not match the expected format"

    def _check_not_placeholder(self, values, rule, lexicon) -> str | None:
        value = values.get(rule.field)
        if value is None or not value.strip():
            return f"{rule.field} is empty"
        if lexicon.is_placeholder(value):
            return f"{rule.field} '{value}' is a placeholder"
        return None

    def _check_line_items_sum(self, values, rule, lexicon) -> str | None:
        raw = values.get(rule.field)
        against = _amount(values.get(rule.params.get("against", "subtotal")))
        if not raw or against is None or against == 0:
            return None
        try:
            rows = json.loads(raw)
            items_sum = sum((Decimal(str(row["amount"])) for row in rows), Decimal("0"))
        except (ValueError, TypeError, KeyError, ArithmeticError):
            return f"{rule.field} could not be summed"
        ratio = Decimal(str(rule.params.get("tolerance_ratio", 0.05)))
        if abs(items_sum - against) > abs(against) * ratio:
            return f"line items sum ({items_sum}) differs from {rule.params.get('against', 'subtotal')} ({against})"
        return None

    def _check_positive_amount(self, values, rule, lexicon) -> str | None:
        amount = _amount(values.get(rule.field))
        if amount is not None and amount <= 0:
            return f"{rule.field} must be positive, got {amount}"
        return None

    def _check_amount_range(self, values, rule, lexicon) -> str | None:
        amount = _amount(values.get(rule.field))
        if amount is None:
            return None
        low = Decimal(str(rule.params.get("min", 0)))
        high = Decimal(str(rule.params.get("max", 1000000)))
        if not low <= amount <= high:
            return f"{rule.field} {amount} outside range [{low}, {high}]"
        return None


def _amount(value: str | None) -> Decimal | None:
    return parse_amount(value) if value else None
