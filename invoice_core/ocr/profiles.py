"""OCR profile definitions and per-zone profile selection.

A profile fixes everything that changes what an engine recognizes:
engine, page segmentation and engine modes, resolution hint, language,
and character allow/deny lists. Each zone type maps to an ordered list
of profiles, and vendors may override that list.
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from invoice_core.artifacts.models import ZoneType
from invoice_core.errors import ConfigError, ProfileConfigError
from invoice_core.utils.config import read_yaml
from invoice_core.utils.hashing import content_id
from invoice_core.utils.logger import get_logger

logger = get_logger(__name__)


class OcrProfile(BaseModel):
    """One recognition configuration."""

    name: str
    engine: str = "tesseract"
    psm: int = Field(default=3, ge=0, le=13)
    oem: int = Field(default=3, ge=0, le=3)
    dpi: int | None = None
    language: str = "eng"
    whitelist: str | None = None
    blacklist: str | None = None
    timeout_seconds: float = 30.0

    @property
    def fingerprint(self) -> str:
        """Content identity of every recognition-relevant setting."""
        return content_id("profile", self.model_dump(exclude={"timeout_seconds"}))

    def tesseract_config(self) -> str:
        """Build the Tesseract command-line config string."""
        parts = [f"--psm {self.psm}", f"--oem {self.oem}"]
        if self.dpi:
            parts.append(f"--dpi {self.dpi}")
        if self.whitelist:
            parts.append(f"-c tessedit_char_whitelist={self.whitelist}")
        if self.blacklist:
            parts.append(f"-c tessedit_char_blacklist={self.blacklist}")
        return " ".join(parts)


class ProfileSet:
    """Validated collection of profiles with zone defaults and vendor overrides.

    Args:
        profiles: Profiles keyed by name.
        zone_defaults: Ordered profile names per zone type.
        vendor_overrides: Per-vendor replacement profile lists per zone type.
    """

    def __init__(
        self,
        profiles: dict[str, OcrProfile],
        zone_defaults: dict[ZoneType, list[str]],
        vendor_overrides: dict[str, dict[ZoneType, list[str]]] | None = None,
    ) -> None:
        self.profiles = profiles
        self.zone_defaults = zone_defaults
        self.vendor_overrides = vendor_overrides or {}
        self._validate()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProfileSet":
        """Build a profile set from parsed YAML.

        Raises:
            ProfileConfigError: If any profile or mapping is invalid.
        """
        profiles: dict[str, OcrProfile] = {}
        try:
            for raw in data.get("profiles", []) or []:
                profile = OcrProfile(**raw)
                if profile.name in profiles:
                    raise ProfileConfigError(f"Duplicate profile name: {profile.name}")
                profiles[profile.name] = profile
            zone_defaults = {
                ZoneType(zone): list(names or [])
                for zone, names in (data.get("zone_defaults", {}) or {}).items()
            }
            overrides = {
                str(vendor): {ZoneType(zone): list(names or []) for zone, names in zones.items()}
                for vendor, zones in (data.get("vendor_overrides", {}) or {}).items()
            }
        except ValidationError as exc:
            raise ProfileConfigError(f"Invalid OCR profile: {exc}") from exc
        except ValueError as exc:
            raise ProfileConfigError(f"Invalid zone type in profile config: {exc}") from exc
        return cls(profiles, zone_defaults, overrides)

    @classmethod
    def load(cls, path: Path) -> "ProfileSet":
        try:
            return cls.from_dict(read_yaml(path))
        except ProfileConfigError:
            raise
        except ConfigError as exc:
            raise ProfileConfigError(exc.message) from exc

    @classmethod
    def default(cls) -> "ProfileSet":
        """Built-in profiles used when no profile file is configured."""
        return cls.from_dict(
            {
                "profiles": [
                    {"name": "full_page", "psm": 3},
                    {"name": "single_block", "psm": 6},
                    {"name": "sparse_text", "psm": 11},
                    {"name": "single_line", "psm": 7},
                    {
                        "name": "numeric",
                        "psm": 6,
                        "whitelist": "0123456789.,$-/:",
                    },
                ],
                "zone_defaults": {
                    "HeaderFields": ["single_block", "sparse_text"],
                    "TotalsBox": ["single_block", "numeric", "sparse_text"],
                    "LineItemsTable": ["single_block", "full_page"],
                    "FooterNotes": ["single_block"],
                    "BarcodeArea": ["single_line"],
                    "LogoArea": [],
                },
            }
        )

    def get(self, name: str) -> OcrProfile:
        try:
            return self.profiles[name]
        except KeyError as exc:
            raise ProfileConfigError(f"Profile not found: {name}") from exc

    def profiles_for(
        self,
        zone_type: ZoneType,
        vendor_fingerprint: str | None = None,
        limit: int | None = None,
    ) -> list[OcrProfile]:
        """Ordered profiles to run on a zone type.

        Args:
            zone_type: Zone being recognized.
            vendor_fingerprint: Vendor whose override list, if any, replaces
                the default list for this zone type.
            limit: Maximum number of profiles returned.

        Returns:
            Profiles in scheduling order.
        """
        names = self.zone_defaults.get(zone_type, [])
        if vendor_fingerprint is not None:
            vendor_zones = self.vendor_overrides.get(vendor_fingerprint, {})
            if zone_type in vendor_zones:
                names = vendor_zones[zone_type]
        selected = [self.profiles[n] for n in names]
        return selected[:limit] if limit is not None else selected

    def _validate(self) -> None:
        mappings = [self.zone_defaults, *self.vendor_overrides.values()]
        for mapping in mappings:
            for zone_type, names in mapping.items():
                for name in names:
                    if name not in self.profiles:
                        raise ProfileConfigError(
                            f"{zone_type.value} references unknown profile: {name}"
                        )
        logger.debug(
            "Profile set: %d profiles, %d vendor overrides",
            len(self.profiles),
            len(self.vendor_overrides),
        )
