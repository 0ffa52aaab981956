"""
Scan settings.

All tunables of the pipeline live in one dataclass so a session, the CLI and
the tests share the same defaults. Settings can be loaded from a JSON file;
keys must match field names.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, Tuple
import json


# Standard ID-1 card ratio (85.60 x 53.98 mm)
CARD_ASPECT_RATIO = 1.586


@dataclass(frozen=True)
class ScanSettings:
    """Tunable parameters for a scan session."""

    # Geometry
    card_aspect_ratio: float = CARD_ASPECT_RATIO
    analysis_size: Tuple[int, int] = (1586, 1000)  # (width, height) fed to OCR
    roi_margin: float = 10.0  # Side margin of the default ROI, in screen points

    # Throttling
    heavy_every: int = 3  # Run the preprocessing chain on every Nth frame
    counter_modulus: int = 256  # Frame counter is an unsigned 8-bit value

    # Preprocessing
    blur_radius: float = 2.0
    threshold: float = 1.8
    bright_luma: float = 192.0  # Mean luma above this => bright background
    bright_offset: float = -15.0  # Brightness offset applied to bright backgrounds

    # Recognition
    min_confidence: float = 0.3
    accuracy: str = "accurate"
    languages: Tuple[str, ...] = field(default_factory=lambda: ("en",))

    # Session
    stop_on_complete: bool = True
    result_buffer: int = 64  # Results kept for results(); oldest are dropped beyond this

    def __post_init__(self):
        if self.result_buffer < 1:
            raise ValueError(f"result_buffer must be >= 1, got {self.result_buffer}")
        if self.card_aspect_ratio <= 0:
            raise ValueError(f"card_aspect_ratio must be positive, got {self.card_aspect_ratio}")
        if self.heavy_every < 1:
            raise ValueError(f"heavy_every must be >= 1, got {self.heavy_every}")
        if self.counter_modulus < 1:
            raise ValueError(f"counter_modulus must be >= 1, got {self.counter_modulus}")
        if not 0.3 <= self.min_confidence <= 1.0:
            raise ValueError(f"min_confidence must be in [0.3, 1], got {self.min_confidence}")
        if self.accuracy not in ("accurate", "fast"):
            raise ValueError(f"accuracy must be 'accurate' or 'fast', got {self.accuracy!r}")
        if len(self.analysis_size) != 2 or min(self.analysis_size) <= 0:
            raise ValueError(f"analysis_size must be (width, height), got {self.analysis_size}")

    def with_overrides(self, **overrides: Any) -> "ScanSettings":
        """Return a copy with the given fields replaced."""
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["analysis_size"] = list(self.analysis_size)
        data["languages"] = list(self.languages)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanSettings":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        values = dict(data)
        if "analysis_size" in values:
            values["analysis_size"] = tuple(int(v) for v in values["analysis_size"])
        if "languages" in values:
            values["languages"] = tuple(values["languages"])
        return cls(**values)

    @classmethod
    def from_file(cls, filepath: str, **overrides: Any) -> "ScanSettings":
        """
        Load settings from a JSON file.

        Args:
            filepath: Path to a JSON object whose keys are field names
            **overrides: Values that take precedence over the file

        Returns:
            ScanSettings instance
        """
        with open(filepath, "r") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Settings file must contain a JSON object: {filepath}")
        data.update(overrides)
        return cls.from_dict(data)
