"""
config.py – Tuning surface for the measurement pipeline.

Every heuristic constant lives here with its default. Values can be
overridden per deployment through MEASURE_* environment variables.
"""

import os
import logging
from typing import Dict, Tuple

from pydantic import BaseModel, Field, field_validator

log = logging.getLogger("a4measure.config")

# Physical paper sizes (short side, long side) in mm
PAPER_SIZES: Dict[str, Tuple[float, float]] = {
    "A3": (297.0, 420.0),
    "A4": (210.0, 297.0),
    "A5": (148.0, 210.0),
    "LETTER": (215.9, 279.4),
    "LEGAL": (215.9, 355.6),
}


class PipelineConfig(BaseModel):
    # Reference sheet
    paper: str = "A4"

    # Sheet detection
    blur_kernel: int = Field(5, gt=0)
    sheet_canny_low: int = Field(50, ge=0)
    sheet_canny_high: int = Field(150, gt=0)
    min_sheet_area: float = Field(10_000, ge=0)  # px², rejects edge fragments
    approx_epsilon: float = Field(0.02, gt=0, lt=1)  # fraction of perimeter
    aspect_tolerance: float = Field(0.15, gt=0, lt=1)

    # Calibration
    rectify_perspective: bool = False

    # Object segmentation
    object_canny_low: int = Field(20, ge=0)
    object_canny_high: int = Field(80, gt=0)
    adaptive_block_size: int = Field(15, gt=1)
    adaptive_c: float = 10
    close_kernel: int = Field(5, gt=0)

    # Object selection
    object_min_area: float = Field(1000, ge=0)  # px² floor
    object_min_area_frac: float = Field(0.005, ge=0, le=1)
    object_max_area_frac: float = Field(0.9, gt=0, le=1)

    # Annotation
    font_scale: float = Field(1.5, gt=0)
    font_thickness: int = Field(2, gt=0)

    @field_validator("paper")
    @classmethod
    def _known_paper(cls, v: str) -> str:
        key = v.strip().upper()
        if key not in PAPER_SIZES:
            raise ValueError(f"Unknown paper format {v!r} (known: {', '.join(sorted(PAPER_SIZES))})")
        return key

    @field_validator("blur_kernel", "adaptive_block_size")
    @classmethod
    def _odd_kernel(cls, v: int) -> int:
        if v % 2 == 0:
            raise ValueError("kernel size must be odd")
        return v

    @property
    def sheet_size_mm(self) -> Tuple[float, float]:
        """(short side, long side) of the reference sheet."""
        return PAPER_SIZES[self.paper]

    @property
    def sheet_aspect_ratio(self) -> float:
        short, long = self.sheet_size_mm
        return short / long

    @property
    def sheet_long_side_mm(self) -> float:
        return self.sheet_size_mm[1]


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

_ENV_FIELDS = {
    "MEASURE_PAPER": "paper",
    "MEASURE_BLUR_KERNEL": "blur_kernel",
    "MEASURE_SHEET_CANNY_LOW": "sheet_canny_low",
    "MEASURE_SHEET_CANNY_HIGH": "sheet_canny_high",
    "MEASURE_MIN_SHEET_AREA": "min_sheet_area",
    "MEASURE_APPROX_EPSILON": "approx_epsilon",
    "MEASURE_ASPECT_TOLERANCE": "aspect_tolerance",
    "MEASURE_RECTIFY": "rectify_perspective",
    "MEASURE_OBJECT_CANNY_LOW": "object_canny_low",
    "MEASURE_OBJECT_CANNY_HIGH": "object_canny_high",
    "MEASURE_ADAPTIVE_BLOCK_SIZE": "adaptive_block_size",
    "MEASURE_ADAPTIVE_C": "adaptive_c",
    "MEASURE_CLOSE_KERNEL": "close_kernel",
    "MEASURE_OBJECT_MIN_AREA": "object_min_area",
    "MEASURE_OBJECT_MIN_AREA_FRAC": "object_min_area_frac",
    "MEASURE_OBJECT_MAX_AREA_FRAC": "object_max_area_frac",
    "MEASURE_FONT_SCALE": "font_scale",
    "MEASURE_FONT_THICKNESS": "font_thickness",
}


def from_env(environ=None) -> PipelineConfig:
    """Build a PipelineConfig from MEASURE_* variables; unset ones keep defaults."""
    environ = os.environ if environ is None else environ
    overrides = {
        field: environ[name]
        for name, field in _ENV_FIELDS.items()
        if environ.get(name, "") != ""
    }
    if overrides:
        log.info("Pipeline config overrides from env: %s", sorted(overrides))
    # pydantic coerces "true"/"1"/"0.2" strings into the field types
    return PipelineConfig(**overrides)
