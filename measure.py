"""
measure.py – Object measurement on an A4 reference sheet.

Pipeline:
  1. Locate the sheet (edge contours with matching aspect ratio)
  2. Crop the sheet and calibrate pixels per mm from its longer side
  3. Segment the object (Otsu | adaptive | Canny, then close)
  4. Largest plausible contour → bounding box → mm

A missing sheet yields None, a missing object yields a zero measurement.
Only undecodable input and primitive failures raise.
"""

import base64
import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from config import PipelineConfig
from sheet import CalibrationError, calibrate, locate_sheet, locate_sheet_in_edges, sheet_edges
from segment import segment_object

log = logging.getLogger("a4measure.measure")

# BGR
CONTOUR_COLOR = (0, 255, 0)
RECT_COLOR = (255, 0, 0)
TEXT_COLOR = (0, 255, 255)
SHEET_COLOR = (0, 255, 0)


class MeasurementResult:
    def __init__(
        self,
        width_mm: float,
        height_mm: float,
        area_mm2: float,
        px_per_mm: float,
        image_png: bytes,
        debug_images: Optional[Dict[str, bytes]] = None,
    ):
        self.width_mm = round(width_mm, 1)
        self.height_mm = round(height_mm, 1)
        self.area_mm2 = round(area_mm2, 1)
        self.px_per_mm = px_per_mm
        # Annotated sheet region (or the closed mask when nothing was found)
        self.image_png = image_png
        self.debug_images = debug_images or {}

    @property
    def object_detected(self) -> bool:
        return self.width_mm > 0 or self.height_mm > 0

    def to_dict(self) -> dict:
        return {
            "width_mm": self.width_mm,
            "height_mm": self.height_mm,
            "area_mm2": self.area_mm2,
            "px_per_mm": round(self.px_per_mm, 3),
            "object_detected": self.object_detected,
            "image": to_data_url(self.image_png),
            "debug_images": {name: to_data_url(png) for name, png in self.debug_images.items()},
        }


class MeasurementError(Exception):
    pass


class ImageDecodeError(MeasurementError):
    pass


class ObjectMeasurement:
    def __init__(self, width_mm: float, height_mm: float, area_mm2: float,
                 image: np.ndarray, contour: Optional[np.ndarray] = None):
        self.width_mm = width_mm
        self.height_mm = height_mm
        self.area_mm2 = area_mm2
        self.image = image
        self.contour = contour


class SheetDetection:
    def __init__(self, quad: Optional[np.ndarray], image_png: bytes):
        self.quad = quad
        # Source image with the sheet outlined, or the edge map if not found
        self.image_png = image_png

    @property
    def found(self) -> bool:
        return self.quad is not None

    def to_dict(self) -> dict:
        return {
            "found": self.found,
            "corners": self.quad.tolist() if self.found else None,
            "image": to_data_url(self.image_png),
        }


def to_data_url(png: bytes) -> str:
    return "data:image/png;base64," + base64.b64encode(png).decode("ascii")


# ---------------------------------------------------------------------------
# Main entry points
# ---------------------------------------------------------------------------

def measure_object(
    image_bytes: bytes,
    prims,
    config: Optional[PipelineConfig] = None,
    include_debug: bool = True,
) -> Optional[MeasurementResult]:
    """
    Measure the object lying on a reference sheet.

    Args:
        image_bytes: PNG/JPEG image data
        prims: vision-primitives service (see primitives.load)
        config: pipeline tuning, defaults to A4
        include_debug: also return the intermediate images

    Returns:
        MeasurementResult, or None if no sheet was found

    Raises:
        ImageDecodeError if the image is missing or undecodable
        MeasurementError if calibration or a vision primitive fails
    """
    config = config or PipelineConfig()
    img = decode_image(image_bytes, prims)

    try:
        quad = locate_sheet(img, prims, config)
        if quad is None:
            return None

        calib = calibrate(img, quad, prims, config)
        seg = segment_object(calib.region, prims, config)
        found = measure_region(calib.region, seg.mask, calib.px_per_mm, prims, config)

        image_png = prims.encode_png(found.image)
        debug_images = {}
        if include_debug:
            debug_images["warped"] = prims.encode_png(calib.region)
            for name, stage in seg.stages.items():
                debug_images[name] = prims.encode_png(stage)
    except CalibrationError as e:
        raise MeasurementError(f"Calibration failed: {e}") from e
    except prims.error as e:
        raise MeasurementError(f"Vision pipeline failed: {e}") from e

    return MeasurementResult(
        width_mm=found.width_mm,
        height_mm=found.height_mm,
        area_mm2=found.area_mm2,
        px_per_mm=calib.px_per_mm,
        image_png=image_png,
        debug_images=debug_images,
    )


def detect_sheet(image_bytes: bytes, prims, config: Optional[PipelineConfig] = None) -> SheetDetection:
    """Locate the sheet only and render a preview of what was found."""
    config = config or PipelineConfig()
    img = decode_image(image_bytes, prims)

    try:
        edges = sheet_edges(img, prims, config)
        quad = locate_sheet_in_edges(edges, prims, config)
        if quad is not None:
            preview = img.copy()
            prims.draw_contours(preview, [quad.reshape(-1, 1, 2)], SHEET_COLOR, 3)
        else:
            preview = edges
        return SheetDetection(quad, prims.encode_png(preview))
    except prims.error as e:
        raise MeasurementError(f"Vision pipeline failed: {e}") from e


def detect_edges(image_bytes: bytes, prims, config: Optional[PipelineConfig] = None) -> bytes:
    """PNG of the edge map used for sheet detection."""
    config = config or PipelineConfig()
    img = decode_image(image_bytes, prims)
    try:
        return prims.encode_png(sheet_edges(img, prims, config))
    except prims.error as e:
        raise MeasurementError(f"Vision pipeline failed: {e}") from e


def decode_image(image_bytes: bytes, prims) -> np.ndarray:
    if not image_bytes:
        raise ImageDecodeError("No image provided.")
    try:
        img = prims.decode(image_bytes)
    except prims.error as e:
        raise ImageDecodeError(f"Could not decode image: {e}") from e
    if img is None:
        raise ImageDecodeError("Could not decode image.")
    return img


# ---------------------------------------------------------------------------
# Measurer
# ---------------------------------------------------------------------------

def object_area_bounds(region_area: float, config: PipelineConfig) -> Tuple[float, float]:
    """(min, max) contour area in px² that can count as the object."""
    min_area = min(config.object_min_area, region_area * config.object_min_area_frac)
    max_area = region_area * config.object_max_area_frac
    return min_area, max_area


def select_object_contour(
    contours: List[np.ndarray],
    min_area: float,
    max_area: float,
    prims,
) -> Optional[Tuple[np.ndarray, float]]:
    """Largest contour with min_area <= area <= max_area; first one wins ties."""
    best = None
    best_area = -1.0
    for i, contour in enumerate(contours):
        area = prims.contour_area(contour)
        valid = min_area <= area <= max_area
        log.debug("  Contour %d: area=%.0f (min=%.0f, max=%.0f, valid=%s)", i, area, min_area, max_area, valid)
        if valid and area > best_area:
            best, best_area = contour, area
    if best is None:
        return None
    return best, best_area


def measure_region(
    region: np.ndarray,
    mask: np.ndarray,
    px_per_mm: float,
    prims,
    config: PipelineConfig,
) -> ObjectMeasurement:
    """
    Convert the dominant foreground contour of `mask` into millimetres.

    `region` and `mask` are not modified. If no contour falls inside the
    area bounds the result is all zeros and its image is the mask itself.
    """
    if px_per_mm <= 0:
        raise CalibrationError(f"px_per_mm must be positive, got {px_per_mm}")

    h, w = mask.shape[:2]
    min_area, max_area = object_area_bounds(w * h, config)

    contours = prims.find_external_contours(mask)
    log.debug("Found %d contours on sheet", len(contours))

    selected = select_object_contour(contours, min_area, max_area, prims)
    if selected is None:
        log.warning("No object detected on sheet (min=%.0f, max=%.0f)", min_area, max_area)
        return ObjectMeasurement(0.0, 0.0, 0.0, mask.copy())

    contour, area = selected
    rect = prims.bounding_rect(contour)
    width_mm = round(rect.width / px_per_mm, 1)
    height_mm = round(rect.height / px_per_mm, 1)
    area_mm2 = round(area / (px_per_mm * px_per_mm), 1)

    annotated = prims.to_color(region)
    _draw_measurements_on_image(annotated, contour, rect, width_mm, height_mm, prims, config)

    log.info("Measured: %.1f x %.1f mm, area=%.1f mm² (px_per_mm=%.3f)",
             width_mm, height_mm, area_mm2, px_per_mm)
    return ObjectMeasurement(width_mm, height_mm, area_mm2, annotated, contour)


def _draw_measurements_on_image(img, contour, rect, width_mm, height_mm, prims, config) -> None:
    prims.draw_contours(img, [contour], CONTOUR_COLOR, 3)
    prims.draw_rect(img, rect, RECT_COLOR, 2)

    # Width above the box, height to its right
    wx = rect.x + rect.width // 2 - 50
    wy = rect.y - 10
    prims.put_text(img, f"{width_mm} mm", (wx, wy), TEXT_COLOR, config.font_scale, config.font_thickness)

    hx = rect.x + rect.width + 10
    hy = rect.y + rect.height // 2
    prims.put_text(img, f"{height_mm} mm", (hx, hy), TEXT_COLOR, config.font_scale, config.font_thickness)
