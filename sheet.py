"""
sheet.py – Reference sheet detection and calibration.

  1. locate_sheet: Canny edges → external contours → 4-vertex polygons
     whose aspect ratio matches the paper format → largest wins.
  2. calibrate: crop the sheet and derive pixels-per-mm from its longer side.
"""

import logging
from typing import Optional

import numpy as np

from config import PipelineConfig
from primitives import BoundingRect

log = logging.getLogger("a4measure.sheet")


class CalibrationError(Exception):
    pass


class Calibration:
    def __init__(self, region: np.ndarray, px_per_mm: float, landscape: bool, rect: BoundingRect):
        self.region = region
        self.px_per_mm = px_per_mm
        self.landscape = landscape
        # Sheet bounding box in source image coordinates
        self.rect = rect


# ---------------------------------------------------------------------------
# SheetLocator
# ---------------------------------------------------------------------------

def sheet_edges(img: np.ndarray, prims, config: PipelineConfig) -> np.ndarray:
    """Binary edge map used for sheet detection."""
    gray = prims.to_gray(img)
    blurred = prims.gaussian_blur(gray, config.blur_kernel)
    return prims.canny(blurred, config.sheet_canny_low, config.sheet_canny_high)


def matches_sheet_aspect(rect: BoundingRect, config: PipelineConfig) -> bool:
    """Orientation-independent aspect check against the paper format."""
    ratio = rect.aspect_ratio
    target = config.sheet_aspect_ratio
    tol = config.aspect_tolerance
    return abs(ratio - target) < tol or abs(ratio - 1 / target) < tol


def locate_sheet(img: np.ndarray, prims, config: PipelineConfig) -> Optional[np.ndarray]:
    """
    Find the reference sheet in a BGR image.

    Returns the sheet quadrilateral as a (4, 2) int32 array of corner
    points (not ordered), or None when no candidate matches.
    """
    edges = sheet_edges(img, prims, config)
    return locate_sheet_in_edges(edges, prims, config)


def locate_sheet_in_edges(edges: np.ndarray, prims, config: PipelineConfig) -> Optional[np.ndarray]:
    contours = prims.find_external_contours(edges)
    log.debug("Sheet search: %d external contours", len(contours))

    best = None
    best_area = 0.0
    for contour in contours:
        area = prims.contour_area(contour)
        if area < config.min_sheet_area:
            continue

        peri = prims.arc_length(contour)
        approx = prims.approx_polygon(contour, config.approx_epsilon * peri)
        if len(approx) != 4:
            continue

        rect = prims.bounding_rect(approx)
        if not matches_sheet_aspect(rect, config):
            log.debug("Rejected quad: area=%.0f aspect=%.3f", area, rect.aspect_ratio)
            continue

        # Strict comparison keeps the first candidate on exact ties
        if area > best_area:
            best_area = area
            best = approx.reshape(4, 2).astype(np.int32)

    if best is None:
        log.warning("No %s sheet detected", config.paper)
    else:
        log.info("%s sheet detected: area=%.0f px²", config.paper, best_area)
    return best


# ---------------------------------------------------------------------------
# Calibrator
# ---------------------------------------------------------------------------

def calibrate(img: np.ndarray, quad: np.ndarray, prims, config: PipelineConfig) -> Calibration:
    """
    Extract the sheet region and compute pixels per mm.

    The longer pixel side of the region is matched against the longer
    physical side of the paper, so the scale does not depend on whether
    the sheet lies in portrait or landscape.

    The default axis-aligned crop assumes the sheet is square to the
    frame. On a tilted sheet the crop takes in wedges of the table around
    the corners, and a wedge can outrank the object as the largest
    foreground contour, so the wrong region gets measured. Set
    rectify_perspective to warp the quadrilateral instead.

    Raises CalibrationError if the region has no area.
    """
    rect = prims.bounding_rect(quad)
    if rect.width <= 0 or rect.height <= 0:
        raise CalibrationError(f"Sheet region has zero area: {rect}")

    if config.rectify_perspective:
        region = rectify_sheet(img, quad, prims)
    else:
        # Axis-aligned crop; copied so the source image can be released
        region = img[rect.y:rect.y + rect.height, rect.x:rect.x + rect.width].copy()

    h, w = region.shape[:2]
    if w == 0 or h == 0:
        raise CalibrationError(f"Sheet region has zero area: {w}x{h}")

    landscape = w > h
    px_per_mm = max(w, h) / config.sheet_long_side_mm
    log.info("Calibration: region=%dx%d (%s) px_per_mm=%.3f",
             w, h, "landscape" if landscape else "portrait", px_per_mm)
    return Calibration(region, px_per_mm, landscape, rect)


def order_corners(pts: np.ndarray) -> np.ndarray:
    """Order 4 points: top-left, top-right, bottom-right, bottom-left."""
    pts = np.asarray(pts, dtype=np.float32).reshape(4, 2)
    by_y = pts[np.lexsort((pts[:, 0], pts[:, 1]))]
    top = by_y[:2][np.argsort(by_y[:2, 0], kind="stable")]
    bottom = by_y[2:][np.argsort(by_y[2:, 0], kind="stable")]
    return np.float32([top[0], top[1], bottom[1], bottom[0]])


def rectify_sheet(img: np.ndarray, quad: np.ndarray, prims) -> np.ndarray:
    """Perspective-warp the sheet quadrilateral to a bird's-eye rectangle."""
    tl, tr, br, bl = order_corners(quad)

    width = max(np.linalg.norm(br - bl), np.linalg.norm(tr - tl))
    height = max(np.linalg.norm(tr - br), np.linalg.norm(tl - bl))
    w, h = int(round(width)), int(round(height))
    if w < 1 or h < 1:
        raise CalibrationError(f"Degenerate sheet quadrilateral: {w}x{h}")

    src = np.float32([tl, tr, br, bl])
    dst = np.float32([[0, 0], [w - 1, 0], [w - 1, h - 1], [0, h - 1]])
    log.debug("Rectifying sheet to %dx%d", w, h)
    return prims.warp_perspective(img, src, dst, (w, h))
