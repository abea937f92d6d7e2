"""
primitives.py – Vision-primitives service backed by OpenCV.

The pipeline never imports cv2 directly. main.py calls load() once at
startup and hands the resulting service to every pipeline call, so tests
can pass in a substitute.
"""

import logging
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np

log = logging.getLogger("a4measure.primitives")

Color = Tuple[int, int, int]


class PrimitivesUnavailable(Exception):
    """The vision library could not be initialised."""


class BoundingRect(NamedTuple):
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    @property
    def aspect_ratio(self) -> float:
        """Shorter side / longer side, always in [0, 1]."""
        longer = max(self.width, self.height)
        if longer == 0:
            return 0.0
        return min(self.width, self.height) / longer


class OpenCVPrimitives:
    def __init__(self, cv2_module):
        self._cv = cv2_module
        # Exception type raised by failing primitives
        self.error = cv2_module.error
        self.version = cv2_module.__version__

    # -- codec ---------------------------------------------------------------

    def decode(self, data: bytes) -> Optional[np.ndarray]:
        """Decode PNG/JPEG bytes into a BGR image, None if undecodable."""
        if not data:
            return None
        arr = np.frombuffer(data, np.uint8)
        return self._cv.imdecode(arr, self._cv.IMREAD_COLOR)

    def encode_png(self, img: np.ndarray) -> bytes:
        ok, buf = self._cv.imencode(".png", img)
        if not ok:
            raise self.error("Failed to encode image buffer.")
        return buf.tobytes()

    # -- filters -------------------------------------------------------------

    def to_gray(self, img: np.ndarray) -> np.ndarray:
        if img.ndim == 2:
            return img.copy()
        return self._cv.cvtColor(img, self._cv.COLOR_BGR2GRAY)

    def to_color(self, img: np.ndarray) -> np.ndarray:
        if img.ndim == 3:
            return img.copy()
        return self._cv.cvtColor(img, self._cv.COLOR_GRAY2BGR)

    def gaussian_blur(self, img: np.ndarray, ksize: int) -> np.ndarray:
        return self._cv.GaussianBlur(img, (ksize, ksize), 0)

    def canny(self, img: np.ndarray, low: float, high: float) -> np.ndarray:
        return self._cv.Canny(img, low, high)

    def equalize(self, gray: np.ndarray) -> np.ndarray:
        return self._cv.equalizeHist(gray)

    def otsu_inverted(self, gray: np.ndarray) -> np.ndarray:
        _, thresh = self._cv.threshold(
            gray, 0, 255, self._cv.THRESH_BINARY_INV + self._cv.THRESH_OTSU
        )
        return thresh

    def adaptive_mean_inverted(self, gray: np.ndarray, block_size: int, c: float) -> np.ndarray:
        return self._cv.adaptiveThreshold(
            gray, 255, self._cv.ADAPTIVE_THRESH_MEAN_C,
            self._cv.THRESH_BINARY_INV, block_size, c
        )

    def bitwise_or(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return self._cv.bitwise_or(a, b)

    def close(self, mask: np.ndarray, ksize: int) -> np.ndarray:
        kernel = self._cv.getStructuringElement(self._cv.MORPH_RECT, (ksize, ksize))
        return self._cv.morphologyEx(mask, self._cv.MORPH_CLOSE, kernel)

    # -- contours ------------------------------------------------------------

    def find_external_contours(self, binary: np.ndarray) -> List[np.ndarray]:
        contours, _ = self._cv.findContours(
            binary, self._cv.RETR_EXTERNAL, self._cv.CHAIN_APPROX_SIMPLE
        )
        return list(contours)

    def contour_area(self, contour: np.ndarray) -> float:
        return float(self._cv.contourArea(contour))

    def arc_length(self, contour: np.ndarray) -> float:
        return float(self._cv.arcLength(contour, True))

    def approx_polygon(self, contour: np.ndarray, epsilon: float) -> np.ndarray:
        return self._cv.approxPolyDP(contour, epsilon, True)

    def bounding_rect(self, points: np.ndarray) -> BoundingRect:
        x, y, w, h = self._cv.boundingRect(points)
        return BoundingRect(int(x), int(y), int(w), int(h))

    # -- geometry ------------------------------------------------------------

    def warp_perspective(
        self,
        img: np.ndarray,
        src_pts: np.ndarray,
        dst_pts: np.ndarray,
        size: Tuple[int, int],
    ) -> np.ndarray:
        M = self._cv.getPerspectiveTransform(src_pts.astype(np.float32), dst_pts.astype(np.float32))
        return self._cv.warpPerspective(img, M, size)

    # -- drawing (in place) --------------------------------------------------

    def draw_contours(self, img: np.ndarray, contours: Sequence[np.ndarray], color: Color, thickness: int) -> None:
        self._cv.drawContours(img, list(contours), -1, color, thickness)

    def draw_rect(self, img: np.ndarray, rect: BoundingRect, color: Color, thickness: int) -> None:
        self._cv.rectangle(
            img, (rect.x, rect.y), (rect.x + rect.width, rect.y + rect.height), color, thickness
        )

    def put_text(
        self,
        img: np.ndarray,
        text: str,
        origin: Tuple[int, int],
        color: Color,
        scale: float,
        thickness: int,
    ) -> None:
        self._cv.putText(img, text, origin, self._cv.FONT_HERSHEY_SIMPLEX, scale, color, thickness)


def load() -> OpenCVPrimitives:
    """Initialise OpenCV. Raises PrimitivesUnavailable if it cannot be imported."""
    try:
        import cv2
    except ImportError as e:
        raise PrimitivesUnavailable(f"OpenCV is not available: {e}") from e
    prims = OpenCVPrimitives(cv2)
    log.info("OpenCV %s loaded", prims.version)
    return prims
