"""
segment.py – Object segmentation on the cropped sheet.

Three independent masks are OR-ed together:
  1. Equalised grayscale + Otsu (dark object on light paper)
  2. Mean adaptive threshold (uneven lighting)
  3. Canny edges (faint outlines the thresholds miss)
A morphological close then merges the fragments into one solid region.
"""

import logging
from typing import Dict

import numpy as np

from config import PipelineConfig

log = logging.getLogger("a4measure.segment")


class Segmentation:
    def __init__(self, mask: np.ndarray, stages: Dict[str, np.ndarray]):
        self.mask = mask
        # Intermediate images keyed by stage name, for diagnostics
        self.stages = stages


def segment_object(region: np.ndarray, prims, config: PipelineConfig) -> Segmentation:
    """
    Build a binary foreground mask for the object lying on the sheet.

    Never fails on content: a sheet without an object simply yields a
    mask with nothing (or only specks) in it.
    """
    gray = prims.to_gray(region)
    area = gray.shape[0] * gray.shape[1]

    # Method 1: global Otsu on the contrast-equalised image
    equalized = prims.equalize(gray)
    thresh = prims.otsu_inverted(equalized)

    # Method 2: local mean threshold
    adaptive = prims.adaptive_mean_inverted(gray, config.adaptive_block_size, config.adaptive_c)

    # Method 3: edges, with lower thresholds than sheet detection
    blurred = prims.gaussian_blur(gray, config.blur_kernel)
    edges = prims.canny(blurred, config.object_canny_low, config.object_canny_high)

    if log.isEnabledFor(logging.DEBUG):
        for name, mask in (("otsu", thresh), ("adaptive", adaptive), ("edges", edges)):
            nonzero = int(np.count_nonzero(mask))
            log.debug("%s mask: %d non-zero pixels (%.2f%%)", name, nonzero, 100.0 * nonzero / max(area, 1))

    # Favour recall; closing absorbs the extra specks
    combined = prims.bitwise_or(prims.bitwise_or(thresh, adaptive), edges)
    closed = prims.close(combined, config.close_kernel)
    log.debug("Closed mask: %d non-zero pixels", int(np.count_nonzero(closed)))

    return Segmentation(
        mask=closed,
        stages={
            "equalized": equalized,
            "thresh": thresh,
            "edges": edges,
            "combined": combined,
            "closed": closed,
        },
    )
