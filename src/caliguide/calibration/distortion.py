"""
Distortion-field analysis for coverage-driven pose placement.

Pure functions plus the CoverageMask accumulator. Everything works on a
subsampled grid in image orientation: grid cell (row, col) sits at pixel
(col * step, row * step).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import cv2
import numpy as np

from ..types import Rect

logger = logging.getLogger(__name__)

THRESHOLD_STEP = 0.05


# ============================================================================
# Distortion Field
# ============================================================================


@dataclass(frozen=True, slots=True)
class DistortionField:
    """
    Sparse displacement field of the current camera model.
    """

    pts: np.ndarray  # (rows, cols, 2) ideal pixel positions
    dpts: np.ndarray  # (rows, cols, 2) the same positions after distortion

    @property
    def shape(self) -> tuple[int, int]:
        return self.pts.shape[:2]

    def magnitude(self) -> np.ndarray:
        """(rows, cols) displacement length per cell in pixels."""
        return np.linalg.norm(self.pts - self.dpts, axis=2)


def compute_distortion_field(
    matrix: np.ndarray,
    img_size: tuple[int, int],
    distortion: np.ndarray,
    step: int,
) -> DistortionField:
    """
    Same information as cv2.initUndistortRectifyMap, but sparse.

    Args:
        matrix: 3x3 camera matrix
        img_size: (width, height)
        distortion: distortion coefficients
        step: grid stride in pixels

    Returns:
        DistortionField with (height // step, width // step, 2) grids
    """
    if step <= 1:
        raise ValueError(f"step must be > 1 for a sparse field, got {step}")

    width, height = img_size
    cols = width // step
    rows = height // step

    xs = np.arange(cols, dtype=np.float32) * step
    ys = np.arange(rows, dtype=np.float32) * step
    grid_x, grid_y = np.meshgrid(xs, ys)
    pts = np.stack([grid_x, grid_y], axis=-1).astype(np.float32)

    # ideal pixels -> normalized rays (no distortion) -> distorted pixels
    rays = cv2.undistortPoints(pts.reshape(-1, 1, 2), matrix, None)
    pts3d = cv2.convertPointsToHomogeneous(rays).reshape(-1, 3).astype(np.float64)
    zero = np.zeros(3, dtype=np.float64)
    dpts, _ = cv2.projectPoints(pts3d, zero, zero, matrix, np.asarray(distortion, dtype=np.float64))

    return DistortionField(
        pts=pts,
        dpts=dpts.reshape(rows, cols, 2).astype(np.float32),
    )


# ============================================================================
# Coverage Mask
# ============================================================================


class CoverageMask:
    """
    Occupancy grid of image regions already used by a targeted pose.

    Cells only ever go from 0 to 1 until reset() starts a new session.
    """

    def __init__(self, img_size: tuple[int, int], subsample: int = 20):
        self.img_size = img_size
        self.subsample = subsample
        width, height = img_size
        self.cells = np.zeros((height // subsample, width // subsample), dtype=np.uint8)

    @property
    def shape(self) -> tuple[int, int]:
        return self.cells.shape

    def covered_fraction(self) -> float:
        return float(np.count_nonzero(self.cells)) / self.cells.size

    def mark(self, rect: Rect) -> None:
        """
        Mark a full-resolution rectangle as covered.

        Partially touched cells count as covered.
        """
        s = self.subsample
        rows, cols = self.cells.shape
        x0 = max(0, math.floor(rect.x / s))
        y0 = max(0, math.floor(rect.y / s))
        x1 = min(cols, math.ceil((rect.x + rect.width) / s))
        y1 = min(rows, math.ceil((rect.y + rect.height) / s))
        if x1 > x0 and y1 > y0:
            self.cells[y0:y1, x0:x1] = 1

    def reset(self) -> None:
        self.cells[:] = 0


# ============================================================================
# Region Search
# ============================================================================


@dataclass(frozen=True, slots=True)
class RegionFound:
    rect: Rect  # in grid cells


@dataclass(frozen=True, slots=True)
class RegionNotFound:
    pass


RegionResult = RegionFound | RegionNotFound


def overlap_fraction(mask: np.ndarray, rect: Rect) -> float:
    """Fraction of non-zero mask cells inside rect."""
    if rect.area == 0:
        return 1.0
    window = mask[rect.y : rect.y + rect.height, rect.x : rect.x + rect.width]
    return float(cv2.countNonZero(window)) / rect.area


def get_bounds(thresh: np.ndarray, mask: np.ndarray, max_overlap: float) -> Rect | None:
    """
    Bounding box of the largest thresholded region not already covered.

    Contours are ranked by true geometric area; a contour whose box overlaps
    the mask by more than max_overlap is skipped in favour of the next one.
    """
    contours, _ = cv2.findContours(thresh, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

    ranked = sorted(contours, key=cv2.contourArea, reverse=True)
    for contour in ranked:
        x, y, w, h = cv2.boundingRect(contour)
        rect = Rect(x, y, w, h)
        if overlap_fraction(mask, rect) > max_overlap:
            continue
        return rect

    return None


def find_region(
    pts: np.ndarray,
    dpts: np.ndarray,
    mask: np.ndarray,
    prefer_low: bool,
    threshold: float,
    max_overlap: float = 0.9,
) -> RegionResult:
    """
    Locate an uncovered region of strong (or weak) distortion.

    The threshold is relaxed in 5% steps until some region passes the
    overlap test or the [0, 1] range is exhausted.

    Args:
        pts: (rows, cols, 2) sampling locations
        dpts: (rows, cols, 2) distorted locations
        mask: (rows, cols) coverage grid, non-zero = already used
        prefer_low: look for minimal distortion instead of maximal
        threshold: starting distortion strength threshold in [0, 1]
        max_overlap: largest tolerated covered fraction of a region's box

    Returns:
        RegionFound with the box in grid cells, or RegionNotFound
    """
    norm = np.linalg.norm(pts.astype(np.float32) - dpts.astype(np.float32), axis=2)
    diff = cv2.normalize(norm, None, 0, 255, cv2.NORM_MINMAX, cv2.CV_8U)

    bounds = None
    while bounds is None and 0.0 <= threshold <= 1.0:
        if prefer_low:
            threshold += THRESHOLD_STEP
            _, thres_img = cv2.threshold(diff, threshold * 255.0, 255, cv2.THRESH_BINARY_INV)
        else:
            threshold -= THRESHOLD_STEP
            _, thres_img = cv2.threshold(diff, threshold * 255.0, 255, cv2.THRESH_BINARY)

        bounds = get_bounds(thres_img, mask, max_overlap)
        if bounds is not None and bounds.area == 0:
            bounds = None

    if bounds is None:
        logger.debug("no region found, threshold range exhausted")
        return RegionNotFound()

    logger.debug("region %s at threshold %.2f", bounds, threshold)
    return RegionFound(bounds)
