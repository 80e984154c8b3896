"""
Core data structures for caliguide.

All types are frozen dataclasses with slots for immutability and performance.
Logic is in separate modules - these are data containers only.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum

import cv2
import numpy as np


INTRINSIC_NAMES = ("fx", "fy", "cx", "cy", "k1", "k2", "p1", "p2", "k3")
POSE_NAMES = ("rx", "ry", "rz", "tx", "ty", "tz")


# ============================================================================
# Configuration
# ============================================================================


@dataclass(frozen=True)  # No slots - need properties
class CharucoConfig:
    """
    Configuration for the ChArUco calibration board.

    Lengths are in board units. The same units are used for the object points
    handed to the solver and for the pixels of the rendered board image.
    """

    columns: int = 9
    rows: int = 6
    square_len: int = 280
    marker_len: int = 182
    dictionary: str = "DICT_4X4_50"
    legacy_pattern: bool = True

    @property
    def board_size(self) -> tuple[int, int]:
        """(columns, rows) in squares."""
        return (self.columns, self.rows)

    @property
    def interior_corners(self) -> int:
        """Number of ChArUco corners on the board."""
        return (self.columns - 1) * (self.rows - 1)

    @property
    def board_units(self) -> np.ndarray:
        """Board width, height and notional depth (= width) in board units."""
        width = self.columns * self.square_len
        height = self.rows * self.square_len
        return np.array([width, height, width], dtype=np.float64)


@dataclass(frozen=True, slots=True)
class GuidanceConfig:
    """
    Thresholds and constants of the guidance engine.
    """

    image_width: int = 1280
    image_height: int = 720
    var_terminate: float = 0.1  # relative stddev improvement that counts as converged
    mean_flow_max: float = 2.0  # pixels, exclusive
    pose_close_to_tgt_min: float = 0.8  # Jaccard score, exclusive
    match_still_cids_min: float = 0.9  # Jaccard of corner ids for the flow estimate
    max_overlap: float = 0.9  # coverage fraction beyond which a region adds nothing
    min_corners: int = 6  # forced captures need at least this many corners
    subsample: int = 20  # coverage grid stride in pixels
    orbital_distance: float = 1.6  # board lengths
    orbital_roll: float = math.pi / 8.0
    angle_limit_deg: float = 70.0
    principal_point_offset: float = 0.05  # fraction of the image size
    translation_scale: float = 10.0
    initial_focal_length: float = 1000.0
    calibrate_max_iter: int = 30

    @property
    def img_size(self) -> tuple[int, int]:
        """(width, height) of the camera image."""
        return (self.image_width, self.image_height)


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """
    Complete configuration of a guided calibration session.
    Loaded from a TOML file.
    """

    camera_name: str = "camera"
    camera_index: int = 0
    board: CharucoConfig = field(default_factory=CharucoConfig)
    guidance: GuidanceConfig = field(default_factory=GuidanceConfig)


# ============================================================================
# Calibration Data
# ============================================================================


@dataclass(frozen=True, slots=True)
class Keyframe:
    """
    One accepted board observation.
    """

    img_size: tuple[int, int]  # (width, height)
    p3d: np.ndarray  # (n, 3) board-local object points, Z = 0
    p2d: np.ndarray  # (n, 2) detected image points
    pid: np.ndarray  # (n,) corner ids

    def __post_init__(self):
        if not (len(self.p3d) == len(self.p2d) == len(self.pid)):
            raise ValueError(
                f"Keyframe point counts differ: p3d={len(self.p3d)}, "
                f"p2d={len(self.p2d)}, pid={len(self.pid)}"
            )

    @property
    def n_pts(self) -> int:
        return len(self.pid)


@dataclass(frozen=True, slots=True)
class CameraModel:
    """
    Pinhole camera with 5-term radial/tangential distortion.
    """

    matrix: np.ndarray  # 3x3 camera matrix
    distortion: np.ndarray  # (5,) k1, k2, p1, p2, k3

    @classmethod
    def initial(cls, img_size: tuple[int, int], focal_length: float) -> CameraModel:
        """
        Bootstrap model: square pixels, centred principal point, no distortion.
        """
        k = np.diag([focal_length, focal_length, 1.0])
        k = cv2.getDefaultNewCameraMatrix(k, img_size, True)
        return cls(matrix=k.astype(np.float64), distortion=np.zeros(5, dtype=np.float64))

    @property
    def fx(self) -> float:
        return float(self.matrix[0, 0])

    @property
    def fy(self) -> float:
        return float(self.matrix[1, 1])

    @property
    def cx(self) -> float:
        return float(self.matrix[0, 2])

    @property
    def cy(self) -> float:
        return float(self.matrix[1, 2])

    @property
    def intrinsics(self) -> np.ndarray:
        """The 9 intrinsics in INTRINSIC_NAMES order."""
        return np.hstack([[self.fx, self.fy, self.cx, self.cy], self.distortion[:5]])


@dataclass(frozen=True, slots=True)
class CameraIntrinsics:
    """
    Final calibration result for a camera.
    Stored in SQLite database keyed by (camera_name, resolution).
    """

    camera_name: str
    resolution: tuple[int, int]  # (width, height)
    matrix: np.ndarray  # 3x3 camera matrix
    distortion: np.ndarray  # Distortion coefficients (5,)
    error: float  # RMSE of reprojection
    keyframe_count: int  # Number of keyframes used in calibration
    flags: int = 0  # OpenCV calibration flags of the final solve


@dataclass(frozen=True, slots=True)
class CalibrationStatistics:
    """
    Uncertainty measures derived from one calibration run.
    """

    reprojection_error: float = float("nan")
    variance_intrinsics: np.ndarray = field(default_factory=lambda: np.zeros(9))
    pose_variance: np.ndarray = field(default_factory=lambda: np.zeros(6))
    index_of_dispersion: np.ndarray = field(default_factory=lambda: np.full(9, np.nan))


# ============================================================================
# Geometry
# ============================================================================


@dataclass(frozen=True, slots=True)
class Rect:
    """
    Axis-aligned integer rectangle (x, y is the top-left corner).
    """

    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height

    def scaled(self, factor: int) -> Rect:
        return Rect(self.x * factor, self.y * factor, self.width * factor, self.height * factor)


@dataclass(frozen=True, slots=True)
class Pose:
    """
    Board pose in camera coordinates.
    """

    rvec: np.ndarray  # (3,) Rodrigues rotation vector
    tvec: np.ndarray  # (3,) translation


class PoseKind(Enum):
    """Which constructor produced a target pose."""

    ORBITAL = "orbital"
    PLANAR_FULL_SCREEN = "planar_full_screen"
    COVERAGE = "coverage"
