"""
Incremental intrinsic calibration over accepted keyframes.

The Calibrator owns the keyframe list and the current camera model. Each
call re-solves from scratch with OpenCV and derives the uncertainty
measures the guidance engine steers by.
"""

from __future__ import annotations

import logging
import sys

import cv2
import numpy as np

from ..types import (
    CalibrationStatistics,
    CameraModel,
    GuidanceConfig,
    Keyframe,
    PoseKind,
)

logger = logging.getLogger(__name__)

NINTR = 9  # fx, fy, cx, cy, k1, k2, p1, p2, k3

# restrictions for single-view calibrations, keyed by the bootstrap pose
INIT_FLAGS = {
    # orbital views constrain the K matrix; distortion is underdetermined
    PoseKind.ORBITAL: (
        cv2.CALIB_FIX_ASPECT_RATIO
        | cv2.CALIB_ZERO_TANGENT_DIST
        | cv2.CALIB_FIX_K1
        | cv2.CALIB_FIX_K2
        | cv2.CALIB_FIX_K3
    ),
    # frontal views constrain distortion; leave focal length alone
    PoseKind.PLANAR_FULL_SCREEN: cv2.CALIB_FIX_PRINCIPAL_POINT | cv2.CALIB_FIX_FOCAL_LENGTH,
}


class InsufficientDataError(ValueError):
    """Not enough keyframes or points to run a calibration."""


class CalibrationFailedError(RuntimeError):
    """The OpenCV solver raised during calibration."""


# ============================================================================
# Statistics
# ============================================================================


def index_of_dispersion(mean: np.ndarray, variance: np.ndarray) -> np.ndarray:
    """
    Variance-to-mean ratio per parameter.

    The divisor is max(|mean|, 1) so parameters with small nominal values
    (distortion terms, or exactly zero) are not blown up.
    """
    mean = np.asarray(mean, dtype=np.float64)
    variance = np.asarray(variance, dtype=np.float64)
    if mean.shape != variance.shape:
        raise ValueError(f"mean {mean.shape} and variance {variance.shape} differ in shape")
    return variance / np.maximum(np.abs(mean), 1.0)


def compute_pose_variance(
    rvecs: list[np.ndarray],
    tvecs: list[np.ndarray],
    translation_scale: float = 10.0,
) -> np.ndarray:
    """
    Population variance of the view poses.

    Args:
        rvecs: per-view Rodrigues vectors
        tvecs: per-view translations
        translation_scale: translations are divided by this before the variance

    Returns:
        (6,) variances of rx, ry, rz (Euler degrees) and tx, ty, tz
    """
    reulers = []
    for r in rvecs:
        rmat = cv2.Rodrigues(np.asarray(r, dtype=np.float64).reshape(3, 1))[0]
        euler = np.array(cv2.RQDecomp3x3(rmat)[0], dtype=np.float64)
        # keep r_x away from the +-180 deg branch cut of this board's mounting
        euler[0] %= 360.0
        reulers.append(euler)

    translations = [np.asarray(t, dtype=np.float64).ravel() / translation_scale for t in tvecs]

    return np.hstack([np.var(reulers, axis=0), np.var(translations, axis=0)])


# ============================================================================
# Calibrator
# ============================================================================


class Calibrator:
    """
    Owns the keyframes and the current camera model.
    """

    def __init__(self, img_size: tuple[int, int], config: GuidanceConfig | None = None):
        self.config = config or GuidanceConfig()
        self.img_size = img_size
        self.nintr = NINTR
        self.keyframes: list[Keyframe] = []
        self.flags = cv2.CALIB_USE_LU
        self.criteria = (
            cv2.TERM_CRITERIA_COUNT + cv2.TERM_CRITERIA_EPS,
            self.config.calibrate_max_iter,
            sys.float_info.epsilon,
        )
        self.model = CameraModel.initial(img_size, self.config.initial_focal_length)
        self.statistics = CalibrationStatistics()

    @property
    def reperr(self) -> float:
        return self.statistics.reprojection_error

    def add_keyframe(self, keyframe: Keyframe) -> None:
        self.keyframes.append(keyframe)

    def reset(self) -> None:
        """Start a new session: drop keyframes and return to the bootstrap model."""
        self.keyframes = []
        self.flags = cv2.CALIB_USE_LU
        self.model = CameraModel.initial(self.img_size, self.config.initial_focal_length)
        self.statistics = CalibrationStatistics()

    def calibrate(
        self,
        keyframes: list[Keyframe] | None = None,
        pose_kind: PoseKind = PoseKind.ORBITAL,
    ) -> np.ndarray:
        """
        Calibrate from keyframes and refresh the model and statistics.

        Args:
            keyframes: views to use; the stored keyframes when empty or None
            pose_kind: bootstrap pose the single-view restrictions are chosen for

        Returns:
            (9,) index of dispersion per intrinsic

        Raises:
            InsufficientDataError: no keyframes, or 4 or fewer points in total
            CalibrationFailedError: the solver failed; model is left unchanged
        """
        if not keyframes:
            keyframes = list(self.keyframes)
        if not keyframes:
            raise InsufficientDataError("No keyframes to calibrate from")

        flags = cv2.CALIB_USE_LU
        if len(keyframes) <= 1:
            flags |= INIT_FLAGS.get(pose_kind, 0)

        n_points = sum(kf.n_pts for kf in keyframes)
        if n_points <= 4:
            raise InsufficientDataError(f"Not enough total points: {n_points}")

        obj_points = [kf.p3d.astype(np.float32).reshape(-1, 1, 3) for kf in keyframes]
        img_points = [kf.p2d.astype(np.float32).reshape(-1, 1, 2) for kf in keyframes]

        try:
            result = cv2.calibrateCameraExtended(
                obj_points,
                img_points,
                self.img_size,
                self.model.matrix.copy(),
                self.model.distortion.copy(),
                flags=flags,
                criteria=self.criteria,
            )
        except cv2.error as e:
            raise CalibrationFailedError(f"calibrateCameraExtended failed: {e}") from e

        reperr, matrix, dist, rvecs, tvecs, std_intrinsics = result[:6]

        self.flags = flags
        self.model = CameraModel(
            matrix=np.asarray(matrix, dtype=np.float64),
            distortion=np.asarray(dist, dtype=np.float64).ravel()[:5],
        )

        variance = np.asarray(std_intrinsics, dtype=np.float64).ravel()[:NINTR] ** 2
        self.statistics = CalibrationStatistics(
            reprojection_error=float(reperr),
            variance_intrinsics=variance,
            pose_variance=compute_pose_variance(rvecs, tvecs, self.config.translation_scale),
            index_of_dispersion=index_of_dispersion(self.model.intrinsics, variance),
        )
        logger.debug(
            "calibrated %d views, %d points, reperr %.4f",
            len(keyframes),
            n_points,
            reperr,
        )

        return self.statistics.index_of_dispersion
