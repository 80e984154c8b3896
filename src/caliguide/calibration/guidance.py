"""
Interactive calibration guidance.

GuidanceController decides on every frame whether the operator has reached
the requested board pose, captures keyframes, tracks per-parameter
convergence and picks the next pose to request.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

import cv2
import numpy as np

from ..types import (
    INTRINSIC_NAMES,
    POSE_NAMES,
    CameraModel,
    CharucoConfig,
    GuidanceConfig,
    Keyframe,
    Pose,
)
from .calibrator import CalibrationFailedError, Calibrator, InsufficientDataError
from .pose_generator import PoseGenerator
from .preview import BoardPreview, jaccard_similarity

logger = logging.getLogger(__name__)

# parameters that are optimized by the same board poses
PARAM_GROUPS = ((0, 1, 2, 3), (4, 5, 6, 7, 8))

FLAG_NAMES = {
    cv2.CALIB_USE_LU: "use_lu",
    cv2.CALIB_FIX_ASPECT_RATIO: "fix_aspect_ratio",
    cv2.CALIB_FIX_PRINCIPAL_POINT: "fix_principal_point",
    cv2.CALIB_FIX_FOCAL_LENGTH: "fix_focal_length",
    cv2.CALIB_ZERO_TANGENT_DIST: "zero_tangent_dist",
    cv2.CALIB_FIX_K1: "fix_k1",
    cv2.CALIB_FIX_K2: "fix_k2",
    cv2.CALIB_FIX_K3: "fix_k3",
}


class BoardTracker(Protocol):
    """What the controller needs from the board detector."""

    img_size: tuple[int, int]
    board_image: np.ndarray
    pose_valid: bool
    rvec: np.ndarray
    tvec: np.ndarray
    mean_flow: float

    @property
    def board_size(self) -> tuple[int, int]: ...

    @property
    def n_pts(self) -> int: ...

    def get_calib_pts(self) -> Keyframe: ...

    def set_intrinsics(self, model: CameraModel) -> None: ...

    def draw_axis(self, img: np.ndarray) -> None: ...


def format_flags(flags: int) -> str:
    """Human readable OpenCV calibration flags."""
    names = []
    unknown = flags
    for flag, name in FLAG_NAMES.items():
        if flags & flag == flag:
            names.append(name)
            unknown &= ~flag
    text = "flags: " + (" +".join(names) if names else "none") + f" ({flags})"
    if unknown:
        text += f"; unknown flag usage = {unknown}"
    return text


class ConvergenceState:
    """
    One flag per intrinsic. A flag, once set, stays set.
    """

    def __init__(self, nintr: int = 9):
        self.flags = [False] * nintr

    @property
    def converged(self) -> bool:
        return all(self.flags)

    def update(self, rel_pstd: np.ndarray, tgt_param: int, threshold: float) -> list[str]:
        """
        Mark parameters of tgt_param's group whose relative stddev improved,
        but by less than threshold.

        Returns:
            names of newly converged parameters
        """
        newly = []
        for group in PARAM_GROUPS:
            if tgt_param not in group:
                continue
            for p in group:
                if 0 < rel_pstd[p] < threshold and not self.flags[p]:
                    self.flags[p] = True
                    newly.append(INTRINSIC_NAMES[p])
        return newly

    def mask(self, dispersion: np.ndarray) -> np.ndarray:
        """Copy of dispersion with converged parameters zeroed."""
        masked = np.array(dispersion, dtype=np.float64)
        masked[np.array(self.flags)] = 0.0
        return masked


class GuidanceController:
    """
    Frame-driven guidance state machine.
    """

    def __init__(
        self,
        tracker: BoardTracker,
        board_config: CharucoConfig,
        config: GuidanceConfig | None = None,
    ):
        self.tracker = tracker
        self.board_config = board_config
        self.config = config or GuidanceConfig()
        self.img_size = tracker.img_size

        self.calib = Calibrator(self.img_size, self.config)
        self.convergence = ConvergenceState(self.calib.nintr)
        self.allpts = board_config.interior_corners
        # desired pose of board, translation defined in terms of board dimensions
        self.board_units = board_config.board_units

        self.posegen = PoseGenerator(self.img_size, self.config)
        self.board = BoardPreview(tracker.board_image)

        self.converged = False
        self.min_reperr_init = float("inf")
        self.tgt_param = -1

        # actual user guidance
        self.pose_reached = False
        self.capture = False
        self.still = False
        self.user_info_text = ""

        self.target: Pose | None = None
        self.board_warped: np.ndarray | None = None

        self.set_next_pose()

    @property
    def keyframes(self) -> list[Keyframe]:
        return self.calib.keyframes

    # ------------------------------------------------------------------------
    # Calibration and convergence
    # ------------------------------------------------------------------------

    def _calibrate(self) -> None:
        if len(self.calib.keyframes) < 2:
            return

        pvar_prev = self.calib.statistics.variance_intrinsics.copy()
        first = len(self.calib.keyframes) == 2

        index_of_dispersion = self.calib.calibrate().copy()
        pvar = self.calib.statistics.variance_intrinsics

        if not first:
            if pvar.sum() > pvar_prev.sum():
                logger.warning("note: total var degraded")

            with np.errstate(divide="ignore", invalid="ignore"):
                rel_pstd = 1.0 - np.sqrt(pvar) / np.sqrt(pvar_prev)
            logger.info("relative stddev %s", np.array2string(rel_pstd, precision=4))

            # tgt_param is -1 until a multi-view calibration has succeeded
            if self.tgt_param >= 0 and rel_pstd[self.tgt_param] < 0:
                logger.warning("%s degraded", INTRINSIC_NAMES[self.tgt_param])

            newly = self.convergence.update(rel_pstd, self.tgt_param, self.config.var_terminate)
            if newly:
                logger.info("%s converged", ", ".join(newly))

        # converged intrinsics can't be selected again
        index_of_dispersion = self.convergence.mask(index_of_dispersion)
        self.tgt_param = int(np.argmax(index_of_dispersion))

    def set_next_pose(self) -> None:
        nk = len(self.calib.keyframes)
        self.target = self.posegen.get_pose(self.board_units, nk, self.tgt_param, self.calib.model)
        logger.debug("target pose r=%s t=%s", self.target.rvec, self.target.tvec)

        self.board.create_maps(self.calib.model, self.img_size)
        self.board_warped = self.board.project(self.target.rvec, self.target.tvec)

    # ------------------------------------------------------------------------
    # Frame update
    # ------------------------------------------------------------------------

    def pose_close_to_tgt(self) -> float:
        """Jaccard similarity of the target board and the detected board."""
        if not self.tracker.pose_valid or self.target is None:
            return 0.0

        target = self.board_warped[:, :, 1]
        shadow = self.board.project(self.tracker.rvec, self.tracker.tvec, shadow=True)
        return jaccard_similarity(target, shadow)

    def _bootstrap(self) -> None:
        """
        Try to estimate intrinsics from the current frame alone.

        The result only replaces the current model if its reprojection error
        beats every earlier bootstrap.
        """
        calib = self.calib
        previous = (calib.model, calib.statistics, calib.flags)
        try:
            calib.calibrate([self.tracker.get_calib_pts()], self.posegen.pose_kind)
        except (InsufficientDataError, CalibrationFailedError) as e:
            logger.warning("bootstrap calibration skipped: %s", e)
            return

        if not calib.reperr < self.min_reperr_init:
            logger.debug("bootstrap rejected, reperr %.4f >= %.4f", calib.reperr, self.min_reperr_init)
            calib.model, calib.statistics, calib.flags = previous
            return

        logger.info("bootstrap model accepted, reperr %.4f", calib.reperr)
        self.set_next_pose()
        self.tracker.set_intrinsics(calib.model)
        self.min_reperr_init = calib.reperr

    def update(self, force: bool = False) -> bool:
        """
        Process the tracker's current frame.

        Args:
            force: capture even if the pose is not reached or the board moves

        Returns:
            True if a keyframe was captured
        """
        n_pts = self.tracker.n_pts

        # first time need to see at least half of the interior corners
        if not self.calib.keyframes and n_pts >= self.allpts // 2:
            self._bootstrap()

        self.pose_reached = force and n_pts >= self.config.min_corners

        similarity = self.pose_close_to_tgt()
        if similarity > self.config.pose_close_to_tgt_min:
            self.pose_reached = True

        # enough points to determine intrinsics plus two views' extrinsics,
        # then 15 points per frame
        n_required = ((self.calib.nintr + 2 * 6) * 5 + 3) // 4
        if len(self.calib.keyframes) >= 2:
            n_required = 6 // 2 * 5

        self.still = self.tracker.mean_flow < self.config.mean_flow_max

        # use all points instead to ensure we have a stable pose
        self.pose_reached = self.pose_reached and n_pts >= n_required
        self.capture = self.pose_reached and (self.still or force)

        logger.debug(
            "corners %d, similarity %.3f, still %s, mean_flow %.2f, pose_reached %s, force %s",
            n_pts,
            similarity,
            self.still,
            self.tracker.mean_flow,
            self.pose_reached,
            force,
        )

        if not self.capture:
            self._update_user_info()
            return False

        self.calib.add_keyframe(self.tracker.get_calib_pts())

        # update calibration with all keyframes
        try:
            self._calibrate()
        except CalibrationFailedError as e:
            logger.error("calibration failed, keeping previous model: %s", e)

        # use the updated calibration results for tracking
        self.tracker.set_intrinsics(self.calib.model)

        self.converged = self.convergence.converged
        if self.converged:
            self.target = None
            self.board_warped = None
        else:
            self.set_next_pose()

        self._update_user_info()
        return True

    def _update_user_info(self) -> None:
        if len(self.calib.keyframes) < 2:
            self.user_info_text = "initialization"
        elif self.tgt_param < 0:
            # no successful multi-view calibration yet
            self.user_info_text = "keep the board in view, waiting for calibration"
        elif not self.converged:
            pose_var = self.calib.statistics.pose_variance
            if self.tgt_param < 4:
                action = "rotate"
                # do not consider r_z as it does not add any information
                axis = int(np.argmin(pose_var[0:2]))
            else:
                action = "translate"
                # NOTE: t_z stays a candidate here, unlike r_z above
                axis = int(np.argmin(pose_var[3:6])) + 3
            param = INTRINSIC_NAMES[self.tgt_param]
            self.user_info_text = f"{action} {POSE_NAMES[axis]} to minimize {param}"
        else:
            self.user_info_text = f"converged at MSE: {self.calib.reperr}"

        if self.pose_reached and not self.still:
            self.user_info_text += "\nhold camera steady"

    # ------------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------------

    def draw(self, img: np.ndarray, mirror: bool = False) -> np.ndarray:
        """
        Composite the target board onto a BGR display frame (in place).
        """
        if self.board_warped is not None:
            # any non-black pixel of the warped board wins
            overlay = self.board_warped != 0
            img[overlay] = self.board_warped[overlay]

        if self.tracker.pose_valid:
            self.tracker.draw_axis(img)

        if mirror:
            img[:] = cv2.flip(img, 1)

        return img

    def write(self) -> dict:
        """
        Final calibration report.
        """
        model = self.calib.model
        report = {
            "calibration_time": datetime.now().isoformat(timespec="seconds"),
            "nr_of_frames": len(self.calib.keyframes),
            "image_width": self.img_size[0],
            "image_height": self.img_size[1],
            "board_width": self.board_config.columns,
            "board_height": self.board_config.rows,
            "square_size": self.board_config.square_len,
            "marker_size": self.board_config.marker_len,
            "flags": self.calib.flags,
            "flags_text": format_flags(self.calib.flags),
            "fisheye_model": 0,
            "camera_matrix": model.matrix.copy(),
            "distortion_coefficients": model.distortion.copy(),
            "avg_reprojection_error": self.calib.reperr,
        }
        for key, value in report.items():
            logger.info("%s %s", key, value)
        return report

    def reset(self) -> None:
        """Discard everything collected and start a new session."""
        self.calib.reset()
        self.posegen.reset()
        self.convergence = ConvergenceState(self.calib.nintr)
        self.converged = False
        self.min_reperr_init = float("inf")
        self.tgt_param = -1
        self.pose_reached = self.capture = self.still = False
        self.user_info_text = ""
        self.set_next_pose()
