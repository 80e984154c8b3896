"""
ChArUco board tracking for live guidance.

Detects corners per frame, estimates the board pose once intrinsics are
known, and measures how much the board moved since the previous frame.
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from ..types import CameraModel, CharucoConfig, GuidanceConfig, Keyframe
from .charuco import create_charuco_board, generate_board_image, get_charuco_object_points

logger = logging.getLogger(__name__)


def _empty_points() -> tuple[np.ndarray, np.ndarray]:
    return np.array([], dtype=np.int32), np.array([], dtype=np.float32).reshape(0, 2)


class CharucoTracker:
    """
    Per-frame ChArUco detection state.
    """

    def __init__(
        self,
        board_config: CharucoConfig,
        img_size: tuple[int, int],
        config: GuidanceConfig | None = None,
    ):
        self.board_config = board_config
        self.config = config or GuidanceConfig()
        self.img_size = img_size
        self.board = create_charuco_board(board_config)
        self.board_image = generate_board_image(board_config)
        self.detector = cv2.aruco.CharucoDetector(self.board)
        self.all_corners = get_charuco_object_points(self.board)

        self.model: CameraModel | None = None

        self.pid, self.p2d = _empty_points()
        self.p3d = np.array([], dtype=np.float32).reshape(0, 3)
        self.pose_valid = False
        self.rvec = np.zeros(3)
        self.tvec = np.zeros(3)
        self.mean_flow = float("inf")

    @property
    def board_size(self) -> tuple[int, int]:
        return self.board_config.board_size

    @property
    def n_pts(self) -> int:
        return len(self.pid)

    def set_intrinsics(self, model: CameraModel) -> None:
        self.model = model

    def _find_corners(self, gray: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        corners, ids, _, _ = self.detector.detectBoard(gray)
        if ids is None or corners is None or len(ids) == 0:
            return _empty_points()
        return ids[:, 0].astype(np.int32), corners[:, 0, :].astype(np.float32)

    def detect(self, frame: np.ndarray) -> int:
        """
        Process one camera frame.

        If corners aren't found, tries detecting in mirrored frame.

        Args:
            frame: BGR image (h, w, 3)

        Returns:
            number of detected corners
        """
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY) if frame.ndim == 3 else frame

        ids, img_loc = self._find_corners(gray)
        if ids.size == 0:
            ids, img_loc = self._find_corners(cv2.flip(gray, 1))
            if ids.size > 0:
                # Flip x coordinates back
                img_loc[:, 0] = gray.shape[1] - img_loc[:, 0]

        self._update_flow(ids, img_loc)

        self.pid = ids
        self.p2d = img_loc
        self.p3d = self.all_corners[ids, :] if ids.size > 0 else np.array([], dtype=np.float32).reshape(0, 3)

        self._update_pose()
        return self.n_pts

    def _update_flow(self, ids: np.ndarray, img_loc: np.ndarray) -> None:
        """Mean corner displacement against the previous frame."""
        prev_ids, prev_loc = self.pid, self.p2d
        self.mean_flow = float("inf")

        union = np.union1d(prev_ids, ids)
        if union.size == 0:
            return
        common, prev_idx, cur_idx = np.intersect1d(prev_ids, ids, return_indices=True)
        if common.size / union.size < self.config.match_still_cids_min:
            return

        self.mean_flow = float(np.mean(np.linalg.norm(img_loc[cur_idx] - prev_loc[prev_idx], axis=1)))

    def _update_pose(self) -> None:
        self.pose_valid = False
        if self.model is None or self.n_pts < self.config.min_corners:
            return

        success, rvec, tvec = cv2.solvePnP(
            self.p3d.astype(np.float64),
            self.p2d.astype(np.float64),
            self.model.matrix,
            self.model.distortion,
        )
        if not success:
            return

        self.pose_valid = True
        self.rvec = rvec.ravel()
        self.tvec = tvec.ravel()

    def get_calib_pts(self) -> Keyframe:
        """Current detection as a keyframe."""
        return Keyframe(
            img_size=self.img_size,
            p3d=self.p3d.copy(),
            p2d=self.p2d.copy(),
            pid=self.pid.copy(),
        )

    def draw_axis(self, img: np.ndarray) -> None:
        if not self.pose_valid or self.model is None:
            return
        cv2.drawFrameAxes(
            img,
            self.model.matrix,
            self.model.distortion,
            self.rvec,
            self.tvec,
            float(self.board_config.square_len),
        )
