"""
Rendering of the guidance board into the camera view.
"""

from __future__ import annotations

import cv2
import numpy as np

from ..types import CameraModel


def jaccard_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """
    Intersection over union of two silhouettes (non-zero = inside).

    Returns 0.0 when both are empty.
    """
    a = np.asarray(a) != 0
    b = np.asarray(b) != 0
    union = np.count_nonzero(a | b)
    if union == 0:
        return 0.0
    return np.count_nonzero(a & b) / union


class BoardPreview:
    """
    Warps the board image to a given pose under the current camera model.

    The board image uses one pixel per board unit, so its pixel corners are
    the board's object-space corners.
    """

    def __init__(self, board_image: np.ndarray):
        if board_image.ndim == 2:
            board_image = cv2.cvtColor(board_image, cv2.COLOR_GRAY2BGR)
        self.img = board_image
        h, w = board_image.shape[:2]
        self.corners_img = np.array([[0, 0], [w, 0], [w, h], [0, h]], dtype=np.float32)
        self.corners_obj = np.array(
            [[0, 0, 0], [w, 0, 0], [w, h, 0], [0, h, 0]], dtype=np.float64
        )
        self.model: CameraModel | None = None
        self.sz: tuple[int, int] | None = None
        self.maps: tuple[np.ndarray, np.ndarray] | None = None

    def create_maps(self, model: CameraModel, img_size: tuple[int, int]) -> None:
        """
        Build the dense map that distorts an ideal (pinhole) rendering.

        For every output pixel the map holds the ideal pixel it shows.
        """
        self.model = model
        self.sz = img_size
        width, height = img_size
        xs, ys = np.meshgrid(np.arange(width, dtype=np.float32), np.arange(height, dtype=np.float32))
        pts = np.stack([xs, ys], axis=-1).reshape(-1, 1, 2)
        ideal = cv2.undistortPoints(pts, model.matrix, model.distortion, P=model.matrix)
        ideal = ideal.reshape(height, width, 2)
        self.maps = (ideal[:, :, 0].copy(), ideal[:, :, 1].copy())

    def _homography(self, rvec: np.ndarray, tvec: np.ndarray) -> np.ndarray:
        projected, _ = cv2.projectPoints(
            self.corners_obj,
            np.asarray(rvec, dtype=np.float64).reshape(3, 1),
            np.asarray(tvec, dtype=np.float64).reshape(3, 1),
            self.model.matrix,
            None,
        )
        return cv2.getPerspectiveTransform(self.corners_img, projected.reshape(4, 2).astype(np.float32))

    def project(
        self,
        rvec: np.ndarray,
        tvec: np.ndarray,
        shadow: bool = False,
        interpolation: int = cv2.INTER_NEAREST,
    ) -> np.ndarray:
        """
        Render the board at a pose.

        Args:
            rvec: board rotation (Rodrigues)
            tvec: board translation
            shadow: render only the board silhouette
            interpolation: OpenCV interpolation flag

        Returns:
            shadow: (h, w) uint8 silhouette, 255 inside the board
            otherwise: (h, w, 3) BGR board with channel 1 set on the board
        """
        if self.model is None:
            raise RuntimeError("create_maps() must be called before project()")

        H = self._homography(rvec, tvec)
        silhouette = np.full(self.img.shape[:2], 255, dtype=np.uint8)
        silhouette = cv2.warpPerspective(silhouette, H, self.sz, flags=interpolation)
        silhouette = cv2.remap(silhouette, *self.maps, interpolation)
        if shadow:
            return silhouette

        img = cv2.warpPerspective(self.img, H, self.sz, flags=interpolation)
        img = cv2.remap(img, *self.maps, interpolation)
        # green channel marks board coverage, including its black squares
        img[:, :, 1] = np.where(silhouette > 0, 255, img[:, :, 1])
        return img
