"""
Pytest configuration and shared fixtures.
"""

import tempfile
from pathlib import Path

import cv2
import numpy as np
import pytest


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def sample_intrinsics_matrix():
    """Typical camera intrinsics matrix."""
    return np.array([
        [800.0, 0.0, 640.0],
        [0.0, 800.0, 360.0],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)


@pytest.fixture
def sample_distortion():
    """Typical distortion coefficients (k1, k2, p1, p2, k3)."""
    return np.array([0.1, -0.25, 0.001, -0.001, 0.1], dtype=np.float64)


@pytest.fixture
def sample_charuco_config():
    """Standard 9x6 ChArUco board: 40 interior corners, 2520 x 1680 units."""
    from caliguide.types import CharucoConfig
    return CharucoConfig()


@pytest.fixture
def sample_guidance_config():
    """Default guidance thresholds for a 1280x720 camera."""
    from caliguide.types import GuidanceConfig
    return GuidanceConfig()


@pytest.fixture
def small_guidance_config():
    """Guidance thresholds for a 640x480 camera (cheaper dense maps)."""
    from caliguide.types import GuidanceConfig
    return GuidanceConfig(image_width=640, image_height=480)


@pytest.fixture
def sample_camera_model(sample_intrinsics_matrix, sample_distortion):
    from caliguide.types import CameraModel
    return CameraModel(matrix=sample_intrinsics_matrix, distortion=sample_distortion)


# Board views used to synthesize keyframes: rotation vectors about the board
# centre, board centre 4500 units in front of the camera.
VIEW_RVECS = [
    (0.3, 0.0, 0.0),
    (-0.3, 0.1, 0.0),
    (0.0, 0.35, 0.1),
    (0.1, -0.35, -0.1),
    (0.2, 0.2, 0.3),
    (-0.25, -0.2, 0.2),
]


def board_object_points(columns=9, rows=6, square_len=280):
    """Interior corners of the board, row by row."""
    pts = [
        ((i + 1) * square_len, (j + 1) * square_len, 0.0)
        for j in range(rows - 1)
        for i in range(columns - 1)
    ]
    return np.array(pts, dtype=np.float64)


@pytest.fixture
def make_keyframes(sample_intrinsics_matrix, sample_distortion):
    """
    Factory for synthetic keyframes of the default board.

    Usage:
        keyframes = make_keyframes(n_views=4, n_points=30)
    """
    from caliguide.types import Keyframe

    def _make(n_views=6, n_points=40, noise=0.2, img_size=(1280, 720), distance=4500.0, seed=0):
        rng = np.random.default_rng(seed)
        obj = board_object_points()[:n_points]
        centre = np.array([1260.0, 840.0, 0.0])
        keyframes = []
        for i in range(n_views):
            rvec = np.array(VIEW_RVECS[i % len(VIEW_RVECS)], dtype=np.float64)
            R = cv2.Rodrigues(rvec)[0]
            tvec = -R @ centre + np.array([0.0, 0.0, distance + 150.0 * i])
            img, _ = cv2.projectPoints(obj, rvec, tvec, sample_intrinsics_matrix, sample_distortion)
            img = img.reshape(-1, 2) + rng.normal(0.0, noise, size=(len(obj), 2))
            keyframes.append(
                Keyframe(
                    img_size=img_size,
                    p3d=obj.astype(np.float32),
                    p2d=img.astype(np.float32),
                    pid=np.arange(len(obj), dtype=np.int32),
                )
            )
        return keyframes

    return _make


class FakeTracker:
    """
    Stand-in for CharucoTracker that replays prepared keyframes.
    """

    def __init__(self, board_config, img_size, keyframes):
        from caliguide.calibration.charuco import generate_board_image

        self.board_config = board_config
        self.img_size = img_size
        self.board_image = generate_board_image(board_config)
        self.frames = list(keyframes)
        self.index = 0
        self.pose_valid = False
        self.rvec = np.zeros(3)
        self.tvec = np.zeros(3)
        self.mean_flow = 0.0
        self.model = None
        self.axis_drawn = False

    @property
    def board_size(self):
        return self.board_config.board_size

    @property
    def n_pts(self):
        return self.frames[self.index].n_pts

    def next_frame(self):
        self.index = min(self.index + 1, len(self.frames) - 1)

    def get_calib_pts(self):
        return self.frames[self.index]

    def set_intrinsics(self, model):
        self.model = model

    def draw_axis(self, img):
        self.axis_drawn = True


@pytest.fixture
def fake_tracker_factory(sample_charuco_config):
    def _make(img_size, keyframes):
        return FakeTracker(sample_charuco_config, img_size, keyframes)

    return _make
