"""
Tests for caliguide.calibration.pose_generator.
"""

import math

import cv2
import numpy as np
import pytest

from caliguide.calibration.pose_generator import (
    AngleBinGenerator,
    PoseGenerator,
    orbital_pose,
    pose_from_bounds,
    pose_planar_fullscreen,
    unproject,
)
from caliguide.types import CameraModel, PoseKind, Rect

BOARD = np.array([2520.0, 1680.0, 2520.0])


def _to_camera(pose, pts):
    R = cv2.Rodrigues(np.asarray(pose.rvec, dtype=np.float64))[0]
    return (R @ np.asarray(pts, dtype=np.float64).T).T + pose.tvec


def _board_corners(bbox=BOARD):
    w, h = bbox[0], bbox[1]
    return np.array([[0, 0, 0], [w, 0, 0], [w, h, 0], [0, h, 0]], dtype=np.float64)


def _project(pose, matrix):
    img, _ = cv2.projectPoints(
        _board_corners(), np.asarray(pose.rvec, dtype=np.float64), np.asarray(pose.tvec, dtype=np.float64),
        matrix, None,
    )
    return img.reshape(-1, 2)


@pytest.fixture
def model():
    return CameraModel.initial((1280, 720), 1000.0)


@pytest.fixture
def barrel_model():
    return CameraModel(
        matrix=np.array([[1000.0, 0.0, 640.0], [0.0, 1000.0, 360.0], [0.0, 0.0, 1.0]]),
        distortion=np.array([-0.3, 0.1, 0.0, 0.0, 0.0]),
    )


class TestAngleBinGenerator:
    def test_subdivision_order(self):
        gen = AngleBinGenerator(0.0, 1.0)
        values = [gen.next() for _ in range(6)]
        assert values == pytest.approx([0.25, 0.75, 0.125, 0.375, 0.625, 0.875])

    def test_no_repeats(self):
        gen = AngleBinGenerator(-1.2, 1.2)
        values = [gen.next() for _ in range(20)]
        assert len(set(values)) == 20
        assert all(-1.2 < v < 1.2 for v in values)

    def test_queue_grows_by_one(self):
        gen = AngleBinGenerator(-1.0, 1.0)
        assert len(gen) == 2
        gen.next()
        gen.next()
        assert len(gen) == 4


class TestUnproject:
    def test_principal_point_on_axis(self, model):
        p = unproject((model.cx, model.cy), model.matrix, model.distortion, 5.0)
        np.testing.assert_allclose(p, [0.0, 0.0, 5.0], atol=1e-9)

    def test_offset_scales_with_depth(self, model):
        p = unproject((model.cx + 100.0, model.cy), model.matrix, model.distortion, 2000.0)
        np.testing.assert_allclose(p, [200.0, 0.0, 2000.0], atol=1e-6)


class TestOrbitalPose:
    def test_centre_on_optical_axis(self):
        """The board centre stays on the optical axis at any angle."""
        centre = [BOARD[0] / 2, BOARD[1] / 2, 0.0]
        for rx, ry, rz in [(0.0, 0.0, 0.0), (0.3, 0.0, 0.0), (0.0, -0.6, math.pi / 8), (0.4, 0.2, 0.1)]:
            pose = orbital_pose(BOARD, rx, ry, 1.6, rz)
            np.testing.assert_allclose(
                _to_camera(pose, [centre])[0], [0.0, 0.0, 1.6 * BOARD[2]], atol=1e-6
            )

    def test_flipped_facing_camera(self):
        """Zero angles give the board flipped by 180 deg about x."""
        pose = orbital_pose(BOARD, 0.0, 0.0, 1.6)
        R = cv2.Rodrigues(pose.rvec)[0]
        np.testing.assert_allclose(R, np.diag([1.0, -1.0, -1.0]), atol=1e-9)
        np.testing.assert_allclose(pose.tvec, [-BOARD[0] / 2, BOARD[1] / 2, 1.6 * BOARD[2]], atol=1e-6)

    def test_distance_in_board_lengths(self):
        near = orbital_pose(BOARD, 0.0, 0.0, 1.0)
        far = orbital_pose(BOARD, 0.0, 0.0, 2.0)
        assert far.tvec[2] == pytest.approx(2.0 * near.tvec[2])


class TestPlanarFullscreen:
    def test_fills_one_dimension(self):
        matrix = np.array([[800.0, 0.0, 320.0], [0.0, 800.0, 240.0], [0.0, 0.0, 1.0]])
        pose = pose_planar_fullscreen(matrix, np.zeros(5), (640, 480), BOARD)

        img = _project(pose, matrix)
        span_x = img[:, 0].max() - img[:, 0].min()
        span_y = img[:, 1].max() - img[:, 1].min()

        # the tighter of the two constraints is met exactly
        assert span_x == pytest.approx(640.0) or span_y == pytest.approx(480.0)
        assert span_x >= 640.0 - 1e-6 and span_y >= 480.0 - 1e-6
        np.testing.assert_allclose(img.mean(axis=0), [320.0, 240.0], atol=1e-6)

    def test_board_origin_bottom_left(self):
        matrix = np.array([[800.0, 0.0, 320.0], [0.0, 800.0, 240.0], [0.0, 0.0, 1.0]])
        pose = pose_planar_fullscreen(matrix, np.zeros(5), (640, 480), BOARD)

        img = _project(pose, matrix)
        assert img[0, 0] == pytest.approx(img[:, 0].min())
        assert img[0, 1] == pytest.approx(img[:, 1].max())


class TestPoseFromBounds:
    def test_min_width_clamp(self, model):
        """Small targets grow to a third of the image width, keeping the aspect."""
        pose, rect = pose_from_bounds(BOARD, Rect(100, 100, 150, 100), model.matrix, model.distortion, (1280, 720))

        assert rect == Rect(100, 100, 384, 256)
        img = _project(pose, model.matrix)
        assert img[:, 0].max() - img[:, 0].min() == pytest.approx(384.0, abs=1e-3)
        # board origin lands on the bottom-left corner of the rect
        np.testing.assert_allclose(img[0], [100.0, 356.0], atol=1e-3)

    def test_clipped_to_image(self, model):
        _, rect = pose_from_bounds(BOARD, Rect(1200, 650, 400, 200), model.matrix, model.distortion, (1280, 720))

        assert rect.x >= 0 and rect.y >= 0
        assert rect.x + rect.width <= 1280
        assert rect.y + rect.height <= 720

    def test_oversized_target_fits_image(self, model):
        _, rect = pose_from_bounds(BOARD, Rect(0, 0, 1500, 100), model.matrix, model.distortion, (1280, 720))

        assert rect.width <= 1280
        assert rect.height <= 720

    def test_tall_target_rotates_board(self, model):
        pose, rect = pose_from_bounds(BOARD, Rect(100, 50, 100, 200), model.matrix, model.distortion, (1280, 720))

        assert rect.height == 384
        assert rect.width < rect.height
        R = cv2.Rodrigues(pose.rvec)[0]
        expected = cv2.Rodrigues(np.array([math.pi, 0.0, 0.0]))[0] @ cv2.Rodrigues(
            np.array([0.0, 0.0, -math.pi / 2])
        )[0]
        np.testing.assert_allclose(R, expected, atol=1e-6)


class TestPoseGenerator:
    def test_first_pose_orbital(self, model):
        gen = PoseGenerator((1280, 720))
        pose = gen.get_pose(BOARD, 0, -1, model)

        expected = orbital_pose(BOARD, 0.0, math.pi / 4, 1.6, math.pi / 8)
        np.testing.assert_allclose(pose.rvec, expected.rvec)
        np.testing.assert_allclose(pose.tvec, expected.tvec)
        assert gen.pose_kind == PoseKind.ORBITAL

    def test_second_pose_planar(self, model):
        gen = PoseGenerator((1280, 720))
        pose = gen.get_pose(BOARD, 1, -1, model)

        expected = pose_planar_fullscreen(model.matrix, model.distortion, (1280, 720), BOARD)
        np.testing.assert_allclose(pose.tvec, expected.tvec)
        assert gen.pose_kind == PoseKind.PLANAR_FULL_SCREEN

    def test_focal_length_uses_orthogonal_axis(self, model):
        """f_x is sampled by rotating about y, f_y by rotating about x."""
        gen = PoseGenerator((1280, 720))
        gen.get_pose(BOARD, 2, 0, model)
        assert len(gen.angle_bins[1]) == 3
        assert len(gen.angle_bins[0]) == 2

        gen.get_pose(BOARD, 2, 1, model)
        assert len(gen.angle_bins[0]) == 3

    def test_principal_point_nudge_alternates(self, model):
        gen = PoseGenerator((1280, 720))
        limit = math.radians(70.0)

        first = gen.get_pose(BOARD, 2, 2, model)
        base = orbital_pose(BOARD, 0.0, -limit / 2, 1.6, math.pi / 8)
        shift = first.tvec - base.tvec
        assert shift[0] == pytest.approx(0.05 * 1280 / 1000.0 * base.tvec[2])
        assert shift[1] == pytest.approx(0.0, abs=1e-9)
        assert shift[2] == pytest.approx(0.0)
        assert gen.sgn == -1.0

        second = gen.get_pose(BOARD, 2, 2, model)
        base = orbital_pose(BOARD, 0.0, limit / 2, 1.6, math.pi / 8)
        assert (second.tvec - base.tvec)[0] < 0
        assert gen.sgn == 1.0

    def test_coverage_pose_marks_mask(self, barrel_model):
        gen = PoseGenerator((1280, 720))

        gen.get_pose(BOARD, 2, 5, barrel_model)

        assert gen.pose_kind == PoseKind.COVERAGE
        covered = gen.mask.covered_fraction()
        assert covered > 0

        before = gen.mask.cells.copy()
        gen.get_pose(BOARD, 3, 6, barrel_model)
        assert np.all(gen.mask.cells >= before)

    def test_saturated_mask_falls_back_to_cy(self, barrel_model):
        gen = PoseGenerator((1280, 720))
        gen.mask.cells[:] = 1

        gen.get_pose(BOARD, 2, 5, barrel_model)

        assert gen.pose_kind == PoseKind.ORBITAL
        # cy target: rotate about x and nudge the principal point
        assert len(gen.angle_bins[0]) == 3
        assert gen.sgn == -1.0

    def test_reset(self, barrel_model):
        gen = PoseGenerator((1280, 720))
        gen.get_pose(BOARD, 2, 5, barrel_model)
        gen.get_pose(BOARD, 2, 2, barrel_model)

        gen.reset()

        assert gen.mask.covered_fraction() == 0.0
        assert gen.sgn == 1.0
        assert len(gen.angle_bins[0]) == 2 and len(gen.angle_bins[1]) == 2
        assert gen.pose_kind == PoseKind.ORBITAL
