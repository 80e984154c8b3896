"""
Target pose generation.

Closed-form pose constructors are pure functions; PoseGenerator holds the
session state they need (angle bins, coverage mask, principal-point nudge
direction).
"""

from __future__ import annotations

import logging
import math
from collections import deque

import cv2
import numpy as np

from ..types import CameraModel, GuidanceConfig, Pose, PoseKind, Rect
from .distortion import CoverageMask, RegionNotFound, compute_distortion_field, find_region

logger = logging.getLogger(__name__)


# ============================================================================
# Angle Bins
# ============================================================================


class AngleBinGenerator:
    """
    Values in [start, end] by binary subdivision.

    Each next() pops the oldest interval, returns its midpoint and queues
    both halves, so coverage of the range gets finer in round-robin order.
    The queue grows by one interval per call.
    """

    def __init__(self, start: float, end: float):
        mid = (start + end) / 2.0
        self._intervals: deque[tuple[float, float]] = deque([(start, mid), (mid, end)])

    def __len__(self) -> int:
        return len(self._intervals)

    def next(self) -> float:
        s, e = self._intervals.popleft()
        t = (s + e) / 2.0
        self._intervals.append((s, t))
        self._intervals.append((t, e))
        return t


# ============================================================================
# Closed-form Poses
# ============================================================================


def unproject(p, matrix: np.ndarray, distortion: np.ndarray, z: float) -> np.ndarray:
    """
    Project a pixel back to the 3D point at depth z.
    """
    p = np.asarray(p, dtype=np.float64).reshape(1, 1, 2)
    x, y = cv2.undistortPoints(p, matrix, distortion).ravel()
    return np.array([x, y, 1.0]) * z


def orbital_pose(
    bbox: np.ndarray,
    rx: float,
    ry: float,
    z: float,
    rz: float = 0.0,
) -> Pose:
    """
    Board rotated about its centre, placed in front of the camera.

    Args:
        bbox: board width, height and notional depth. Planar object with
            virtual Z dimension.
        rx: rotation around x axis in rad
        ry: rotation around y axis in rad
        z: distance to camera in board lengths
        rz: rotation around z axis in rad

    Returns:
        Pose (rvec, tvec)
    """
    bbox = np.asarray(bbox, dtype=np.float64)
    Rz = cv2.Rodrigues(np.array([0.0, 0.0, rz]))[0]
    Rx = cv2.Rodrigues(np.array([math.pi + rx, 0.0, 0.0]))[0]  # flip by 180 so Z is up
    Ry = cv2.Rodrigues(np.array([0.0, ry, 0.0]))[0]

    # homogeneous transforms in row-vector form: translation lives in row 3
    R = np.eye(4)
    R[:3, :3] = Ry @ Rx @ Rz

    # rotate about the board centre
    Tc = np.eye(4)
    Tc[3, :3] = R[:3, :3] @ (bbox * np.array([-0.5, -0.5, 0.0]))

    # then move it into view
    T = np.eye(4)
    T[3, :3] = bbox * np.array([-0.5, -0.5, z])

    Rf = np.linalg.inv(Tc) @ R @ Tc @ T

    rvec = cv2.Rodrigues(Rf[:3, :3])[0].ravel()
    return Pose(rvec=rvec, tvec=Rf[3, :3].copy())


def pose_planar_fullscreen(
    matrix: np.ndarray,
    distortion: np.ndarray,
    img_size: tuple[int, int],
    bbox: np.ndarray,
) -> Pose:
    """
    Frontal board scaled to fill as much of the image as its aspect allows.
    """
    width, height = img_size
    KB = matrix @ np.array([bbox[0], bbox[1], 0.0])  # ignores the principal point
    z = min(KB[0] / width, KB[1] / height)
    pB = KB[:2] / z

    r = np.array([math.pi, 0.0, 0.0])  # flip image
    # move board to center, org = bl
    p = (width / 2.0 - pB[0] / 2.0, height / 2.0 + pB[1] / 2.0)
    t = unproject(p, matrix, distortion, z)
    return Pose(rvec=r, tvec=t)


def pose_from_bounds(
    src_ext: np.ndarray,
    tgt_rect: Rect,
    matrix: np.ndarray,
    distortion: np.ndarray,
    img_size: tuple[int, int],
) -> tuple[Pose, Rect]:
    """
    Board pose that covers a target rectangle of the image.

    Args:
        src_ext: board width, height and notional depth
        tgt_rect: desired on-screen rectangle in pixels
        matrix: camera matrix
        distortion: distortion coefficients
        img_size: (width, height)

    Returns:
        (pose, rect actually covered)
    """
    img_w, img_h = img_size
    src_w, src_h = float(src_ext[0]), float(src_ext[1])
    x, y, w, h = tgt_rect.x, tgt_rect.y, tgt_rect.width, tgt_rect.height

    rot90 = h > w and src_w > src_h
    min_width = math.floor(img_w / 3.333)

    if rot90:
        src_w, src_h = src_h, src_w
        if h < min_width:
            scale = min_width / h
            h = min_width
            w = int(w * scale)
    elif w < min_width:
        scale = min_width / w
        w = min_width
        h = int(h * scale)

    aspect = src_w / src_h
    # match aspect ratio of tgt to src, but keep tl
    if not rot90:
        h = int(w / aspect)
    else:
        w = int(h * aspect)

    # NOTE: the width/height roles below look swapped; kept as is
    if w > img_w:
        aspect = img_w / w
        w = int(h * aspect)
        h = int(w * aspect)
    if h > img_h:
        aspect = img_h / h
        w = int(h * aspect)
        h = int(w * aspect)

    r = np.array([math.pi, 0.0, 0.0])
    # org is bl
    if rot90:
        R = cv2.Rodrigues(r)[0] @ cv2.Rodrigues(np.array([0.0, 0.0, -math.pi / 2.0]))[0]
        r = cv2.Rodrigues(R)[0].ravel()
        # org is tl

    z = matrix[0, 0] * src_w / w

    # clip to image region
    x = min(img_w - w, max(x, 0))
    y = min(img_h - h, max(y, 0))

    corner = (x, y) if rot90 else (x, y + h)
    t = unproject(corner, matrix, distortion, z)

    return Pose(rvec=r, tvec=t), Rect(x, y, w, h)


# ============================================================================
# Pose Generator
# ============================================================================


class PoseGenerator:
    """
    Generate target poses based on calibration progress and distortion.
    """

    def __init__(self, img_size: tuple[int, int], config: GuidanceConfig | None = None):
        self.config = config or GuidanceConfig()
        self.img_size = img_size
        limit = math.radians(self.config.angle_limit_deg)
        # valid poses: r_x, r_y -> -limit .. limit
        self.angle_bins = (AngleBinGenerator(-limit, limit), AngleBinGenerator(-limit, limit))
        self.mask = CoverageMask(img_size, self.config.subsample)
        self.sgn = 1.0
        self.pose_kind = PoseKind.ORBITAL

    def orbital(self, axis: int) -> tuple[float, float]:
        """Next (rx, ry) pair with only the given axis non-zero."""
        angle = [0.0, 0.0]
        angle[axis] = self.angle_bins[axis].next()
        return angle[0], angle[1]

    def get_pose(
        self,
        bbox: np.ndarray,
        nk: int,
        tgt_param: int,
        model: CameraModel,
    ) -> Pose:
        """
        Next target pose of the board.

        Args:
            bbox: board width, height and notional depth
            nk: number of keyframes captured so far
            tgt_param: index of the intrinsic the pose should improve
            model: current camera model estimate

        Returns:
            Pose of the guidance board
        """
        K, cdist = model.matrix, model.distortion
        cfg = self.config

        # first frame will be orbital pose from fixed angles
        if nk == 0:
            self.pose_kind = PoseKind.ORBITAL
            return orbital_pose(bbox, 0.0, math.pi / 4.0, cfg.orbital_distance, cfg.orbital_roll)

        # second frame will be full screen planar based on the K estimated from the first
        if nk == 1:
            self.pose_kind = PoseKind.PLANAR_FULL_SCREEN
            return pose_planar_fullscreen(K, cdist, self.img_size, bbox)

        if tgt_param < 4:
            self.pose_kind = PoseKind.ORBITAL
            # orbital pose is used for focal length
            axis = (tgt_param + 1) % 2  # f_y -> r_x
            rx, ry = self.orbital(axis)
            pose = orbital_pose(bbox, rx, ry, cfg.orbital_distance, cfg.orbital_roll)

            if tgt_param > 1:
                # nudge the principal point and unproject it
                i = tgt_param - 2
                off = np.array([model.cx, model.cy])
                off[i] += self.img_size[i] * cfg.principal_point_offset * self.sgn
                off3d = unproject(off, K, cdist, pose.tvec[2])
                off3d[2] = 0.0
                pose = Pose(rvec=pose.rvec, tvec=pose.tvec + off3d)
                self.sgn = -self.sgn

            return pose

        field = compute_distortion_field(K, self.img_size, cdist, cfg.subsample)
        # ignore previously used masked off areas
        result = find_region(
            field.pts,
            field.dpts,
            self.mask.cells,
            prefer_low=False,
            threshold=1.0,
            max_overlap=cfg.max_overlap,
        )
        if isinstance(result, RegionNotFound):
            logger.info("no uncovered distortion region left, targeting cy instead")
            return self.get_pose(bbox, nk, 3, model)

        tgt_rect = result.rect.scaled(cfg.subsample)
        pose, nbounds = pose_from_bounds(bbox, tgt_rect, K, cdist, self.img_size)
        self.mask.mark(nbounds)
        self.pose_kind = PoseKind.COVERAGE

        return pose

    def reset(self) -> None:
        """Start a new session."""
        limit = math.radians(self.config.angle_limit_deg)
        self.angle_bins = (AngleBinGenerator(-limit, limit), AngleBinGenerator(-limit, limit))
        self.mask.reset()
        self.sgn = 1.0
        self.pose_kind = PoseKind.ORBITAL
