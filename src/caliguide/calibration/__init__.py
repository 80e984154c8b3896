"""
Calibration guidance module for caliguide.

Pose constructors and statistics are pure functions; the stateful pieces
(Calibrator, PoseGenerator, GuidanceController, CharucoTracker) are plain
single-threaded objects driven one frame at a time.
"""

from .charuco import (
    ARUCO_DICTIONARIES,
    create_charuco_board,
    generate_board_image,
    get_charuco_object_points,
)

from .calibrator import (
    Calibrator,
    CalibrationFailedError,
    InsufficientDataError,
    compute_pose_variance,
    index_of_dispersion,
)

from .distortion import (
    CoverageMask,
    DistortionField,
    RegionFound,
    RegionNotFound,
    compute_distortion_field,
    find_region,
)

from .pose_generator import (
    AngleBinGenerator,
    PoseGenerator,
    orbital_pose,
    pose_from_bounds,
    pose_planar_fullscreen,
    unproject,
)

from .preview import (
    BoardPreview,
    jaccard_similarity,
)

from .tracker import CharucoTracker

from .guidance import (
    ConvergenceState,
    GuidanceController,
    format_flags,
)

__all__ = [
    # Charuco
    "ARUCO_DICTIONARIES",
    "create_charuco_board",
    "generate_board_image",
    "get_charuco_object_points",
    # Calibrator
    "Calibrator",
    "CalibrationFailedError",
    "InsufficientDataError",
    "compute_pose_variance",
    "index_of_dispersion",
    # Distortion
    "CoverageMask",
    "DistortionField",
    "RegionFound",
    "RegionNotFound",
    "compute_distortion_field",
    "find_region",
    # Poses
    "AngleBinGenerator",
    "PoseGenerator",
    "orbital_pose",
    "pose_from_bounds",
    "pose_planar_fullscreen",
    "unproject",
    # Preview
    "BoardPreview",
    "jaccard_similarity",
    # Tracking
    "CharucoTracker",
    # Guidance
    "ConvergenceState",
    "GuidanceController",
    "format_flags",
]
