# caliguide - Guided interactive camera calibration

__version__ = "0.1.0"

# Core types
from caliguide.types import (
    CalibrationStatistics,
    CameraIntrinsics,
    CameraModel,
    CharucoConfig,
    GuidanceConfig,
    Keyframe,
    Pose,
    PoseKind,
    Rect,
    SessionConfig,
)

# Configuration
from caliguide.config import (
    load_session_config,
    save_session_config,
    save_calibration_report,
    load_calibration_report,
    save_intrinsics,
    load_intrinsics,
)

# Guidance
from caliguide.calibration import (
    Calibrator,
    CharucoTracker,
    GuidanceController,
    PoseGenerator,
)

__all__ = [
    # Core types
    "CalibrationStatistics",
    "CameraIntrinsics",
    "CameraModel",
    "CharucoConfig",
    "GuidanceConfig",
    "Keyframe",
    "Pose",
    "PoseKind",
    "Rect",
    "SessionConfig",
    # Configuration
    "load_session_config",
    "save_session_config",
    "save_calibration_report",
    "load_calibration_report",
    "save_intrinsics",
    "load_intrinsics",
    # Guidance
    "Calibrator",
    "CharucoTracker",
    "GuidanceController",
    "PoseGenerator",
]
