"""
Configuration loading/saving.

Pure functions operating on dataclasses.
- TOML for session configuration and calibration reports
- SQLite store of final intrinsics, one row per camera_name + resolution
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import asdict, fields
from pathlib import Path

import numpy as np
import rtoml

from .types import (
    CameraIntrinsics,
    CameraModel,
    CharucoConfig,
    GuidanceConfig,
    SessionConfig,
)


# ============================================================================
# TOML Session Configuration
# ============================================================================


def _pick(cls, section_data: dict) -> dict:
    """Keep only keys that are fields of the dataclass."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in section_data.items() if k in names}


def load_session_config(path: Path) -> SessionConfig:
    """
    Load session configuration from TOML file.

    Missing sections and keys fall back to the dataclass defaults.

    Args:
        path: Path to config.toml file

    Returns:
        SessionConfig dataclass
    """
    data = rtoml.load(path)

    camera_data = data.get("camera", {})
    board = CharucoConfig(**_pick(CharucoConfig, data.get("board", {})))
    guidance = GuidanceConfig(**_pick(GuidanceConfig, data.get("guidance", {})))

    return SessionConfig(
        camera_name=camera_data.get("name", "camera"),
        camera_index=camera_data.get("index", 0),
        board=board,
        guidance=guidance,
    )


def save_session_config(config: SessionConfig, path: Path) -> None:
    """
    Save session configuration to TOML file.

    Args:
        config: SessionConfig dataclass
        path: Path to save config.toml
    """
    data = {
        "camera": {
            "name": config.camera_name,
            "index": config.camera_index,
        },
        "board": asdict(config.board),
        "guidance": asdict(config.guidance),
    }

    # Ensure parent directory exists
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def create_default_session_config(camera_name: str = "camera") -> SessionConfig:
    """
    Create a default session configuration.

    9x6 board with 280 unit squares, 1280x720 camera.
    """
    return SessionConfig(camera_name=camera_name)


# ============================================================================
# Calibration Report (TOML)
# ============================================================================


def save_calibration_report(report: dict, path: Path) -> None:
    """
    Save the guidance report (GuidanceController.write()) to TOML.

    numpy arrays are stored as nested lists.
    """
    data = {}
    for key, value in report.items():
        if isinstance(value, np.ndarray):
            value = value.tolist()
        elif isinstance(value, np.generic):
            value = value.item()
        data[key] = value

    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def load_calibration_report(path: Path) -> CameraModel | None:
    """
    Load the camera model from a saved report.

    Returns:
        CameraModel, or None if the file doesn't exist
    """
    if not path.exists():
        return None

    data = rtoml.load(path)
    return CameraModel(
        matrix=np.array(data["camera_matrix"], dtype=np.float64).reshape(3, 3),
        distortion=np.array(data["distortion_coefficients"], dtype=np.float64).ravel(),
    )


# ============================================================================
# SQLite Intrinsics Store
# ============================================================================

DEFAULT_INTRINSICS_DB = Path.home() / ".caliguide" / "intrinsics.db"

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS intrinsics (
        camera_name TEXT NOT NULL,
        width INTEGER NOT NULL,
        height INTEGER NOT NULL,
        matrix BLOB NOT NULL,
        distortion BLOB NOT NULL,
        error REAL NOT NULL,
        keyframe_count INTEGER NOT NULL,
        flags INTEGER NOT NULL DEFAULT 0,
        calibrated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (camera_name, width, height)
    )
"""


@contextmanager
def _connect(db_path: Path):
    """Open the store, creating file and table on first use. Commits on success."""
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(_SCHEMA)
        yield conn
        conn.commit()
    finally:
        conn.close()


def init_intrinsics_db(db_path: Path = DEFAULT_INTRINSICS_DB) -> None:
    """Create the intrinsics store if it doesn't exist yet."""
    with _connect(db_path):
        pass


def save_intrinsics(
    intrinsics: CameraIntrinsics,
    db_path: Path = DEFAULT_INTRINSICS_DB,
) -> None:
    """
    Store a calibration result, replacing any earlier one for the same
    camera and resolution.
    """
    width, height = intrinsics.resolution
    row = (
        intrinsics.camera_name,
        width,
        height,
        np.asarray(intrinsics.matrix, dtype=np.float64).tobytes(),
        np.asarray(intrinsics.distortion, dtype=np.float64).ravel().tobytes(),
        float(intrinsics.error),
        int(intrinsics.keyframe_count),
        int(intrinsics.flags),
    )
    with _connect(db_path) as conn:
        conn.execute(
            "INSERT OR REPLACE INTO intrinsics "
            "(camera_name, width, height, matrix, distortion, error, keyframe_count, flags) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            row,
        )


def load_intrinsics(
    camera_name: str,
    resolution: tuple[int, int],
    db_path: Path = DEFAULT_INTRINSICS_DB,
) -> CameraIntrinsics | None:
    """
    Stored calibration for a camera at a resolution.

    Returns:
        CameraIntrinsics, or None if the camera was never calibrated there
    """
    if not db_path.exists():
        return None

    with _connect(db_path) as conn:
        found = conn.execute(
            "SELECT matrix, distortion, error, keyframe_count, flags FROM intrinsics "
            "WHERE camera_name = ? AND width = ? AND height = ?",
            (camera_name, *resolution),
        ).fetchone()

    if found is None:
        return None

    matrix, distortion, error, keyframe_count, flags = found
    return CameraIntrinsics(
        camera_name=camera_name,
        resolution=tuple(resolution),
        matrix=np.frombuffer(matrix, dtype=np.float64).reshape(3, 3).copy(),
        distortion=np.frombuffer(distortion, dtype=np.float64).copy(),
        error=error,
        keyframe_count=keyframe_count,
        flags=flags,
    )


def list_intrinsics(
    db_path: Path = DEFAULT_INTRINSICS_DB,
) -> list[tuple[str, int, int, float]]:
    """(camera_name, width, height, error) of every stored calibration, sorted."""
    if not db_path.exists():
        return []

    with _connect(db_path) as conn:
        return conn.execute(
            "SELECT camera_name, width, height, error FROM intrinsics "
            "ORDER BY camera_name, width, height"
        ).fetchall()


def delete_intrinsics(
    camera_name: str,
    resolution: tuple[int, int] | None = None,
    db_path: Path = DEFAULT_INTRINSICS_DB,
) -> int:
    """
    Forget stored calibrations.

    Args:
        camera_name: Camera name
        resolution: (width, height) to delete; every resolution when None
        db_path: Path to SQLite database file

    Returns:
        Number of rows deleted
    """
    if not db_path.exists():
        return 0

    query = "DELETE FROM intrinsics WHERE camera_name = ?"
    params: tuple = (camera_name,)
    if resolution is not None:
        query += " AND width = ? AND height = ?"
        params += tuple(resolution)

    with _connect(db_path) as conn:
        return conn.execute(query, params).rowcount
