"""
ChArUco board used for guidance.

Board geometry is in board units throughout: object points, the rendered
image and the guidance poses all share one coordinate frame.
"""

from __future__ import annotations

import cv2
import numpy as np

from ..types import CharucoConfig


# every predefined dictionary, by its OpenCV constant name
ARUCO_DICTIONARIES = {
    name: getattr(cv2.aruco, name)
    for name in (
        [f"DICT_{n}X{n}_{size}" for n in (4, 5, 6, 7) for size in (50, 100, 250, 1000)]
        + ["DICT_ARUCO_ORIGINAL"]
        + [f"DICT_APRILTAG_{tag}" for tag in ("16h5", "25h9", "36h10", "36h11")]
    )
}


# ============================================================================
# Board Creation
# ============================================================================


def get_dictionary(config: CharucoConfig) -> cv2.aruco.Dictionary:
    """Predefined ArUco dictionary named by the config (DICT_4X4_50 if unknown)."""
    dict_int = ARUCO_DICTIONARIES.get(config.dictionary, cv2.aruco.DICT_4X4_50)
    return cv2.aruco.getPredefinedDictionary(dict_int)


def create_charuco_board(config: CharucoConfig) -> cv2.aruco.CharucoBoard:
    """OpenCV CharucoBoard with square and marker lengths in board units."""
    board = cv2.aruco.CharucoBoard(
        size=config.board_size,
        squareLength=float(config.square_len),
        markerLength=float(config.marker_len),
        dictionary=get_dictionary(config),
    )

    # boards printed before OpenCV 4.6 start with a marker on even row counts
    board.setLegacyPattern(config.legacy_pattern)
    return board


def generate_board_image(config: CharucoConfig) -> np.ndarray:
    """
    Generate a BGR image of the ChArUco board, one pixel per board unit.

    The image shares its coordinate frame with the board's object points,
    which is what the guidance preview relies on when warping it.

    Args:
        config: CharucoConfig with board parameters

    Returns:
        BGR image as numpy array (rows*square_len, columns*square_len, 3)
    """
    board = create_charuco_board(config)
    width = config.columns * config.square_len
    height = config.rows * config.square_len
    img = board.generateImage((width, height))

    if len(img.shape) == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)

    return img


def get_charuco_object_points(board: cv2.aruco.CharucoBoard) -> np.ndarray:
    """
    Get the 3D object points for all corners on the board.

    Args:
        board: OpenCV CharucoBoard

    Returns:
        (n, 3) array of corner positions in board frame
    """
    return np.asarray(board.getChessboardCorners(), dtype=np.float32).reshape(-1, 3)
