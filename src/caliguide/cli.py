#!/usr/bin/env python3
"""
Caliguide CLI - guided interactive camera calibration.

Usage:
    caliguide run [config.toml]     - Run a guided calibration session (default)
    caliguide board [config.toml] [out.png]
                                    - Write the ChArUco board image to print
    caliguide --help                - Show this help

Keys during a session:
    c   force capture of the current frame
    m   toggle mirrored display
    r   restart the session
    q   quit (the calibration so far is written out)
"""

import logging
import sys
from pathlib import Path

logger = logging.getLogger("caliguide")


def _load_config(argv: list[str]):
    from caliguide.config import create_default_session_config, load_session_config

    if argv and argv[0].endswith(".toml"):
        return load_session_config(Path(argv[0])), argv[1:]
    return create_default_session_config(), argv


def run_session(argv: list[str]) -> int:
    import cv2

    from caliguide.calibration import CharucoTracker, GuidanceController
    from caliguide.config import save_calibration_report, save_intrinsics
    from caliguide.types import CameraIntrinsics

    config, argv = _load_config(argv)
    guidance_cfg = config.guidance
    img_size = guidance_cfg.img_size

    cap = cv2.VideoCapture(config.camera_index)
    cap.set(cv2.CAP_PROP_FRAME_WIDTH, img_size[0])
    cap.set(cv2.CAP_PROP_FRAME_HEIGHT, img_size[1])
    if not cap.isOpened():
        logger.error("cannot open camera %d", config.camera_index)
        return 1

    tracker = CharucoTracker(config.board, img_size, guidance_cfg)
    guidance = GuidanceController(tracker, config.board, guidance_cfg)

    mirror = False
    force = False
    try:
        while True:
            ok, frame = cap.read()
            if not ok:
                logger.error("camera stopped delivering frames")
                break
            if (frame.shape[1], frame.shape[0]) != img_size:
                frame = cv2.resize(frame, img_size)

            tracker.detect(frame)
            if guidance.update(force):
                logger.info("keyframe %d captured", len(guidance.keyframes))
            force = False

            out = guidance.draw(frame.copy(), mirror)
            for i, line in enumerate(guidance.user_info_text.split("\n")):
                cv2.putText(out, line, (10, 30 + 30 * i), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 0, 0), 4)
                cv2.putText(out, line, (10, 30 + 30 * i), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (255, 255, 255), 2)
            cv2.imshow("caliguide", out)

            if guidance.converged:
                break

            key = cv2.waitKey(1) & 0xFF
            if key == ord("q"):
                break
            elif key == ord("c"):
                force = True
            elif key == ord("m"):
                mirror = not mirror
            elif key == ord("r"):
                guidance.reset()
    finally:
        cap.release()
        cv2.destroyAllWindows()

    if len(guidance.keyframes) < 2:
        logger.warning("not enough keyframes collected, nothing written")
        return 1

    report = guidance.write()
    out_path = Path(argv[0]) if argv else Path(f"{config.camera_name}_calibration.toml")
    save_calibration_report(report, out_path)
    save_intrinsics(
        CameraIntrinsics(
            camera_name=config.camera_name,
            resolution=img_size,
            matrix=report["camera_matrix"],
            distortion=report["distortion_coefficients"],
            error=round(report["avg_reprojection_error"], 4),
            keyframe_count=report["nr_of_frames"],
            flags=report["flags"],
        )
    )
    print(f"Calibration written to {out_path}")
    return 0


def write_board(argv: list[str]) -> int:
    import cv2

    from caliguide.calibration import generate_board_image

    config, argv = _load_config(argv)
    out_path = argv[0] if argv else "charuco_board.png"
    cv2.imwrite(out_path, generate_board_image(config.board))
    print(f"Board written to {out_path}")
    return 0


def main():
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if len(sys.argv) < 2:
        return run_session([])

    if sys.argv[1] in ("-h", "--help"):
        print(__doc__)
        return 0

    command = sys.argv[1]
    args = sys.argv[2:]

    if command == "run":
        return run_session(args)

    elif command == "board":
        return write_board(args)

    else:
        print(f"Unknown command: {command}")
        print("Run 'caliguide --help' for usage")
        return 1


if __name__ == "__main__":
    sys.exit(main())
