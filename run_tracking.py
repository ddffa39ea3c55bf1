import logging
import sys
import time

import cv2
import yaml

from avatar_rig.capture import AsyncLandmarker, Camera, HolisticDetector
from avatar_rig.expressions import merge_expression_settings
from avatar_rig.landmarks import SolverConfig
from avatar_rig.skeleton import DictExpressionTarget, build_humanoid
from avatar_rig.solver import RigSolver

# VRM preset expression names
EXPRESSION_CHANNELS = [
    "aa", "ih", "ou", "ee", "oh",
    "happy", "angry", "sad", "relaxed", "surprised",
    "blinkLeft", "blinkRight",
]

SOLVER_OPTIONS = ("finger_mode", "limb_smoothing")


def load_config(path="config.yaml"):
    with open(path, "r") as f:
        config = yaml.safe_load(f) or {}

    solver_section = dict(config.get("solver") or {})
    options = {key: solver_section.pop(key) for key in SOLVER_OPTIONS if key in solver_section}
    options["expression_settings"] = merge_expression_settings(config.get("expressions"))

    return {
        "camera": config.get("camera") or {},
        "detector": config.get("detector") or {},
        "solver": options,
        "tracking": SolverConfig(**solver_section),
    }


def draw_status(image, update, config):
    y = 30
    for region in update.solved:
        cv2.putText(image, region, (10, y), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 0), 2)
        y += 22
    for region, reason in update.skipped.items():
        cv2.putText(image, f"{region}: {reason}", (10, y), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 0, 255), 2)
        y += 22

    smoothing = f"smoothing {config.smoothing:.2f}" if config.smoothing_enabled else "smoothing off"
    cv2.putText(image, f"{smoothing} | legs {'on' if config.leg_tracking else 'off'}",
                (10, image.shape[0] - 40), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 255), 2)
    cv2.putText(image, f"solve {update.processing_time_ms:.1f} ms",
                (10, image.shape[0] - 15), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 255), 2)


def main(config_path="config.yaml"):
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    print("Starting Avatar Tracking...")
    print("Press 'q' to quit.")
    print("Press 's' to toggle smoothing, 'l' to toggle legs, 'r' to reset tracking.")

    try:
        settings = load_config(config_path)
    except (IOError, yaml.YAMLError, ValueError) as e:
        print(f"ERROR: Failed to load {config_path}. {e}")
        return 1

    config = settings["tracking"]
    detector_settings = dict(settings["detector"])
    max_staleness = detector_settings.pop("max_staleness", 0.25)

    camera = Camera(**settings["camera"])
    detector = HolisticDetector(**detector_settings)
    landmarker = AsyncLandmarker(detector, max_staleness=max_staleness)

    skeleton = build_humanoid()
    expressions = DictExpressionTarget(EXPRESSION_CHANNELS)
    solver = RigSolver(skeleton, expressions, **settings["solver"])

    last_update = None
    last_time = time.perf_counter()
    frames = 0

    try:
        while True:
            image = camera.read()
            if image is None:
                break

            landmarker.submit(image.copy(), time.time())

            observation = landmarker.poll()
            if observation is not None:
                now = time.perf_counter()
                last_update = solver.update(observation, config, now - last_time)
                last_time = now
                frames += 1

                if frames % 30 == 0:
                    print(f"Frame {frames}: solved {', '.join(last_update.solved) or '-'} "
                          f"({last_update.processing_time_ms:.1f} ms)")

            detector.draw(image)
            if last_update is not None:
                draw_status(image, last_update, config)

            cv2.imshow('Avatar Tracking', image)

            key = cv2.waitKey(5) & 0xFF
            if key == ord('q'):
                break
            elif key == ord('s'):
                config = config.model_copy(update={"smoothing_enabled": not config.smoothing_enabled})
                print(f"Smoothing {'enabled' if config.smoothing_enabled else 'disabled'}.")
            elif key == ord('l'):
                config = config.model_copy(update={"leg_tracking": not config.leg_tracking})
                print(f"Leg tracking {'enabled' if config.leg_tracking else 'disabled'}.")
            elif key == ord('r'):
                solver.reset_tracking()
                print("Tracking reset.")

    except KeyboardInterrupt:
        pass
    finally:
        landmarker.close()
        detector.close()
        camera.release()
        cv2.destroyAllWindows()

    return 0


if __name__ == "__main__":
    # Make window resizable and larger
    cv2.namedWindow('Avatar Tracking', cv2.WINDOW_NORMAL)
    cv2.resizeWindow('Avatar Tracking', 1280, 720)
    sys.exit(main(*sys.argv[1:2]))
