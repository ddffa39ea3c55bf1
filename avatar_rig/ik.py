import logging
from collections import namedtuple

import numpy as np

from avatar_rig import landmarks as lm
from avatar_rig.orientation import (
    EPSILON,
    apply_bone_rotation,
    normalize,
    rotation_between_vectors,
)

logger = logging.getLogger(__name__)

IKResult = namedtuple("IKResult", ["upper_rotation", "lower_rotation", "middle", "end", "bend_normal"])

ARM_REST = {"left": np.array([-1.0, 0.0, 0.0]), "right": np.array([1.0, 0.0, 0.0])}
LEG_REST = np.array([0.0, -1.0, 0.0])

# Bend plane normals used before any pole has been seen. With
# elbow_direction = cross(origin_to_target, normal), these bend elbows down
# and knees forward.
DEFAULT_BEND_NORMALS = {
    "leftArm": np.array([0.0, 0.0, -1.0]),
    "rightArm": np.array([0.0, 0.0, 1.0]),
    "leftLeg": np.array([-1.0, 0.0, 0.0]),
    "rightLeg": np.array([-1.0, 0.0, 0.0]),
}

CHAINS = {
    # chain: (upper bone, lower bone, origin, pole, target, side)
    "leftArm": ("leftUpperArm", "leftLowerArm", lm.LEFT_SHOULDER, lm.LEFT_ELBOW, lm.LEFT_WRIST, "left"),
    "rightArm": ("rightUpperArm", "rightLowerArm", lm.RIGHT_SHOULDER, lm.RIGHT_ELBOW, lm.RIGHT_WRIST, "right"),
    "leftLeg": ("leftUpperLeg", "leftLowerLeg", lm.LEFT_HIP, lm.LEFT_KNEE, lm.LEFT_ANKLE, "left"),
    "rightLeg": ("rightUpperLeg", "rightLowerLeg", lm.RIGHT_HIP, lm.RIGHT_KNEE, lm.RIGHT_ANKLE, "right"),
}


def _any_perpendicular(v):
    trial = np.array([0.0, 0.0, 1.0]) if abs(v[2]) < 0.9 else np.array([1.0, 0.0, 0.0])
    return normalize(np.cross(v, trial))


def solve_two_bone_ik(origin, target, pole, l1, l2, rest_direction, previous_normal=None):
    """
    Analytic two-bone IK.

    Places the middle joint with the law of cosines on the plane spanned by
    the pole hint and the origin->target line. The pole only picks the bend
    side. Returns None when the target sits on the origin.
    """
    origin = np.asarray(origin, dtype=float)
    target = np.asarray(target, dtype=float)
    pole = np.asarray(pole, dtype=float)

    origin_to_target = target - origin
    d = np.linalg.norm(origin_to_target)
    if d < EPSILON or l1 <= 0 or l2 <= 0:
        return None
    direction = origin_to_target / d

    normal = np.cross(pole - origin, origin_to_target)
    if np.linalg.norm(normal) > 1e-6 * max(d, 1.0):
        normal = normalize(normal)
    elif previous_normal is not None and np.linalg.norm(np.cross(direction, previous_normal)) > 1e-6:
        # Pole on the line: keep the bend plane from last time
        normal = previous_normal
    else:
        normal = _any_perpendicular(direction)

    if d >= l1 + l2:
        middle = origin + direction * l1
        end = middle + direction * l2
    else:
        # Too close folds the chain as far as it goes
        d_eff = max(d, abs(l1 - l2))
        a = (l1 * l1 + d_eff * d_eff - l2 * l2) / (2 * l1 * d_eff)
        a = min(1.0, max(-1.0, a))
        h = l1 * np.sqrt(max(0.0, 1 - a * a))
        circle_center = origin + direction * (l1 * a)
        bend_direction = normalize(np.cross(origin_to_target, normal))
        middle = circle_center + bend_direction * h
        if d >= abs(l1 - l2):
            end = target
        else:
            end = middle + normalize(target - middle) * l2

    upper_rotation = rotation_between_vectors(rest_direction, middle - origin)
    lower_rotation = rotation_between_vectors(rest_direction, end - middle)

    return IKResult(upper_rotation, lower_rotation, middle, end, normal)


def clamp_to_midline(points):
    """
    Keep left elbow/wrist on the left of the body midline and right ones on
    the right. Arms crossing the torso are a tracking artifact.
    """
    points = np.array(points, dtype=float)
    for idx in (lm.LEFT_ELBOW, lm.LEFT_WRIST):
        points[idx, 0] = min(0.0, points[idx, 0])
    for idx in (lm.RIGHT_ELBOW, lm.RIGHT_WRIST):
        points[idx, 0] = max(0.0, points[idx, 0])
    return points


def rig_limbs(skeleton, pose_world, bend_normals, enable_legs=False, smoothing_factor=0.4):
    """
    Solve and apply arm chains (and legs when enabled).

    bend_normals is the per-subject {chain: normal} memory. Returns the names
    of the chains that were applied.
    """
    chains = ["leftArm", "rightArm"]
    if enable_legs:
        chains += ["leftLeg", "rightLeg"]

    applied = []
    for chain in chains:
        upper_name, lower_name, origin_idx, pole_idx, target_idx, side = CHAINS[chain]
        upper = skeleton.get_bone(upper_name)
        lower = skeleton.get_bone(lower_name)
        if upper is None or lower is None:
            logger.debug("Skipping %s, avatar has no %s/%s", chain, upper_name, lower_name)
            continue

        rest = ARM_REST[side] if chain.endswith("Arm") else LEG_REST
        result = solve_two_bone_ik(
            pose_world[origin_idx],
            pose_world[target_idx],
            pose_world[pole_idx],
            upper.rest_length,
            lower.rest_length,
            rest,
            bend_normals.get(chain, DEFAULT_BEND_NORMALS[chain]),
        )
        if result is None:
            logger.debug("Skipping %s, degenerate target", chain)
            continue

        bend_normals[chain] = result.bend_normal
        apply_bone_rotation(upper, result.upper_rotation, upper.parent_world_rotation(), smoothing_factor)
        apply_bone_rotation(lower, result.lower_rotation, result.upper_rotation, smoothing_factor)
        applied.append(chain)

    return applied
