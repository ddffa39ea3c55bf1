"""
Wrist orientation from the palm plane and per-joint finger rotations.

Hand landmarks (MediaPipe Hands): 0 wrist, 1-4 thumb (CMC, MCP, IP, tip),
5-8 index, 9-12 middle, 13-16 ring, 17-20 little.
"""
import logging

import numpy as np

from avatar_rig.landmarks import LandmarkGroup, is_complete
from avatar_rig.orientation import (
    EPSILON,
    apply_bone_rotation,
    axis_angle_quaternion,
    constrain_to_hinge,
    euler_quaternion,
    invert_quaternion,
    multiply_quaternions,
    normalize,
    quaternion_from_basis,
    rotate_vector,
    rotation_between_vectors,
)

logger = logging.getLogger(__name__)

WRIST = 0
INDEX_MCP = 5
MIDDLE_MCP = 9

FINGERS = {
    # finger: (landmark chain, bone segments)
    "Thumb": ((1, 2, 3, 4), ("Metacarpal", "Proximal", "Distal")),
    "Index": ((5, 6, 7, 8), ("Proximal", "Intermediate", "Distal")),
    "Middle": ((9, 10, 11, 12), ("Proximal", "Intermediate", "Distal")),
    "Ring": ((13, 14, 15, 16), ("Proximal", "Intermediate", "Distal")),
    "Little": ((17, 18, 19, 20), ("Proximal", "Intermediate", "Distal")),
}

SIDE_SIGN = {"left": 1.0, "right": -1.0}

# Fingers point along the arm; the left arm points -X.
FINGER_REST = {"left": np.array([-1.0, 0.0, 0.0]), "right": np.array([1.0, 0.0, 0.0])}
THUMB_REST = {
    "left": normalize(np.array([-1.0, 0.0, -1.0])),
    "right": normalize(np.array([1.0, 0.0, -1.0])),
}

# Curl toward the palm happens about +Z on the left hand and -Z on the right
HINGE_AXIS = np.array([0.0, 0.0, 1.0])

# Degrees (x, y, z) added to proximal joints and the thumb. The landmark model
# reads relaxed fingers as slightly curled and the thumb as tucked in.
CALIBRATION = {
    "Thumb": (0.0, 12.0, 0.0),
    "Index": (0.0, 0.0, -6.0),
    "Middle": (0.0, 0.0, -6.0),
    "Ring": (0.0, 0.0, -6.0),
    "Little": (0.0, 0.0, -6.0),
}

# Basis correction so the rest pose comes out as identity
WRIST_CORRECTION = {
    "left": axis_angle_quaternion([0.0, 1.0, 0.0], np.pi / 2),
    "right": axis_angle_quaternion([0.0, 1.0, 0.0], -np.pi / 2),
}


def wrist_world_quaternion(hand, side):
    """
    World orientation of the wrist from the palm plane.

    forward: wrist -> middle knuckle
    up:      (wrist -> index knuckle) x forward, flipped for the right hand
    right:   up x forward
    """
    forward = hand[MIDDLE_MCP] - hand[WRIST]
    index = hand[INDEX_MCP] - hand[WRIST]
    if np.linalg.norm(forward) < EPSILON or np.linalg.norm(index) < EPSILON:
        return None

    forward = normalize(forward)
    up = np.cross(index, forward) * SIDE_SIGN[side]
    if np.linalg.norm(up) < EPSILON:
        return None
    up = normalize(up)
    right = normalize(np.cross(up, forward))
    up = np.cross(forward, right)

    q = quaternion_from_basis(right, up, forward)
    if q is None:
        return None
    return multiply_quaternions(q, WRIST_CORRECTION[side])


def curl_angle(a, b, c):
    """Angle between segment a->b and segment b->c."""
    u = b - a
    v = c - b
    if np.linalg.norm(u) < EPSILON or np.linalg.norm(v) < EPSILON:
        return 0.0
    cos_angle = np.dot(normalize(u), normalize(v))
    return float(np.arccos(min(1.0, max(-1.0, cos_angle))))


class HandSolver:
    def __init__(self, finger_mode="align", smoothing_factor=0.3, calibration=None):
        """
        Args:
            finger_mode: "align" aims each segment at its landmark direction and
                         constrains intermediate/distal joints to a hinge;
                         "curl" rotates them about the hinge axis by the angle
                         between consecutive segments.
            smoothing_factor: Slerp factor for wrist and finger bones.
            calibration: Optional {finger: (x, y, z) degrees} override.
        """
        if finger_mode not in ("align", "curl"):
            raise ValueError(f"Unknown finger mode: {finger_mode}")
        self.finger_mode = finger_mode
        self.smoothing_factor = smoothing_factor
        self.calibration = dict(CALIBRATION)
        if calibration:
            self.calibration.update(calibration)

    def solve(self, skeleton, left_hand, right_hand):
        """Rig both hands. Returns the sides that were applied."""
        applied = []
        for side, hand, group in (
            ("left", left_hand, LandmarkGroup.LEFT_HAND),
            ("right", right_hand, LandmarkGroup.RIGHT_HAND),
        ):
            if not is_complete(hand, group):
                continue
            if self.solve_hand(skeleton, np.asarray(hand, dtype=float), side):
                applied.append(side)
        return applied

    def solve_hand(self, skeleton, hand, side):
        hand_bone = skeleton.get_bone(f"{side}Hand")
        if hand_bone is None or hand_bone.parent is None:
            logger.debug("Skipping %s hand, no hand bone", side)
            return False

        hand_world = wrist_world_quaternion(hand, side)
        if hand_world is None:
            logger.debug("Skipping %s hand, degenerate palm", side)
            return False

        apply_bone_rotation(hand_bone, hand_world, hand_bone.parent_world_rotation(), self.smoothing_factor)

        for finger, (chain, segments) in FINGERS.items():
            self.solve_finger(skeleton, hand, side, finger, chain, segments, hand_world)
        return True

    def solve_finger(self, skeleton, hand, side, finger, chain, segments, hand_world):
        is_thumb = finger == "Thumb"
        rest = THUMB_REST[side] if is_thumb else FINGER_REST[side]
        x, y, z = self.calibration.get(finger, (0.0, 0.0, 0.0))
        # Table is for the left hand; mirroring across X flips Y and Z turns
        offset = euler_quaternion((x, y * SIDE_SIGN[side], z * SIDE_SIGN[side]))

        parent_world = hand_world
        # Segment before the first joint, used by the curl variant
        previous_point = hand[WRIST]

        for i, segment in enumerate(segments):
            bone = skeleton.get_bone(f"{side}{finger}{segment}")
            if bone is None:
                return

            start, end = hand[chain[i]], hand[chain[i + 1]]
            direction = end - start
            if np.linalg.norm(direction) < EPSILON:
                return

            hinge_joint = i > 0 and not is_thumb
            if hinge_joint and self.finger_mode == "curl":
                angle = curl_angle(previous_point, start, end)
                local = axis_angle_quaternion(HINGE_AXIS, angle * SIDE_SIGN[side])
            else:
                local_direction = rotate_vector(invert_quaternion(parent_world), direction)
                local = rotation_between_vectors(rest, local_direction)
                if hinge_joint:
                    local = constrain_to_hinge(local)
                else:
                    local = multiply_quaternions(local, offset)

            world = multiply_quaternions(parent_world, local)
            apply_bone_rotation(bone, world, parent_world, self.smoothing_factor)

            parent_world = world
            previous_point = start
