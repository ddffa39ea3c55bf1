"""
Head orientation and eye gaze from the 478-point face mesh.

All landmarks are expected in skeleton space (see avatar_rig.coords).
"""
import logging

import numpy as np

from avatar_rig.landmarks import LandmarkGroup, is_complete
from avatar_rig.orientation import (
    EPSILON,
    normalize,
    quaternion_from_basis,
    rotate_vector,
    to_local,
)

logger = logging.getLogger(__name__)

NOSE_TIP = 1
CHIN_BOTTOM = 152
LEFT_TEMPLE = 234
RIGHT_TEMPLE = 454

IRIS_L = 473
IRIS_R = 468
# (corner, corner, top lid, bottom lid) per eye
EYE_L = (362, 263, 386, 374)
EYE_R = (33, 133, 159, 145)

GAZE_SENSITIVITY = 8.0


def head_world_quaternion(face):
    """
    World orientation of the head.

    forward: temple midpoint -> nose tip (the avatar looks down -Z)
    up:      chin -> temple midpoint, re-orthogonalized against forward
    """
    mid_temples = (face[LEFT_TEMPLE] + face[RIGHT_TEMPLE]) / 2
    forward = face[NOSE_TIP] - mid_temples
    up_rough = mid_temples - face[CHIN_BOTTOM]
    if np.linalg.norm(forward) < EPSILON or np.linalg.norm(up_rough) < EPSILON:
        return None

    back = -normalize(forward)
    right = np.cross(normalize(up_rough), back)
    if np.linalg.norm(right) < EPSILON:
        return None
    right = normalize(right)
    up = np.cross(back, right)

    return quaternion_from_basis(right, up, back)


def _eye_offset(face, iris_idx, corners):
    corner_a, corner_b, top, bottom = (face[i] for i in corners)
    center_x = (corner_a[0] + corner_b[0]) / 2
    center_y = (top[1] + bottom[1]) / 2
    width = np.linalg.norm(corner_a - corner_b)
    height = np.linalg.norm(top - bottom)
    if width < EPSILON or height < EPSILON:
        return None
    iris = face[iris_idx]
    return np.array([(iris[0] - center_x) / width, (iris[1] - center_y) / height])


def calculate_gaze(face, sensitivity=GAZE_SENSITIVITY):
    """
    Normalized 2D gaze in [-1, 1]^2. +x toward skeleton +X, +y up.

    Returns None when the mesh lacks the iris points or an eye is closed flat.
    """
    if not is_complete(face, LandmarkGroup.FACE):
        return None

    left = _eye_offset(face, IRIS_L, EYE_L)
    right = _eye_offset(face, IRIS_R, EYE_R)
    if left is None or right is None:
        return None

    gaze = (left + right) / 2 * sensitivity
    return np.clip(gaze, -1.0, 1.0)


class HeadSolver:
    def __init__(self, head_smoother, gaze_smoother, forward_distance=1.5,
                 horizontal_scale=1.0, vertical_scale=1.0):
        self.head_smoother = head_smoother
        self.gaze_smoother = gaze_smoother
        self.forward_distance = forward_distance
        self.horizontal_scale = horizontal_scale
        self.vertical_scale = vertical_scale

    def solve_head(self, skeleton, face):
        """Returns True when the head bone was written."""
        head = skeleton.get_bone("head")
        neck = skeleton.get_bone("neck")
        if head is None or neck is None:
            logger.debug("Skipping head, avatar has no head/neck")
            return False

        raw = head_world_quaternion(face)
        # A None raw orientation holds the last smoothed value
        smoothed = self.head_smoother.smooth(raw)
        if raw is None and self.head_smoother.last_raw is None:
            return False

        head.rotation = to_local(smoothed, neck.world_rotation())
        return True

    def look_at_target(self, skeleton, face, current=None, follow=1.0):
        """
        World position the eyes should look at, or None without a head bone.

        The smoothed gaze is mapped onto a point in front of the face, then
        lerped from the previous target by follow.
        """
        head = skeleton.get_bone("head")
        if head is None:
            return None

        gaze = self.gaze_smoother.smooth(calculate_gaze(face))
        local = np.array([
            gaze[0] * self.horizontal_scale,
            gaze[1] * self.vertical_scale,
            -self.forward_distance,
        ])
        target = head.world_position() + rotate_vector(head.world_rotation(), local)

        if current is None:
            return target
        return current + (target - current) * follow
