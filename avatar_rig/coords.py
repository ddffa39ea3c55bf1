"""
Conversion from the perception model's convention into skeleton space.

Perception: +x image right, +y image down, +z away from the camera.
Skeleton:   right-handed, +Y up, avatar faces -Z, avatar's left is -X.

Every solver consumes skeleton-space vectors. The transform happens here,
once per frame, and nowhere else.
"""
import numpy as np

from avatar_rig.landmarks import CoordinateSpace, LandmarkGroup

# Per-space axis signs. Both MediaPipe spaces keep depth on +z away from the
# camera, so only the two screen-plane axes are negated.
AXIS_SIGNS = {
    CoordinateSpace.WORLD: np.array([-1.0, -1.0, 1.0]),
    CoordinateSpace.SCREEN: np.array([-1.0, -1.0, 1.0]),
}


def to_skeleton_space(landmarks, space):
    """Return a new (N, 3) array in skeleton space. Empty arrays stay empty."""
    landmarks = np.asarray(landmarks, dtype=float)
    if landmarks.size == 0:
        return landmarks.reshape(0, 3)
    return landmarks * AXIS_SIGNS[space]


def point_to_skeleton_space(point, space):
    return np.asarray(point, dtype=float) * AXIS_SIGNS[space]


def normalize_observation(observation):
    """Return a copy of the observation with every landmark group in skeleton space."""
    converted = {}
    for group in LandmarkGroup:
        converted[group] = to_skeleton_space(observation.group(group), group.space)
    return observation.with_groups(converted)
