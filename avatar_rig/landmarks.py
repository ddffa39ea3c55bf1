from enum import Enum
from typing import Dict, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator


class CoordinateSpace(str, Enum):
    """Space a landmark cloud is expressed in by the perception model."""
    SCREEN = "SCREEN"  # x, y normalized to the image, z relative depth
    WORLD = "WORLD"    # metric, centered on the hips (pose) or wrist (hands)


class LandmarkGroup(str, Enum):
    POSE_SCREEN = "POSE_SCREEN"
    POSE_WORLD = "POSE_WORLD"
    FACE = "FACE"
    LEFT_HAND = "LEFT_HAND"
    RIGHT_HAND = "RIGHT_HAND"

    @property
    def size(self):
        return GROUP_SIZES[self]

    @property
    def space(self):
        return GROUP_SPACES[self]


GROUP_SIZES = {
    LandmarkGroup.POSE_SCREEN: 33,
    LandmarkGroup.POSE_WORLD: 33,
    LandmarkGroup.FACE: 478,
    LandmarkGroup.LEFT_HAND: 21,
    LandmarkGroup.RIGHT_HAND: 21,
}

GROUP_SPACES = {
    LandmarkGroup.POSE_SCREEN: CoordinateSpace.SCREEN,
    LandmarkGroup.POSE_WORLD: CoordinateSpace.WORLD,
    LandmarkGroup.FACE: CoordinateSpace.SCREEN,
    LandmarkGroup.LEFT_HAND: CoordinateSpace.WORLD,
    LandmarkGroup.RIGHT_HAND: CoordinateSpace.WORLD,
}

# MediaPipe Pose indices used by the body solvers
NOSE = 0
LEFT_SHOULDER = 11
RIGHT_SHOULDER = 12
LEFT_ELBOW = 13
RIGHT_ELBOW = 14
LEFT_WRIST = 15
RIGHT_WRIST = 16
LEFT_HIP = 23
RIGHT_HIP = 24
LEFT_KNEE = 25
RIGHT_KNEE = 26
LEFT_ANKLE = 27
RIGHT_ANKLE = 28


def empty_landmarks():
    return np.zeros((0, 3))


def to_array(landmarks):
    """
    Convert a landmark sequence into an (N, 3) float array.

    Accepts objects exposing x, y, z (MediaPipe landmarks, test doubles),
    sequences of triples, or arrays. None becomes an empty array.
    """
    if landmarks is None:
        return empty_landmarks()
    if isinstance(landmarks, np.ndarray):
        arr = np.asarray(landmarks, dtype=float)
        if arr.size == 0:
            return empty_landmarks()
        return arr.reshape(-1, 3)

    points = []
    for lm in landmarks:
        if hasattr(lm, "x"):
            points.append((lm.x, lm.y, lm.z))
        else:
            points.append(tuple(lm)[:3])
    if not points:
        return empty_landmarks()
    return np.array(points, dtype=float)


def is_complete(landmarks, group):
    """An array is usable only when it has exactly the group's fixed length."""
    return landmarks is not None and len(landmarks) == group.size


class FrameObservation(BaseModel):
    """One timestep of perception output. Replaced wholesale every frame."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    timestamp: float = 0.0
    pose_landmarks: np.ndarray = Field(default_factory=empty_landmarks)
    pose_world_landmarks: np.ndarray = Field(default_factory=empty_landmarks)
    face_landmarks: np.ndarray = Field(default_factory=empty_landmarks)
    left_hand_world_landmarks: np.ndarray = Field(default_factory=empty_landmarks)
    right_hand_world_landmarks: np.ndarray = Field(default_factory=empty_landmarks)
    pose_visibility: Optional[np.ndarray] = None
    expression_scores: Dict[str, float] = Field(default_factory=dict)

    @field_validator(
        "pose_landmarks",
        "pose_world_landmarks",
        "face_landmarks",
        "left_hand_world_landmarks",
        "right_hand_world_landmarks",
        mode="before",
    )
    @classmethod
    def _coerce_landmarks(cls, value):
        return to_array(value)

    def group(self, group):
        return {
            LandmarkGroup.POSE_SCREEN: self.pose_landmarks,
            LandmarkGroup.POSE_WORLD: self.pose_world_landmarks,
            LandmarkGroup.FACE: self.face_landmarks,
            LandmarkGroup.LEFT_HAND: self.left_hand_world_landmarks,
            LandmarkGroup.RIGHT_HAND: self.right_hand_world_landmarks,
        }[group]

    def with_groups(self, groups):
        """Return a copy where the given {LandmarkGroup: array} entries are replaced."""
        field_names = {
            LandmarkGroup.POSE_SCREEN: "pose_landmarks",
            LandmarkGroup.POSE_WORLD: "pose_world_landmarks",
            LandmarkGroup.FACE: "face_landmarks",
            LandmarkGroup.LEFT_HAND: "left_hand_world_landmarks",
            LandmarkGroup.RIGHT_HAND: "right_hand_world_landmarks",
        }
        return self.model_copy(update={field_names[g]: arr for g, arr in groups.items()})


class SolverConfig(BaseModel):
    """Feature toggles and smoothing for one frame. Supplied fresh every tick."""
    model_config = ConfigDict(frozen=True)

    face_tracking: bool = True
    pose_tracking: bool = True
    head_tracking: bool = True
    hand_tracking: bool = True
    leg_tracking: bool = False
    pupil_tracking: bool = True
    smoothing: float = 0.5
    smoothing_enabled: bool = True

    @field_validator("smoothing", mode="before")
    @classmethod
    def _clamp_smoothing(cls, value):
        # Out of range values are clamped, never rejected
        value = float(value)
        if np.isnan(value):
            return 0.5
        return min(1.0, max(0.0, value))
