import logging

import numpy as np

from avatar_rig import landmarks as lm
from avatar_rig.orientation import (
    EPSILON,
    apply_bone_rotation,
    invert_quaternion,
    multiply_quaternions,
    normalize,
    rotation_between_vectors,
    scale_quaternion_rotation,
)

logger = logging.getLogger(__name__)

UP = np.array([0.0, 1.0, 0.0])
RIGHT = np.array([1.0, 0.0, 0.0])

# Share of the torso rotation each spine bone carries
SPINE_WEIGHTS = (("spine", 0.4), ("chest", 0.3), ("upperChest", 0.3))


class TorsoSolver:
    def __init__(self, hip_follow=0.1, forward_lean=False, lean_dead_zone=0.02,
                 lean_damping=0.4, smoothing_factor=0.2, weights=SPINE_WEIGHTS):
        """
        Hip translation plus spine lean/twist distribution.

        Args:
            hip_follow: Lerp factor pulling the hips toward the tracked centre (X/Z only).
            forward_lean: When False the forward/back lean component is dropped.
            lean_dead_zone: Forward component magnitude ignored when lean is enabled.
            lean_damping: Multiplier on the forward component when lean is enabled.
            smoothing_factor: Slerp factor for the spine bones.
            weights: (bone name, share) pairs, renormalized over present bones.
        """
        self.hip_follow = hip_follow
        self.forward_lean = forward_lean
        self.lean_dead_zone = lean_dead_zone
        self.lean_damping = lean_damping
        self.smoothing_factor = smoothing_factor
        self.weights = weights

    def lean_quaternion(self, hip_center, shoulder_center):
        spine_direction = np.array(shoulder_center - hip_center, dtype=float)

        if not self.forward_lean:
            spine_direction[2] = 0.0
        elif abs(spine_direction[2]) < self.lean_dead_zone:
            spine_direction[2] = 0.0
        else:
            spine_direction[2] *= self.lean_damping

        return rotation_between_vectors(UP, spine_direction)

    def twist_quaternion(self, l_shoulder, r_shoulder, l_hip, r_hip):
        """Rotation of the shoulder line relative to the hip line, both flattened."""
        shoulder_direction = np.array(r_shoulder - l_shoulder, dtype=float)
        shoulder_direction[1] = 0.0
        hips_direction = np.array(r_hip - l_hip, dtype=float)
        hips_direction[1] = 0.0

        if np.linalg.norm(shoulder_direction) < EPSILON or np.linalg.norm(hips_direction) < EPSILON:
            return np.array([1.0, 0.0, 0.0, 0.0])

        quat_shoulders = rotation_between_vectors(RIGHT, normalize(shoulder_direction))
        quat_hips = rotation_between_vectors(RIGHT, normalize(hips_direction))
        return multiply_quaternions(invert_quaternion(quat_hips), quat_shoulders)

    def torso_quaternion(self, pose_world):
        hip_center = (pose_world[lm.LEFT_HIP] + pose_world[lm.RIGHT_HIP]) / 2
        shoulder_center = (pose_world[lm.LEFT_SHOULDER] + pose_world[lm.RIGHT_SHOULDER]) / 2

        lean = self.lean_quaternion(hip_center, shoulder_center)
        twist = self.twist_quaternion(
            pose_world[lm.LEFT_SHOULDER], pose_world[lm.RIGHT_SHOULDER],
            pose_world[lm.LEFT_HIP], pose_world[lm.RIGHT_HIP],
        )
        return multiply_quaternions(lean, twist)

    def place_hips(self, hips, hip_center):
        target = hips.world_to_parent_space(hip_center)
        current = hips.position
        # Height stays with the rig to avoid sinking
        goal = np.array([target[0], current[1], target[2]])
        hips.position = current + (goal - current) * self.hip_follow

    def solve(self, skeleton, pose_world):
        """Returns True when the torso was placed."""
        hips = skeleton.get_bone("hips")
        spine = skeleton.get_bone("spine")
        if hips is None or spine is None:
            logger.debug("Skipping torso, avatar has no hips/spine")
            return False

        hip_center = (pose_world[lm.LEFT_HIP] + pose_world[lm.RIGHT_HIP]) / 2
        self.place_hips(hips, hip_center)
        skeleton.update_world()

        torso = self.torso_quaternion(pose_world)

        present = [(skeleton.get_bone(name), w) for name, w in self.weights]
        present = [(bone, w) for bone, w in present if bone is not None]
        total = sum(w for _, w in present)

        # Each bone aims for base * torso^(cumulative share). Chest and upper
        # chest are descendants of spine, so their parents' worlds are the
        # previous cumulative targets.
        base = spine.parent_world_rotation()
        parent_world = base
        cumulative = 0.0
        for bone, weight in present:
            cumulative += weight / total
            world = multiply_quaternions(base, scale_quaternion_rotation(torso, cumulative))
            apply_bone_rotation(bone, world, parent_world, self.smoothing_factor)
            parent_world = world

        return True
