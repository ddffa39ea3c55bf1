import sys
import os
import numpy as np
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from avatar_rig import landmarks as lm
from avatar_rig.ik import (
    ARM_REST,
    DEFAULT_BEND_NORMALS,
    clamp_to_midline,
    rig_limbs,
    solve_two_bone_ik,
)
from avatar_rig.orientation import identity, rotate_vector
from avatar_rig.skeleton import build_humanoid

REST = ARM_REST["left"]


def test_segment_lengths_are_preserved():
    origin = np.array([0.0, 0.0, 0.0])
    pole = np.array([-0.3, -0.2, 0.1])
    for target in ([-0.4, -0.1, 0.0], [-0.2, -0.3, 0.2], [-0.1, 0.0, -0.3]):
        result = solve_two_bone_ik(origin, np.array(target), pole, 0.3, 0.25, REST)
        assert np.isclose(np.linalg.norm(result.middle - origin), 0.3, atol=1e-6)
        assert np.isclose(np.linalg.norm(result.end - result.middle), 0.25, atol=1e-6)
        # Reachable targets are hit exactly
        assert np.allclose(result.end, target, atol=1e-6)


def test_rotations_point_segments_at_joints():
    origin = np.zeros(3)
    target = np.array([-0.3, -0.25, 0.1])
    result = solve_two_bone_ik(origin, target, np.array([-0.3, 0.0, 0.0]), 0.3, 0.25, REST)
    upper_dir = rotate_vector(result.upper_rotation, REST)
    lower_dir = rotate_vector(result.lower_rotation, REST)
    assert np.allclose(upper_dir, result.middle / 0.3, atol=1e-6)
    assert np.allclose(lower_dir, (result.end - result.middle) / 0.25, atol=1e-6)


def test_unreachable_target_extends_fully():
    origin = np.zeros(3)
    target = np.array([-2.0, 0.0, 0.0])
    result = solve_two_bone_ik(origin, target, np.array([-0.5, -0.1, 0.0]), 0.3, 0.25, REST)
    assert np.allclose(result.middle, [-0.3, 0.0, 0.0])
    assert np.allclose(result.end, [-0.55, 0.0, 0.0])
    assert np.allclose(result.upper_rotation, identity())
    assert np.allclose(result.lower_rotation, identity())


def test_pole_picks_bend_side():
    origin = np.zeros(3)
    target = np.array([-0.4, 0.0, 0.0])
    down = solve_two_bone_ik(origin, target, np.array([-0.2, -0.3, 0.0]), 0.3, 0.25, REST)
    up = solve_two_bone_ik(origin, target, np.array([-0.2, 0.3, 0.0]), 0.3, 0.25, REST)
    assert down.middle[1] < 0
    assert up.middle[1] > 0


def test_colinear_pole_keeps_previous_plane():
    origin = np.zeros(3)
    target = np.array([-0.4, 0.0, 0.0])
    first = solve_two_bone_ik(origin, target, np.array([-0.2, 0.0, -0.3]), 0.3, 0.25, REST)
    # Pole on the shoulder-wrist line carries no bend information
    second = solve_two_bone_ik(origin, target, np.array([-0.2, 0.0, 0.0]), 0.3, 0.25, REST,
                               previous_normal=first.bend_normal)
    assert np.allclose(second.bend_normal, first.bend_normal)
    assert np.allclose(second.middle, first.middle, atol=1e-9)


def test_target_on_origin():
    origin = np.array([0.1, 0.2, 0.3])
    assert solve_two_bone_ik(origin, origin.copy(), np.zeros(3), 0.3, 0.25, REST) is None


def test_too_close_target_folds():
    origin = np.zeros(3)
    result = solve_two_bone_ik(origin, np.array([-0.01, 0.0, 0.0]), np.array([-0.1, -0.1, 0.0]),
                               0.3, 0.25, REST)
    assert np.all(np.isfinite(result.middle))
    assert np.isclose(np.linalg.norm(result.middle), 0.3, atol=1e-6)
    assert np.isclose(np.linalg.norm(result.end - result.middle), 0.25, atol=1e-6)


def test_clamp_to_midline():
    points = np.zeros((33, 3))
    points[lm.LEFT_WRIST] = [0.2, 0.0, 0.0]
    points[lm.RIGHT_ELBOW] = [-0.1, 0.0, 0.0]
    points[lm.LEFT_ELBOW] = [-0.3, 0.0, 0.0]
    clamped = clamp_to_midline(points)
    assert clamped[lm.LEFT_WRIST, 0] == 0.0
    assert clamped[lm.RIGHT_ELBOW, 0] == 0.0
    assert clamped[lm.LEFT_ELBOW, 0] == -0.3
    # Input is not modified
    assert points[lm.LEFT_WRIST, 0] == 0.2


def test_rig_limbs_skips_missing_chain():
    skeleton = build_humanoid(include_fingers=False, omit=("rightLowerArm",))
    pose = np.zeros((33, 3))
    for idx, x in ((lm.LEFT_SHOULDER, -0.2), (lm.LEFT_ELBOW, -0.5), (lm.LEFT_WRIST, -0.8)):
        pose[idx] = [x, 1.4, 0.0]
    pose[lm.RIGHT_SHOULDER] = [0.2, 1.4, 0.0]
    pose[lm.RIGHT_ELBOW] = [0.5, 1.4, 0.0]
    pose[lm.RIGHT_WRIST] = [0.8, 1.4, 0.0]

    bend_normals = {}
    applied = rig_limbs(skeleton, pose, bend_normals)
    assert applied == ["leftArm"]
    assert set(bend_normals) == {"leftArm"}


def test_legs_only_when_enabled():
    skeleton = build_humanoid(include_fingers=False)
    pose = np.zeros((33, 3))
    for idx, x in ((lm.LEFT_HIP, -0.1), (lm.RIGHT_HIP, 0.1)):
        pose[idx] = [x, 0.0, 0.0]
    for idx, x in ((lm.LEFT_KNEE, -0.1), (lm.RIGHT_KNEE, 0.1)):
        pose[idx] = [x, -0.4, -0.05]
    for idx, x in ((lm.LEFT_ANKLE, -0.1), (lm.RIGHT_ANKLE, 0.1)):
        pose[idx] = [x, -0.8, 0.0]
    pose[lm.LEFT_SHOULDER] = [-0.2, 0.5, 0.0]
    pose[lm.LEFT_ELBOW] = [-0.45, 0.5, 0.0]
    pose[lm.LEFT_WRIST] = [-0.7, 0.5, 0.0]
    pose[lm.RIGHT_SHOULDER] = [0.2, 0.5, 0.0]
    pose[lm.RIGHT_ELBOW] = [0.45, 0.5, 0.0]
    pose[lm.RIGHT_WRIST] = [0.7, 0.5, 0.0]

    assert rig_limbs(skeleton, pose, {}) == ["leftArm", "rightArm"]
    assert rig_limbs(skeleton, pose, {}, enable_legs=True) == ["leftArm", "rightArm", "leftLeg", "rightLeg"]


def test_default_bend_normals_bend_arms_down():
    for chain, rest in (("leftArm", ARM_REST["left"]), ("rightArm", ARM_REST["right"])):
        bend = np.cross(rest, DEFAULT_BEND_NORMALS[chain])
        assert np.allclose(bend, [0, -1, 0])


if __name__ == "__main__":
    test_segment_lengths_are_preserved()
    test_rotations_point_segments_at_joints()
    test_unreachable_target_extends_fully()
    test_pole_picks_bend_side()
    test_colinear_pole_keeps_previous_plane()
    test_target_on_origin()
    test_too_close_target_folds()
    test_clamp_to_midline()
    test_rig_limbs_skips_missing_chain()
    test_legs_only_when_enabled()
    test_default_bend_normals_bend_arms_down()
    print("PASS")
