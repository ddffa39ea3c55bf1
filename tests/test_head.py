import sys
import os
import numpy as np

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from avatar_rig import head as face_points
from avatar_rig.head import HeadSolver, calculate_gaze, head_world_quaternion
from avatar_rig.orientation import (
    angle_between_quaternions,
    axis_angle_quaternion,
    identity,
    rotate_vector,
)
from avatar_rig.skeleton import build_humanoid
from avatar_rig.smoothing import GazeSmoother, HeadSmoother


def frontal_face():
    """Skeleton-space face mesh looking down -Z. Only the points the solver reads are set."""
    face = np.zeros((478, 3))
    face[face_points.NOSE_TIP] = [0.0, 0.0, -0.05]
    face[face_points.CHIN_BOTTOM] = [0.0, -0.1, -0.02]
    face[face_points.LEFT_TEMPLE] = [0.07, 0.0, 0.0]
    face[face_points.RIGHT_TEMPLE] = [-0.07, 0.0, 0.0]

    for sign, iris, (corner_a, corner_b, top, bottom) in (
        (-1.0, face_points.IRIS_L, face_points.EYE_L),
        (1.0, face_points.IRIS_R, face_points.EYE_R),
    ):
        face[corner_a] = [sign * 0.02, 0.03, 0.0]
        face[corner_b] = [sign * 0.05, 0.03, 0.0]
        face[top] = [sign * 0.035, 0.04, 0.0]
        face[bottom] = [sign * 0.035, 0.02, 0.0]
        face[iris] = [sign * 0.035, 0.03, 0.0]
    return face


def test_frontal_face_is_rest():
    q = head_world_quaternion(frontal_face())
    assert angle_between_quaternions(q, identity()) < 1e-6


def test_turned_face():
    turn = axis_angle_quaternion([0, 1, 0], 0.5)
    face = np.array([rotate_vector(turn, p) for p in frontal_face()])
    q = head_world_quaternion(face)
    assert angle_between_quaternions(q, turn) < 1e-6


def test_degenerate_face():
    assert head_world_quaternion(np.zeros((478, 3))) is None


def test_gaze():
    face = frontal_face()
    assert np.allclose(calculate_gaze(face), [0.0, 0.0])

    face[face_points.IRIS_L, 0] += 0.003
    face[face_points.IRIS_R, 0] += 0.003
    assert np.allclose(calculate_gaze(face), [0.8, 0.0])

    face[face_points.IRIS_L, 1] += 0.01
    face[face_points.IRIS_R, 1] += 0.01
    assert np.allclose(calculate_gaze(face), [0.8, 1.0])


def test_gaze_needs_full_mesh():
    assert calculate_gaze(frontal_face()[:468]) is None
    # Closed eye with zero lid height
    face = frontal_face()
    face[face_points.EYE_L[2]] = face[face_points.EYE_L[3]]
    assert calculate_gaze(face) is None


def test_solve_head_writes_local_rotation():
    skeleton = build_humanoid(include_fingers=False)
    solver = HeadSolver(HeadSmoother(), GazeSmoother())
    turn = axis_angle_quaternion([0, 1, 0], 0.3)
    face = np.array([rotate_vector(turn, p) for p in frontal_face()])

    assert solver.solve_head(skeleton, face)
    assert angle_between_quaternions(skeleton.get_bone("head").rotation, turn) < 1e-6

    # First frame with no usable face has nothing to hold
    fresh = HeadSolver(HeadSmoother(), GazeSmoother())
    assert fresh.solve_head(build_humanoid(include_fingers=False), np.zeros((478, 3))) is False


def test_solve_head_without_bones():
    skeleton = build_humanoid(include_fingers=False, omit=("neck",))
    solver = HeadSolver(HeadSmoother(), GazeSmoother())
    assert solver.solve_head(skeleton, frontal_face()) is False


def test_look_at_target():
    skeleton = build_humanoid(include_fingers=False)
    solver = HeadSolver(HeadSmoother(), GazeSmoother())
    head_pos = skeleton.get_bone("head").world_position()

    target = solver.look_at_target(skeleton, frontal_face())
    assert np.allclose(target, head_pos + np.array([0.0, 0.0, -1.5]))

    # Lerped from the previous target
    previous = target + np.array([1.0, 0.0, 0.0])
    target = solver.look_at_target(skeleton, frontal_face(), previous, follow=0.25)
    assert np.allclose(target, head_pos + np.array([0.75, 0.0, -1.5]))


if __name__ == "__main__":
    test_frontal_face_is_rest()
    test_turned_face()
    test_degenerate_face()
    test_gaze()
    test_gaze_needs_full_mesh()
    test_solve_head_writes_local_rotation()
    test_solve_head_without_bones()
    test_look_at_target()
    print("PASS")
