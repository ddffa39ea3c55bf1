import sys
import os
import numpy as np
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from avatar_rig.landmarks import FrameObservation, LandmarkGroup
from avatar_rig.orientation import angle_between_quaternions, axis_angle_quaternion, identity
from avatar_rig.smoothing import (
    GazeSmoother,
    HeadSmoother,
    KalmanFilter,
    LandmarkFilterBank,
    smoothing_to_noise,
)


def test_kalman_first_sample_passes_through():
    kf = KalmanFilter(0.1)
    assert kf(3.0) == 3.0


def test_kalman_converges_on_constant_signal():
    kf = KalmanFilter(smoothing_to_noise(0.5))
    kf(0.0)
    for _ in range(200):
        value = kf(1.0)
    assert abs(value - 1.0) < 1e-3


def test_more_smoothing_lags_more():
    light = KalmanFilter(smoothing_to_noise(0.0))
    heavy = KalmanFilter(smoothing_to_noise(1.0))
    light(0.0)
    heavy(0.0)
    assert light(1.0) > heavy(1.0)


def test_smoothing_mapping():
    assert np.isclose(smoothing_to_noise(0.0), 0.01)
    assert np.isclose(smoothing_to_noise(1.0), 0.21)
    assert np.isclose(smoothing_to_noise(5.0), 0.21)


def test_filter_bank_passthrough_for_partial_arrays():
    bank = LandmarkFilterBank()
    empty = np.zeros((0, 3))
    partial = np.ones((10, 3))
    assert bank.filter(empty, LandmarkGroup.POSE_WORLD) is empty
    assert bank.filter(partial, LandmarkGroup.POSE_WORLD) is partial
    assert bank.filters == {}


def test_filter_bank_reset_on_smoothing_change():
    bank = LandmarkFilterBank(smoothing=0.5)
    bank.filter(np.zeros((21, 3)), LandmarkGroup.LEFT_HAND)
    assert LandmarkGroup.LEFT_HAND in bank.filters

    # Same value keeps history
    assert bank.set_smoothing(0.5) is False
    assert LandmarkGroup.LEFT_HAND in bank.filters

    assert bank.set_smoothing(0.8) is True
    assert bank.filters == {}

    # First frame after a reset is returned as-is
    frame = np.full((21, 3), 2.0)
    assert np.allclose(bank.filter(frame, LandmarkGroup.LEFT_HAND), frame)


def test_filter_bank_drops_group_that_goes_missing():
    bank = LandmarkFilterBank(smoothing=1.0)
    for _ in range(20):
        bank.filter(np.zeros((33, 3)), LandmarkGroup.POSE_WORLD)
    assert LandmarkGroup.POSE_WORLD in bank.filters

    # Subject left the frame
    bank.filter(np.zeros((0, 3)), LandmarkGroup.POSE_WORLD)
    assert LandmarkGroup.POSE_WORLD not in bank.filters

    frame = np.ones((33, 3))
    assert np.allclose(bank.filter(frame, LandmarkGroup.POSE_WORLD), frame)


def test_filter_observation_keeps_shapes():
    bank = LandmarkFilterBank()
    obs = FrameObservation(pose_world_landmarks=np.ones((33, 3)), face_landmarks=np.ones((5, 3)))
    filtered = bank.filter_observation(obs)
    assert filtered.pose_world_landmarks.shape == (33, 3)
    assert filtered.face_landmarks.shape == (5, 3)
    assert filtered.left_hand_world_landmarks.shape == (0, 3)


def test_gaze_dead_zone():
    smoother = GazeSmoother(smoothing_factor=1.0, dead_zone=0.1)
    assert np.allclose(smoother.smooth([0.05, -0.05]), [0.0, 0.0])
    assert np.allclose(smoother.smooth([0.5, -0.05]), [0.5, 0.0])


def test_gaze_drifts_to_centre_without_eyes():
    smoother = GazeSmoother(smoothing_factor=0.5)
    smoother.smooth([1.0, 1.0])
    first = smoother.smooth(None)
    second = smoother.smooth(None)
    assert np.all(np.abs(second) < np.abs(first))


def test_head_smoother_factor_range():
    smoother = HeadSmoother(max_factor=0.5, min_factor=0.05, velocity_threshold=0.02)
    assert np.isclose(smoother.factor_for(0.0), 0.05)
    assert np.isclose(smoother.factor_for(0.01), 0.275)
    assert np.isclose(smoother.factor_for(1.0), 0.5)


def test_head_smoother_snaps_then_follows():
    smoother = HeadSmoother()
    q = axis_angle_quaternion([0, 1, 0], 0.3)
    assert np.allclose(smoother.smooth(q), q)

    # Lost face holds the last value
    assert np.allclose(smoother.smooth(None), q)

    # Fast turn moves with the max factor
    turned = axis_angle_quaternion([0, 1, 0], 0.8)
    result = smoother.smooth(turned)
    assert np.isclose(angle_between_quaternions(result, q), 0.25, atol=1e-3)

    smoother.reset()
    assert np.allclose(smoother.smoothed, identity())
    assert smoother.last_raw is None


if __name__ == "__main__":
    test_kalman_first_sample_passes_through()
    test_kalman_converges_on_constant_signal()
    test_more_smoothing_lags_more()
    test_smoothing_mapping()
    test_filter_bank_passthrough_for_partial_arrays()
    test_filter_bank_reset_on_smoothing_change()
    test_filter_bank_drops_group_that_goes_missing()
    test_filter_observation_keeps_shapes()
    test_gaze_dead_zone()
    test_gaze_drifts_to_centre_without_eyes()
    test_head_smoother_factor_range()
    test_head_smoother_snaps_then_follows()
    print("PASS")
