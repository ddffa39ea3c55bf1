import logging

import numpy as np

from avatar_rig.landmarks import LandmarkGroup, is_complete
from avatar_rig.orientation import (
    angle_between_quaternions,
    identity,
    normalize,
    slerp,
)

logger = logging.getLogger(__name__)

PROCESS_NOISE = 0.01


def smoothing_to_noise(factor):
    """Map the user-facing smoothing factor [0, 1] onto the measurement noise term."""
    factor = min(1.0, max(0.0, float(factor)))
    return 0.01 + factor * 0.2


class KalmanFilter:
    def __init__(self, measurement_noise, process_noise=PROCESS_NOISE):
        """
        One-dimensional Kalman filter with a constant-state model.

        Args:
            measurement_noise: How much observations are distrusted. Larger
                               values mean heavier smoothing and more lag.
            process_noise: Covariance added every step before the update.
        """
        self.measurement_noise = measurement_noise
        self.process_noise = process_noise
        self.x = None
        self.cov = None

    def __call__(self, z):
        """Filter one observation and return the new estimate."""
        if self.x is None:
            self.x = z
            self.cov = self.measurement_noise
            return self.x

        pred_cov = self.cov + self.process_noise
        k = pred_cov / (pred_cov + self.measurement_noise)
        self.x = self.x + k * (z - self.x)
        self.cov = pred_cov - k * pred_cov

        return self.x


class LandmarkFilterBank:
    def __init__(self, smoothing=0.5):
        """
        Holds one x/y/z Kalman triplet per landmark index, per landmark group.

        State persists across frames for a single tracked subject. Changing the
        smoothing factor discards everything.
        """
        self.measurement_noise = smoothing_to_noise(smoothing)
        self.filters = {}

    def set_smoothing(self, factor):
        noise = smoothing_to_noise(factor)
        if np.isclose(noise, self.measurement_noise):
            return False
        logger.debug("Smoothing changed (noise %.3f -> %.3f), resetting filters", self.measurement_noise, noise)
        self.measurement_noise = noise
        self.reset()
        return True

    def reset(self):
        self.filters = {}

    def _bank(self, group):
        if group not in self.filters:
            self.filters[group] = [
                [KalmanFilter(self.measurement_noise) for _ in range(3)]
                for _ in range(group.size)
            ]
        return self.filters[group]

    def filter(self, landmarks, group):
        """
        Filter a landmark cloud and return a same-shape array.

        Empty or wrongly-sized arrays bypass filtering and come back unchanged.
        The group's history is dropped so tracking restarts cleanly.
        """
        if not is_complete(landmarks, group):
            self.filters.pop(group, None)
            return landmarks

        bank = self._bank(group)
        filtered = np.empty_like(np.asarray(landmarks, dtype=float))
        for i, point in enumerate(landmarks):
            fx, fy, fz = bank[i]
            filtered[i] = (fx(point[0]), fy(point[1]), fz(point[2]))
        return filtered

    def filter_observation(self, observation, groups=tuple(LandmarkGroup)):
        return observation.with_groups({g: self.filter(observation.group(g), g) for g in groups})


class GazeSmoother:
    def __init__(self, smoothing_factor=0.1, dead_zone=0.1):
        """
        Exponential moving average with a dead zone around centre gaze.

        Args:
            smoothing_factor: EMA alpha. Lower = smoother, more latency.
            dead_zone: Per-axis magnitude below which the input counts as zero.
        """
        self.smoothing_factor = smoothing_factor
        self.dead_zone = dead_zone
        self.smoothed = np.zeros(2)

    def smooth(self, raw_gaze):
        if raw_gaze is None:
            # Lost the eyes, drift back to centre
            raw_gaze = np.zeros(2)

        raw_gaze = np.asarray(raw_gaze, dtype=float)
        deadened = np.where(np.abs(raw_gaze) < self.dead_zone, 0.0, raw_gaze)

        self.smoothed = self.smoothing_factor * deadened + (1 - self.smoothing_factor) * self.smoothed
        return self.smoothed.copy()

    def reset(self):
        self.smoothed = np.zeros(2)


class HeadSmoother:
    def __init__(self, max_factor=0.5, min_factor=0.05, velocity_threshold=0.02):
        """
        Velocity-adaptive slerp for the head orientation.

        Args:
            max_factor: Interpolation factor when the head moves fast.
            min_factor: Interpolation factor when the head is still.
            velocity_threshold: Angular speed (radians per frame) at which the
                                head counts as fully moving.
        """
        self.max_factor = max_factor
        self.min_factor = min_factor
        self.velocity_threshold = velocity_threshold
        self.smoothed = identity()
        self.last_raw = None

    def factor_for(self, angular_velocity):
        t = min(angular_velocity / self.velocity_threshold, 1.0)
        return self.min_factor + (self.max_factor - self.min_factor) * t

    def smooth(self, raw):
        if raw is None:
            return self.smoothed.copy()

        raw = normalize(np.asarray(raw, dtype=float))

        if self.last_raw is None:
            self.last_raw = raw
            self.smoothed = raw.copy()
            return self.smoothed.copy()

        velocity = angle_between_quaternions(raw, self.last_raw)
        self.smoothed = slerp(self.smoothed, raw, self.factor_for(velocity))
        self.last_raw = raw

        return self.smoothed.copy()

    def reset(self):
        self.smoothed = identity()
        self.last_raw = None
