import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from avatar_rig.coords import normalize_observation
from avatar_rig.expressions import ExpressionBlender
from avatar_rig.head import HeadSolver
from avatar_rig.hands import HandSolver
from avatar_rig.ik import clamp_to_midline, rig_limbs
from avatar_rig.landmarks import LandmarkGroup, SolverConfig, is_complete
from avatar_rig.smoothing import GazeSmoother, HeadSmoother, LandmarkFilterBank
from avatar_rig.torso import TorsoSolver

logger = logging.getLogger(__name__)

NUMERIC_ERRORS = (ValueError, FloatingPointError, np.linalg.LinAlgError)


def _applied(result):
    if result is None or result is False:
        return False
    if isinstance(result, np.ndarray):
        return True
    return bool(result)


class RigUpdate(BaseModel):
    """What one call to RigSolver.update did."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    solved: List[str] = Field(default_factory=list)
    skipped: Dict[str, str] = Field(default_factory=dict)
    look_at_target: Optional[np.ndarray] = None
    expression_weights: Dict[str, float] = Field(default_factory=dict)
    processing_time_ms: float = 0.0


@dataclass
class TrackingState:
    """
    Everything that persists between frames for one tracked subject.

    Owned by one RigSolver; never shared between solvers.
    """
    filters: LandmarkFilterBank = field(default_factory=LandmarkFilterBank)
    expressions: ExpressionBlender = field(default_factory=ExpressionBlender)
    head_smoother: HeadSmoother = field(default_factory=HeadSmoother)
    gaze_smoother: GazeSmoother = field(default_factory=GazeSmoother)
    bend_normals: Dict[str, np.ndarray] = field(default_factory=dict)
    look_at_target: Optional[np.ndarray] = None
    # Whether the filter bank ran last frame
    filtering: bool = False


def gaze_follow(config):
    """Lerp factor for the look-at target. More smoothing follows slower."""
    if not config.smoothing_enabled:
        return 1.0
    return max(0.05, (1.0 - config.smoothing) * 0.5)


class RigSolver:
    def __init__(self, skeleton=None, expression_target=None, finger_mode="align",
                 limb_smoothing=0.4, expression_settings=None):
        """
        Per-frame conductor: normalizes and filters landmarks, then runs each
        enabled region solver and writes the results into the skeleton.

        Args:
            skeleton: avatar_rig.skeleton.Skeleton implementation.
            expression_target: avatar_rig.skeleton.ExpressionTarget implementation.
            finger_mode: "align" or "curl", see HandSolver.
            limb_smoothing: Slerp factor for arm and leg bones.
            expression_settings: {channel: ExpressionTuning} overrides.
        """
        self.finger_mode = finger_mode
        self.limb_smoothing = limb_smoothing
        self.expression_settings = expression_settings
        self.torso = TorsoSolver()
        self.hands = HandSolver(finger_mode=finger_mode)
        self.skeleton = None
        self.expression_target = None
        self.state = None
        self.head = None
        if skeleton is not None:
            self.initialize(skeleton, expression_target)

    def initialize(self, skeleton, expression_target=None):
        """Bind an avatar and start from fresh per-subject state."""
        self.skeleton = skeleton
        self.expression_target = expression_target
        self.state = TrackingState(expressions=ExpressionBlender(settings=self.expression_settings))
        self.head = HeadSolver(self.state.head_smoother, self.state.gaze_smoother)

    def reset_tracking(self):
        """Tracking restarted: drop every filter and smoother history."""
        if self.skeleton is not None:
            self.initialize(self.skeleton, self.expression_target)

    def _run(self, update, region, fn):
        try:
            result = fn()
        except NUMERIC_ERRORS as e:
            logger.warning("Region %s failed this frame: %s", region, e)
            update.skipped[region] = f"error: {e}"
            return None
        if _applied(result):
            update.solved.append(region)
        elif region not in update.skipped:
            update.skipped[region] = "nothing applied"
        return result

    def update(self, observation, config=None, delta_time=0.0):
        """
        Solve one frame.

        observation is a FrameObservation in the perception model's
        convention; config a SolverConfig (defaults when None).
        """
        update = RigUpdate()
        if self.skeleton is None:
            return update

        start_time = time.perf_counter()
        config = config or SolverConfig()

        frame = normalize_observation(observation)
        if config.smoothing_enabled:
            if not self.state.filtering:
                # Estimates from before the pause are stale
                self.state.filters.reset()
            self.state.filters.set_smoothing(config.smoothing)
            frame = self.state.filters.filter_observation(frame)
        self.state.filtering = config.smoothing_enabled

        face = frame.face_landmarks
        face_ok = is_complete(face, LandmarkGroup.FACE)

        # --- Expressions ---
        if config.face_tracking:
            if self.expression_target is None or not frame.expression_scores:
                update.skipped["expressions"] = "no data"
            else:
                weights = self._run(update, "expressions",
                                    lambda: self.state.expressions.apply(self.expression_target, frame.expression_scores))
                if weights:
                    update.expression_weights = dict(weights)

        # --- Body ---
        if config.pose_tracking:
            pose_world = frame.pose_world_landmarks
            if is_complete(pose_world, LandmarkGroup.POSE_WORLD):
                pose_world = clamp_to_midline(pose_world)
                self._run(update, "torso", lambda: self.torso.solve(self.skeleton, pose_world))
                # Limb IK reads ancestor world rotations
                self.skeleton.update_world()
                self._run(update, "limbs", lambda: rig_limbs(
                    self.skeleton, pose_world, self.state.bend_normals,
                    enable_legs=config.leg_tracking, smoothing_factor=self.limb_smoothing))
                self.skeleton.update_world()
            else:
                update.skipped["torso"] = "no data"
                update.skipped["limbs"] = "no data"

        # --- Hands ---
        if config.hand_tracking:
            self._run(update, "hands", lambda: self.hands.solve(
                self.skeleton, frame.left_hand_world_landmarks, frame.right_hand_world_landmarks))
            self.skeleton.update_world()

        # --- Head ---
        # After the body so the neck's world rotation is this frame's
        if config.head_tracking:
            if face_ok:
                self._run(update, "head", lambda: self.head.solve_head(self.skeleton, face))
                self.skeleton.update_world()
            else:
                update.skipped["head"] = "no data"

        # --- Pupils ---
        if config.pupil_tracking:
            if face_ok:
                target = self._run(update, "gaze", lambda: self.head.look_at_target(
                    self.skeleton, face, self.state.look_at_target, follow=gaze_follow(config)))
                if target is not None:
                    self.state.look_at_target = target
            else:
                update.skipped["gaze"] = "no data"

        self.skeleton.advance(delta_time)

        update.look_at_target = None if self.state.look_at_target is None else self.state.look_at_target.copy()
        update.processing_time_ms = (time.perf_counter() - start_time) * 1000
        return update
