"""
Rule-based expression blending.

Raw blendshape scores (ARKit names) are aliased onto avatar expression
channels, gated by hysteresis or frame counters, resolved for conflicts,
capped, then eased toward their targets every frame.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# Source signal -> expression channel. Several signals may alias one channel.
BLENDSHAPE_MAP = {
    # Eyes
    "eyeBlinkLeft": "blinkLeft",
    "eyeBlinkRight": "blinkRight",
    "eyeWideLeft": "surprised",
    "eyeWideRight": "surprised",
    # Brows
    "browDownLeft": "angry",
    "browDownRight": "angry",
    "browInnerUp": "sad",
    # Jaw & mouth
    "jawOpen": "aa",
    "mouthFunnel": "ou",
    "mouthPucker": "oh",
    "mouthStretchLeft": "ee",
    "mouthStretchRight": "ee",
    "mouthSmileLeft": "happy",
    "mouthSmileRight": "happy",
    "mouthFrownLeft": "sad",
    "mouthFrownRight": "sad",
    "mouthDimpleLeft": "relaxed",
    "mouthDimpleRight": "relaxed",
    "mouthLowerDownLeft": "ih",
    "mouthLowerDownRight": "ih",
}

DEFAULT_SMOOTHING = 0.2

# Frames strictly above/below threshold before the state flips
ACTIVATION_FRAMES = 2
DEACTIVATION_FRAMES = 5


class ExpressionTuning(BaseModel):
    threshold: float = 0.0
    smoothing: Optional[float] = None
    ceiling: Optional[float] = None
    sensitivity: Optional[float] = None
    suppresses: List[str] = Field(default_factory=list)
    suppressed_by: List[str] = Field(default_factory=list)
    priority: float = 1.0
    activate_threshold: Optional[float] = None
    deactivate_threshold: Optional[float] = None

    @property
    def uses_hysteresis(self):
        return self.activate_threshold is not None and self.deactivate_threshold is not None


class ExpressionGroup(BaseModel):
    members: List[str]
    ceiling: float


EXPRESSION_SETTINGS = {
    # Speech. Distinct shapes outrank the generic jaw opening.
    "aa": ExpressionTuning(threshold=0.05, smoothing=0.2, sensitivity=0.4, ceiling=0.8, priority=0.5),
    "ee": ExpressionTuning(threshold=0.1, smoothing=0.2, sensitivity=0.45, priority=2.0),
    "ih": ExpressionTuning(threshold=0.1, smoothing=0.2, sensitivity=0.45, priority=2.0),
    "oh": ExpressionTuning(threshold=0.1, smoothing=0.2, sensitivity=0.45, ceiling=0.5, priority=2.0),
    "ou": ExpressionTuning(threshold=0.1, smoothing=0.2, sensitivity=0.45, priority=2.0),
    # Emotions
    "happy": ExpressionTuning(threshold=0.2, smoothing=0.25, suppressed_by=["sad", "angry"]),
    "sad": ExpressionTuning(threshold=0.2, smoothing=0.25, suppresses=["happy"]),
    "angry": ExpressionTuning(threshold=0.3, smoothing=0.3, suppresses=["happy"]),
    "relaxed": ExpressionTuning(threshold=0.2, smoothing=0.2),
    "surprised": ExpressionTuning(threshold=0.4, smoothing=0.1, suppresses=["happy", "sad", "angry"]),
    # Eyes
    "blinkLeft": ExpressionTuning(activate_threshold=0.45, deactivate_threshold=0.3, smoothing=0.3),
    "blinkRight": ExpressionTuning(activate_threshold=0.45, deactivate_threshold=0.3, smoothing=0.3),
}

MOUTH_GROUP = ExpressionGroup(
    members=["aa", "ou", "oh", "ee", "ih", "happy", "sad", "relaxed"],
    ceiling=1.4,
)


def merge_expression_settings(overrides, base=EXPRESSION_SETTINGS):
    """
    Build {channel: ExpressionTuning} from plain-dict overrides (as read from
    YAML). Fields not given keep the value from base; unknown channels start
    from the defaults.
    """
    merged = {}
    for name, values in (overrides or {}).items():
        current = base.get(name)
        fields = current.model_dump() if current is not None else {}
        fields.update(values or {})
        merged[name] = ExpressionTuning.model_validate(fields)
    return merged


@dataclass
class ExpressionState:
    current_value: float = 0.0
    is_active: bool = False
    activation_counter: int = 0
    deactivation_counter: int = 0
    target: float = 0.0


def aggregate_scores(scores, blendshape_map=BLENDSHAPE_MAP):
    """Raw per-channel score: the max over all signals aliasing that channel."""
    raw = {}
    for signal, score in scores.items():
        channel = blendshape_map.get(signal)
        if channel:
            raw[channel] = max(raw.get(channel, 0.0), float(score))
    return raw


def resolve_group_ceiling(targets, group, settings):
    """
    Fit a group's targets under its cumulative ceiling.

    The dominant member (highest priority-weighted value) keeps up to the full
    ceiling; everyone else is scaled into what is left. Mutates and returns
    targets. Members missing from targets are ignored.
    """
    members = [name for name in group.members if name in targets]
    if not members:
        return targets

    total = 0.0
    dominant, dominant_weighted = None, -1.0
    for name in members:
        tuning = settings.get(name, ExpressionTuning())
        value = targets[name]
        weighted = value * tuning.priority
        if weighted > dominant_weighted:
            dominant, dominant_weighted = name, weighted
        total += value

    if total <= group.ceiling or dominant is None:
        return targets

    dominant_value = targets[dominant]
    new_dominant = min(dominant_value, group.ceiling)
    remaining = group.ceiling - new_dominant
    others_total = total - dominant_value
    scale = remaining / others_total if others_total > 0 else 0.0

    targets[dominant] = new_dominant
    for name in members:
        if name != dominant:
            targets[name] *= scale
    return targets


class ExpressionBlender:
    def __init__(self, settings=None, groups=None, blendshape_map=None,
                 activation_frames=ACTIVATION_FRAMES, deactivation_frames=DEACTIVATION_FRAMES):
        self.settings = dict(EXPRESSION_SETTINGS)
        if settings:
            self.settings.update(settings)
        self.groups = groups if groups is not None else [MOUTH_GROUP]
        self.blendshape_map = blendshape_map or BLENDSHAPE_MAP
        self.activation_frames = activation_frames
        self.deactivation_frames = deactivation_frames
        self.states: Dict[str, ExpressionState] = {}

    def reset(self):
        self.states = {}

    def initialize(self, channel_names):
        self.states = {name: ExpressionState() for name in channel_names}
        logger.debug("Expression channels: %s", ", ".join(self.states))

    def tuning(self, name):
        return self.settings.get(name, ExpressionTuning())

    def _gate(self, state, tuning, raw):
        if tuning.uses_hysteresis:
            if raw > tuning.activate_threshold:
                state.is_active = True
            elif raw < tuning.deactivate_threshold:
                state.is_active = False
            # Between the thresholds the state holds
            return

        if raw > tuning.threshold:
            state.activation_counter += 1
            state.deactivation_counter = 0
        else:
            state.activation_counter = 0
            state.deactivation_counter += 1

        if state.activation_counter > self.activation_frames:
            state.is_active = True
        if state.deactivation_counter > self.deactivation_frames:
            state.is_active = False

    def _target(self, state, tuning, raw):
        if not state.is_active:
            return 0.0
        if tuning.uses_hysteresis:
            return 1.0
        if tuning.sensitivity:
            return raw ** tuning.sensitivity
        return raw

    def _suppress(self):
        # Suppressors first so a channel cannot un-suppress itself this pass
        for name, state in self.states.items():
            if not state.is_active:
                continue
            for suppressed in self.tuning(name).suppresses:
                if suppressed in self.states:
                    self.states[suppressed].target = 0.0

        for name, state in self.states.items():
            if not state.is_active:
                continue
            for suppressor in self.tuning(name).suppressed_by:
                other = self.states.get(suppressor)
                if other is not None and other.is_active:
                    state.target = 0.0

    def _apply_ceilings(self):
        for name, state in self.states.items():
            ceiling = self.tuning(name).ceiling
            if ceiling is not None:
                state.target = min(state.target, ceiling)

        for group in self.groups:
            targets = {name: self.states[name].target for name in group.members if name in self.states}
            resolve_group_ceiling(targets, group, self.settings)
            for name, value in targets.items():
                self.states[name].target = value

    def process(self, scores):
        """Run one frame of the state machine. Returns {channel: displayed weight}."""
        raw_scores = aggregate_scores(scores, self.blendshape_map)

        for name, state in self.states.items():
            tuning = self.tuning(name)
            raw = raw_scores.get(name, 0.0)
            self._gate(state, tuning, raw)
            state.target = self._target(state, tuning, raw)

        self._suppress()
        self._apply_ceilings()

        weights = {}
        for name, state in self.states.items():
            smoothing = self.tuning(name).smoothing
            if smoothing is None:
                smoothing = DEFAULT_SMOOTHING
            state.current_value += (state.target - state.current_value) * smoothing
            weights[name] = state.current_value
        return weights

    def apply(self, expression_target, scores):
        """Blend one frame and write it onto the avatar's expression target."""
        if not self.states:
            self.initialize(expression_target.channel_names())

        weights = self.process(scores)
        for name, value in weights.items():
            expression_target.set_value(name, value)
        expression_target.update()
        return weights
