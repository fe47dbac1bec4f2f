"""Reward model: state transitions -> scalar training signal.

Every reward is a weighted sum of ten independently computed components:

    component          raw value
    progress           max(0, delta_progress * 100)
    speed              min(1, speed / MAX_SPEED)
    heading            h if h > 0, -5|h| if h < -0.3, else 0
    centerline         1 - |center_offset|
    off_track_penalty  -1 when off track
    lap_bonus          10 on lap completion
    valid_lap_bonus    5 on completion of a lap with no track-limit violation
    cutting_penalty    -50 * delta_progress while off track (delta > 0.001)
    time_penalty       -0.01 every step
    grip_conservation  current tire grip

Two calculators share the decomposition:

- RewardCalculator: fixed profile. Weights come from a named preset and are
  not editable.
- ConfigurableRewardCalculator: user-weighted. set_weights() takes effect on
  the very next calculation.

Both keep a per-episode accumulator of progress gained while off track;
call reset() at the start of each episode.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import Dict, List, Optional

from trackpilot.rl.env_interface import StateSnapshot

MAX_SPEED = 15.0

PROGRESS_SCALE = 100.0
HEADING_DEAD_ZONE = 0.3
HEADING_PENALTY_SCALE = 5.0
LAP_BONUS = 10.0
VALID_LAP_BONUS = 5.0
CUTTING_PROGRESS_THRESHOLD = 0.001
CUTTING_PENALTY_SCALE = 50.0
TIME_PENALTY = -0.01


def progress_delta(prev: float, curr: float) -> float:
    """Progress change corrected for the finish-line wrap.

    A drop of more than half a lap means the car crossed the line forwards;
    a jump of more than half a lap means it crossed backwards.
    """
    delta = curr - prev
    if delta < -0.5:
        delta += 1.0
    elif delta > 0.5:
        delta -= 1.0
    return delta


@dataclass
class RewardWeights:
    progress: float = 1.0
    speed: float = 0.3
    heading: float = 0.5
    centerline: float = 0.3
    off_track_penalty: float = 0.5
    lap_bonus: float = 1.0
    valid_lap_bonus: float = 0.5
    cutting_penalty: float = 0.8
    time_penalty: float = 0.1
    grip_conservation: float = 0.1

    def updated(self, **changes: float) -> "RewardWeights":
        known = {f.name for f in fields(self)}
        unknown = set(changes) - known
        if unknown:
            raise KeyError(f"Unknown reward weight(s): {sorted(unknown)}")
        return replace(self, **{k: float(v) for k, v in changes.items()})

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


REWARD_PRESETS: Dict[str, RewardWeights] = {
    "balanced": RewardWeights(),
    "speed": RewardWeights(
        progress=1.5,
        speed=0.5,
        heading=0.3,
        centerline=0.1,
        off_track_penalty=0.3,
        lap_bonus=1.5,
        valid_lap_bonus=0.2,
        cutting_penalty=0.4,
        time_penalty=0.2,
        grip_conservation=0.0,
    ),
    "safe": RewardWeights(
        progress=0.8,
        speed=0.2,
        heading=0.6,
        centerline=0.6,
        off_track_penalty=0.8,
        lap_bonus=0.8,
        valid_lap_bonus=0.8,
        cutting_penalty=1.0,
        time_penalty=0.05,
        grip_conservation=0.3,
    ),
    "aggressive": RewardWeights(
        progress=2.0,
        speed=0.8,
        heading=0.2,
        centerline=0.0,
        off_track_penalty=0.2,
        lap_bonus=2.0,
        valid_lap_bonus=0.0,
        cutting_penalty=0.2,
        time_penalty=0.3,
        grip_conservation=0.0,
    ),
}


def preset_weights(name: str) -> RewardWeights:
    try:
        return replace(REWARD_PRESETS[name])
    except KeyError:
        raise KeyError(f"Unknown reward preset '{name}'. Available: {sorted(REWARD_PRESETS)}") from None


@dataclass
class RewardComponents:
    """Unweighted component values for one transition."""

    progress: float = 0.0
    speed: float = 0.0
    heading: float = 0.0
    centerline: float = 0.0
    off_track_penalty: float = 0.0
    lap_bonus: float = 0.0
    valid_lap_bonus: float = 0.0
    cutting_penalty: float = 0.0
    time_penalty: float = 0.0
    grip_conservation: float = 0.0

    def weighted_sum(self, weights: RewardWeights) -> float:
        return sum(getattr(self, f.name) * getattr(weights, f.name) for f in fields(self))

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


def heading_reward(alignment: float) -> float:
    if alignment > 0:
        return alignment
    if alignment < -HEADING_DEAD_ZONE:
        return -abs(alignment) * HEADING_PENALTY_SCALE
    return 0.0


def compute_components(
    prev: StateSnapshot,
    curr: StateSnapshot,
    lap_completed: bool,
    lap_valid: bool,
) -> RewardComponents:
    delta = progress_delta(prev.track_progress, curr.track_progress)
    cutting = 0.0
    if not curr.is_on_track and delta > CUTTING_PROGRESS_THRESHOLD:
        cutting = -delta * CUTTING_PENALTY_SCALE
    return RewardComponents(
        progress=max(0.0, delta * PROGRESS_SCALE),
        speed=min(1.0, curr.speed / MAX_SPEED),
        heading=heading_reward(curr.heading_alignment),
        centerline=1.0 - abs(curr.center_offset),
        off_track_penalty=0.0 if curr.is_on_track else -1.0,
        lap_bonus=LAP_BONUS if lap_completed else 0.0,
        valid_lap_bonus=VALID_LAP_BONUS if (lap_completed and lap_valid) else 0.0,
        cutting_penalty=cutting,
        time_penalty=TIME_PENALTY,
        grip_conservation=curr.grip,
    )


class _BaseRewardCalculator:
    def __init__(self) -> None:
        self._cutting_progress = 0.0

    @property
    def weights(self) -> RewardWeights:
        raise NotImplementedError

    def reset(self) -> None:
        """Start a new episode."""
        self._cutting_progress = 0.0

    @property
    def cutting_progress(self) -> float:
        return self._cutting_progress

    def calculate_components(
        self,
        prev: StateSnapshot,
        curr: StateSnapshot,
        lap_completed: bool = False,
        lap_valid: Optional[bool] = None,
    ) -> RewardComponents:
        if lap_valid is None:
            lap_valid = curr.lap_valid
        components = compute_components(prev, curr, lap_completed, lap_valid)
        if components.cutting_penalty != 0.0:
            self._cutting_progress += progress_delta(prev.track_progress, curr.track_progress)
        return components

    def calculate(
        self,
        prev: StateSnapshot,
        curr: StateSnapshot,
        lap_completed: bool = False,
        lap_valid: Optional[bool] = None,
    ) -> float:
        components = self.calculate_components(prev, curr, lap_completed, lap_valid)
        return float(components.weighted_sum(self.weights))

    def format_breakdown(
        self,
        prev: StateSnapshot,
        curr: StateSnapshot,
        lap_completed: bool = False,
        lap_valid: Optional[bool] = None,
    ) -> str:
        """Multi-line `name: raw x weight = weighted` listing of non-zero terms.

        Does not touch the cutting accumulator.
        """
        if lap_valid is None:
            lap_valid = curr.lap_valid
        components = compute_components(prev, curr, lap_completed, lap_valid)
        weights = self.weights
        lines: List[str] = []
        for f in fields(components):
            raw = getattr(components, f.name)
            weight = getattr(weights, f.name)
            if abs(raw * weight) > 0.001:
                lines.append(f"  {f.name}: {raw:.3f} x {weight:.2f} = {raw * weight:.3f}")
        lines.append(f"  TOTAL: {components.weighted_sum(weights):.3f}")
        return "\n".join(lines)


class RewardCalculator(_BaseRewardCalculator):
    """Fixed-profile reward: weights are a frozen copy of a named preset."""

    def __init__(self, profile: str = "balanced"):
        super().__init__()
        self._profile = profile
        self._weights = preset_weights(profile)

    @property
    def profile(self) -> str:
        return self._profile

    def set_profile(self, profile: str) -> None:
        self._weights = preset_weights(profile)
        self._profile = profile

    @property
    def weights(self) -> RewardWeights:
        return replace(self._weights)


class ConfigurableRewardCalculator(_BaseRewardCalculator):
    """User-weighted reward; weights can change between any two calls."""

    def __init__(self, weights: Optional[RewardWeights] = None, **overrides: float):
        super().__init__()
        base = replace(weights) if weights is not None else RewardWeights()
        self._weights = base.updated(**overrides) if overrides else base

    def set_weights(self, weights: Optional[RewardWeights] = None, **changes: float) -> None:
        """Replace all weights, or merge the named ones into the current set."""
        if weights is not None:
            self._weights = replace(weights)
        if changes:
            self._weights = self._weights.updated(**changes)

    def apply_preset(self, name: str) -> None:
        self._weights = preset_weights(name)

    @property
    def weights(self) -> RewardWeights:
        return replace(self._weights)


__all__ = [
    "MAX_SPEED",
    "progress_delta",
    "RewardWeights",
    "REWARD_PRESETS",
    "preset_weights",
    "RewardComponents",
    "heading_reward",
    "compute_components",
    "RewardCalculator",
    "ConfigurableRewardCalculator",
]
