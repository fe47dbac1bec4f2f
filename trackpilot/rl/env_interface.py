"""Minimal environment interface contract.

This is *not* tied to Gym; it's intentionally tiny.

A driving environment should provide:
- reset(seed=None) -> obs
- step(action) -> StepResult(observation, reward, done, info)

Where:
- obs is the 20-feature observation vector (see agents.policy_interface)
- action is an Action(steer, throttle)
- info can include lap signals: lap_completed, lap_time, off_track, lap_valid

Environments that can describe the vehicle state for reward shaping also
implement SnapshotProvider. The fine-tuning orchestrator checks for it and
computes rewards with its own weights when present.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, NamedTuple, Optional, Protocol, runtime_checkable

import numpy as np

from trackpilot.agents.policy_interface import OBS_CENTER_OFFSET, OBS_SPEED, Action

Info = Dict[str, Any]


class StepResult(NamedTuple):
    observation: np.ndarray
    reward: float
    done: bool
    info: Info


@dataclass(frozen=True)
class StateSnapshot:
    """What the reward model needs to know about one tick."""

    track_progress: float = 0.0
    speed: float = 0.0
    heading_alignment: float = 0.0
    center_offset: float = 0.0
    distance_from_track: float = 0.0
    is_on_track: bool = True
    grip: float = 1.0
    lap_valid: bool = True


class Environment(Protocol):
    def reset(self, seed: Optional[int] = None) -> np.ndarray: ...

    def step(self, action: Action) -> StepResult: ...


@runtime_checkable
class SnapshotProvider(Protocol):
    def snapshot(self) -> StateSnapshot: ...


class ExpertController(Protocol):
    def act(self, observation: np.ndarray) -> Action: ...


@dataclass
class EpisodeInfo:
    """Per-episode bookkeeping, fed one step at a time.

    observe() takes the observation the action was chosen from, the step
    reward and the env's info dict (lap_completed, lap_time, off_track).
    """

    steps: int = 0
    total_reward: float = 0.0
    laps_completed: int = 0
    last_lap_time: Optional[float] = None
    best_lap_time: Optional[float] = None
    off_track_steps: int = 0
    speed_sum: float = 0.0
    center_offset_sum: float = 0.0

    def observe(self, observation: np.ndarray, reward: float, info: Info) -> None:
        self.steps += 1
        self.total_reward += float(reward)
        self.speed_sum += float(observation[OBS_SPEED])
        self.center_offset_sum += abs(float(observation[OBS_CENTER_OFFSET]))
        if info.get("off_track"):
            self.off_track_steps += 1
        if info.get("lap_completed"):
            self.laps_completed += 1
            lap_time = info.get("lap_time")
            if lap_time is not None:
                self.last_lap_time = float(lap_time)
                if self.best_lap_time is None or lap_time < self.best_lap_time:
                    self.best_lap_time = float(lap_time)

    @property
    def lap_completed(self) -> bool:
        return self.laps_completed > 0

    @property
    def avg_speed(self) -> float:
        return self.speed_sum / max(1, self.steps)

    @property
    def avg_center_offset(self) -> float:
        return self.center_offset_sum / max(1, self.steps)

    @property
    def off_track_fraction(self) -> float:
        return self.off_track_steps / max(1, self.steps)


__all__ = [
    "Info",
    "StepResult",
    "StateSnapshot",
    "Environment",
    "SnapshotProvider",
    "ExpertController",
    "EpisodeInfo",
]
