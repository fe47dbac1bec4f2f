"""Lap replay records and the replay store contract.

A lap replay is what the host application records while a lap is driven:
one frame per simulation step (the action taken and, when the feature
extractor ran, the observation vector), the lap and sector times, and any
incidents (off-track excursions, wall hits).

The training engine never owns persistence. It reads and flags laps through
the `ReplayStore` protocol; `InMemoryReplayStore` is the reference
implementation used by the CLI and tests.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

import numpy as np


@dataclass
class ReplayFrame:
    """One recorded step: the (steer, throttle) pair and optional observation."""

    step: int
    action: Sequence[float]
    observation: Optional[Sequence[float]] = None


@dataclass
class LapIncident:
    """Something that went wrong during a lap.

    kind is "off_track" or "wall_collision"; severity is in [0, 1].
    """

    frame: int
    kind: str
    severity: float = 1.0


@dataclass
class LapReplay:
    id: str
    track_id: str
    frames: List[ReplayFrame]
    lap_time: float
    sector_times: List[float] = field(default_factory=list)
    incidents: List[LapIncident] = field(default_factory=list)
    is_training_data: bool = False
    quality_score: Optional[float] = None
    training_weight: float = 1.0
    star_rating: Optional[int] = None
    is_ai: bool = False

    @property
    def has_observations(self) -> bool:
        return any(f.observation is not None for f in self.frames)


@dataclass
class DemonstrationSample:
    """An (observation, action) pair used for supervised training.

    weight scales how often the sample is drawn when resampling;
    source_id names the lap the sample came from, so per-lap heuristics
    can respect lap boundaries.
    """

    observation: np.ndarray
    action: np.ndarray
    weight: float = 1.0
    source_id: Optional[str] = None


def samples_from_replay(replay: LapReplay) -> List[DemonstrationSample]:
    """Convert a replay's frames into samples, dropping frames without observations."""
    out: List[DemonstrationSample] = []
    for frame in replay.frames:
        if frame.observation is None:
            continue
        out.append(
            DemonstrationSample(
                observation=np.asarray(frame.observation, dtype=np.float32),
                action=np.asarray(frame.action, dtype=np.float32)[:2],
                weight=float(replay.training_weight),
                source_id=replay.id,
            )
        )
    return out


def stack_samples(samples: Sequence[DemonstrationSample]) -> tuple[np.ndarray, np.ndarray]:
    """Stack samples into (N, obs_dim) observations and (N, 2) actions."""
    obs = np.stack([np.asarray(s.observation, dtype=np.float32) for s in samples])
    act = np.stack([np.asarray(s.action, dtype=np.float32) for s in samples])
    return obs, act


class ReplayStore(Protocol):
    def get_replays_for_track(self, track_id: str) -> List[LapReplay]: ...

    def set_training_data(self, lap_id: str, flag: bool) -> None: ...

    def get_replay(self, lap_id: str) -> Optional[LapReplay]: ...


class InMemoryReplayStore:
    """Dict-backed ReplayStore."""

    def __init__(self, replays: Iterable[LapReplay] = ()):
        self._replays: Dict[str, LapReplay] = {}
        for r in replays:
            self.add(r)

    def add(self, replay: LapReplay) -> None:
        self._replays[replay.id] = replay

    def get_replays_for_track(self, track_id: str) -> List[LapReplay]:
        return [r for r in self._replays.values() if r.track_id == track_id]

    def set_training_data(self, lap_id: str, flag: bool) -> None:
        replay = self._replays.get(lap_id)
        if replay is None:
            raise KeyError(f"Unknown lap id: {lap_id}")
        replay.is_training_data = bool(flag)

    def get_replay(self, lap_id: str) -> Optional[LapReplay]:
        return self._replays.get(lap_id)

    def training_laps(self, track_id: str) -> List[LapReplay]:
        return [r for r in self.get_replays_for_track(track_id) if r.is_training_data]

    def __len__(self) -> int:
        return len(self._replays)


__all__ = [
    "ReplayFrame",
    "LapIncident",
    "LapReplay",
    "DemonstrationSample",
    "samples_from_replay",
    "stack_samples",
    "ReplayStore",
    "InMemoryReplayStore",
]
