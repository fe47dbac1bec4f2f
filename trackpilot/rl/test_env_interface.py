from __future__ import annotations

import numpy as np
import pytest

from trackpilot.agents.policy_interface import OBS_CENTER_OFFSET, OBS_SPEED, OBSERVATION_SIZE
from trackpilot.rl.env_interface import EpisodeInfo


def _obs(speed: float, offset: float) -> np.ndarray:
    obs = np.zeros(OBSERVATION_SIZE, dtype=np.float32)
    obs[OBS_SPEED] = speed
    obs[OBS_CENTER_OFFSET] = offset
    return obs


def test_episode_info_accumulates_laps_and_averages():
    info = EpisodeInfo()
    info.observe(_obs(0.2, -0.4), 1.0, {"off_track": True})
    info.observe(_obs(0.4, 0.2), 2.0, {"lap_completed": True, "lap_time": 61.0})
    info.observe(_obs(0.6, 0.0), 0.5, {"lap_completed": True, "lap_time": 59.5})
    info.observe(_obs(0.8, 0.2), -0.5, {"lap_completed": True, "lap_time": 60.0})

    assert info.steps == 4
    assert info.total_reward == pytest.approx(3.0)
    assert info.laps_completed == 3 and info.lap_completed
    assert info.last_lap_time == pytest.approx(60.0)
    assert info.best_lap_time == pytest.approx(59.5)
    assert info.off_track_steps == 1
    assert info.off_track_fraction == pytest.approx(0.25)
    assert info.avg_speed == pytest.approx(0.5)
    assert info.avg_center_offset == pytest.approx(0.2)


def test_empty_episode_info_is_zeroed():
    info = EpisodeInfo()
    assert not info.lap_completed
    assert info.last_lap_time is None
    assert info.avg_speed == 0.0
    assert info.off_track_fraction == 0.0


def test_lap_without_time_counts_but_keeps_times_unset():
    info = EpisodeInfo()
    info.observe(_obs(0.0, 0.0), 0.0, {"lap_completed": True})
    assert info.laps_completed == 1
    assert info.best_lap_time is None
