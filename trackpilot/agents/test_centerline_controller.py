"""Tests for the rule-based centerline follower."""

from __future__ import annotations

import numpy as np
import pytest

from trackpilot.agents.centerline_controller import (
    CONTROLLER_KIND,
    CenterlineControllerConfig,
    CenterlineFollowingController,
)
from trackpilot.agents.policy_interface import (
    OBS_CENTER_OFFSET,
    OBS_CURVATURE,
    OBS_ON_TRACK,
    OBS_SPEED,
    OBS_TANGENT,
    OBS_TARGET_DIR,
    OBS_VELOCITY,
    OBSERVATION_SIZE,
)
from trackpilot.errors import ContractViolation
from trackpilot.rl.toy_track_env import ToyTrackConfig, ToyTrackEnv


def _obs(speed=0.0, offset=0.0, curvature=0.0, on_track=1.0, velocity=(0.0, 0.0)) -> np.ndarray:
    obs = np.zeros(OBSERVATION_SIZE, dtype=np.float32)
    obs[OBS_SPEED] = speed
    obs[OBS_CENTER_OFFSET] = offset
    obs[OBS_TANGENT] = [1.0, 0.0]
    obs[OBS_TARGET_DIR] = [1.0, 0.0]
    obs[OBS_VELOCITY] = velocity
    obs[OBS_CURVATURE] = curvature
    obs[OBS_ON_TRACK] = on_track
    return obs


def test_aligned_car_at_rest_goes_straight_at_full_throttle():
    action = CenterlineFollowingController().act(_obs())
    assert action.steer == pytest.approx(0.0, abs=1e-6)
    assert action.throttle == pytest.approx(0.9)


def test_offset_toward_inside_steers_clockwise():
    ctrl = CenterlineFollowingController()
    assert ctrl.act(_obs(offset=0.5)).steer < 0
    assert ctrl.act(_obs(offset=-0.5)).steer > 0


def test_travel_direction_uses_velocity():
    # drifting toward +y while the track runs along +x: steer back clockwise
    action = CenterlineFollowingController().act(_obs(speed=0.3, velocity=(0.3, 0.3)))
    assert action.steer < 0


def test_curvature_lowers_target_speed():
    ctrl = CenterlineFollowingController()
    assert ctrl.target_speed(_obs()) == pytest.approx(0.8)
    assert ctrl.target_speed(_obs(curvature=1.0)) == pytest.approx(0.8 - 0.7 * 0.5)


def test_throttle_bands():
    ctrl = CenterlineFollowingController()
    assert ctrl.act(_obs(speed=0.95, velocity=(0.95, 0.0))).throttle == 0.0
    assert ctrl.act(_obs(speed=0.82, velocity=(0.82, 0.0))).throttle == pytest.approx(0.3)
    tapering = ctrl.act(_obs(speed=0.72, velocity=(0.72, 0.0))).throttle
    assert 0.45 < tapering < 0.9


def test_off_track_halves_throttle():
    assert CenterlineFollowingController().act(_obs(on_track=0.0)).throttle == pytest.approx(0.45)


def test_actions_are_clamped():
    ctrl = CenterlineFollowingController(CenterlineControllerConfig(steer_gain=50.0))
    action = ctrl.act(_obs(offset=1.0))
    assert action.steer == -1.0


def test_short_observation_rejected():
    with pytest.raises(ContractViolation):
        CenterlineFollowingController().act(np.zeros(5))


def test_save_load_keeps_config():
    ctrl = CenterlineFollowingController(CenterlineControllerConfig(centering_gain=2.5))
    snapshot = ctrl.save()
    assert snapshot["kind"] == CONTROLLER_KIND

    other = CenterlineFollowingController()
    other.load(snapshot)
    assert other.config.centering_gain == 2.5
    with pytest.raises(ContractViolation):
        other.load({"kind": "actor_critic", "weights": []})


def test_rule_based_capabilities():
    caps = CenterlineFollowingController().capabilities
    assert not caps.supervised and not caps.actor_critic and not caps.value


def test_expert_stays_on_toy_track():
    env = ToyTrackEnv(ToyTrackConfig(max_episode_steps=200), seed=4)
    ctrl = CenterlineFollowingController()
    obs = env.reset(seed=4)
    start = env.snapshot().track_progress
    off_track = 0
    travelled = 0.0
    prev = start
    for _ in range(200):
        result = env.step(ctrl.act(obs))
        off_track += int(result.info["off_track"])
        progress = result.info["progress"]
        delta = progress - prev
        travelled += delta + 1.0 if delta < -0.5 else delta
        prev = progress
        obs = result.observation
        if result.done:
            break
    assert off_track == 0
    assert travelled > 0.1
