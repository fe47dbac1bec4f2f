"""Toy circular-track driving environment.

A minimal playground for exercising the training engine end to end:
- Behavior cloning from the centerline expert
- Actor-critic episodes with GAE
- Fine-tuning with shaped rewards (implements SnapshotProvider)

Design
------
- Closed circular track of radius R (sampled per seed) and fixed width
- Car state: (x, y, heading, speed), simple bicycle kinematics
- Action: Action(steer, throttle); positive steer turns counter-clockwise
- Racing direction is counter-clockwise; progress is the polar angle / 2pi
- Observation: the 20-feature layout from agents.policy_interface
- Reward: a fixed-profile RewardCalculator over the env's own snapshots

Usage
-----
    env = ToyTrackEnv(ToyTrackConfig(max_episode_steps=500))
    obs = env.reset(seed=3)
    result = env.step(Action(0.0, 1.0))
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from trackpilot.agents.policy_interface import OBSERVATION_SIZE, Action
from trackpilot.rl.env_interface import Info, StateSnapshot, StepResult
from trackpilot.rl.rewards import MAX_SPEED, RewardCalculator, progress_delta


@dataclass
class ToyTrackConfig:
    """Configuration for the toy track environment."""
    # Track
    radius_min: float = 40.0  # meters
    radius_max: float = 60.0
    half_width: float = 6.0
    lookahead: float = 15.0  # meters along the centerline
    curvature_reference: float = 10.0  # curvature feature = reference / R

    # Car kinematics
    max_speed: float = MAX_SPEED  # m/s
    acceleration: float = 5.0  # m/s^2 at full throttle
    drag: float = 0.05
    max_steer: float = math.pi / 6
    wheelbase: float = 2.5
    dt: float = 0.1

    # Episode
    max_episode_steps: int = 1000
    laps_per_episode: int = 1
    max_off_track_distance: float = 12.0  # beyond the edge -> episode ends
    fuel_per_step: float = 1e-4

    reward_profile: str = "balanced"

    def __post_init__(self):
        """Validate configuration."""
        assert 0 < self.radius_min <= self.radius_max, "radius range must be positive and ordered"
        assert 0 < self.half_width < self.radius_min, "half_width must be smaller than the radius"
        assert self.max_episode_steps > 0, "max_episode_steps must be positive"
        assert self.laps_per_episode > 0, "laps_per_episode must be positive"


class ToyTrackEnv:
    """Circular track; implements Environment and SnapshotProvider."""

    def __init__(self, config: ToyTrackConfig | None = None, seed: int | None = None):
        self.config = config or ToyTrackConfig()
        self.rng = np.random.default_rng(seed)
        self.reward_calculator = RewardCalculator(self.config.reward_profile)
        self.radius = 0.5 * (self.config.radius_min + self.config.radius_max)
        self.reset()

    # ------------------------------------------------------------------
    # Geometry
    # ------------------------------------------------------------------

    def _angle(self) -> float:
        return math.atan2(self.state[1], self.state[0]) % (2 * math.pi)

    def _progress(self) -> float:
        return self._angle() / (2 * math.pi)

    def _tangent(self, angle: float) -> np.ndarray:
        return np.array([-math.sin(angle), math.cos(angle)], dtype=np.float32)

    def _distance_from_center(self) -> float:
        return float(math.hypot(self.state[0], self.state[1]))

    def _center_offset(self) -> float:
        """Normalized offset; positive toward the inside (left of travel)."""
        return (self.radius - self._distance_from_center()) / self.config.half_width

    def _heading_dir(self) -> np.ndarray:
        return np.array([math.cos(self.state[2]), math.sin(self.state[2])], dtype=np.float32)

    def _on_track(self) -> bool:
        return abs(self._center_offset()) <= 1.0

    # ------------------------------------------------------------------
    # Env API
    # ------------------------------------------------------------------

    def reset(self, seed: Optional[int] = None) -> np.ndarray:
        """Start a new episode. seed picks the track radius and start point."""
        if seed is not None:
            self.rng = np.random.default_rng(seed)
        cfg = self.config
        self.radius = float(self.rng.uniform(cfg.radius_min, cfg.radius_max))
        angle = float(self.rng.uniform(0.0, 2 * math.pi))
        heading = angle + math.pi / 2
        self.state = np.array(
            [self.radius * math.cos(angle), self.radius * math.sin(angle), heading, 0.0],
            dtype=np.float64,
        )
        self.step_count = 0
        self.fuel = 1.0
        self.grip = 1.0
        self.lap_progress = 0.0
        self.lap_start_step = 0
        self.lap_valid = True
        self.laps_completed = 0
        self.last_lap_time: Optional[float] = None
        self.reward_calculator.reset()
        self._snapshot = self._build_snapshot()
        return self.observation()

    def _kinematic_step(self, steer: float, throttle: float) -> None:
        """Apply simple bicycle model kinematics."""
        cfg = self.config
        x, y, heading, speed = self.state

        steer_angle = float(np.clip(steer, -1.0, 1.0)) * cfg.max_steer
        throttle = float(np.clip(throttle, -1.0, 1.0))

        speed += (throttle * cfg.acceleration - cfg.drag * speed) * cfg.dt
        speed = float(np.clip(speed, 0.0, cfg.max_speed))

        heading += speed / cfg.wheelbase * math.tan(steer_angle) * cfg.dt
        x += speed * math.cos(heading) * cfg.dt
        y += speed * math.sin(heading) * cfg.dt

        self.state = np.array([x, y, heading, speed], dtype=np.float64)
        self.grip = float(np.clip(1.0 - 0.5 * abs(steer) * speed / cfg.max_speed, 0.0, 1.0))
        self.fuel = max(0.0, self.fuel - cfg.fuel_per_step * (0.5 + 0.5 * abs(throttle)))

    def step(self, action: Action) -> StepResult:
        steer, throttle = float(action[0]), float(action[1])
        prev = self._snapshot
        prev_progress = self._progress()

        self._kinematic_step(steer, throttle)
        self.step_count += 1

        delta = progress_delta(prev_progress, self._progress())
        self.lap_progress += delta
        on_track = self._on_track()
        if not on_track:
            self.lap_valid = False

        lap_completed = self.lap_progress >= 1.0
        lap_valid = self.lap_valid
        lap_time = None
        if lap_completed:
            lap_time = (self.step_count - self.lap_start_step) * self.config.dt
            self.last_lap_time = lap_time
            self.laps_completed += 1
            self.lap_progress -= 1.0
            self.lap_start_step = self.step_count
            self.lap_valid = on_track

        self._snapshot = self._build_snapshot()
        reward = self.reward_calculator.calculate(prev, self._snapshot, lap_completed, lap_valid)

        distance_off = max(0.0, abs(self._distance_from_center() - self.radius) - self.config.half_width)
        done = (
            self.laps_completed >= self.config.laps_per_episode
            or self.step_count >= self.config.max_episode_steps
            or distance_off > self.config.max_off_track_distance
        )

        info: Info = {
            "lap_completed": lap_completed,
            "lap_time": lap_time,
            "lap_valid": lap_valid,
            "off_track": not on_track,
            "progress": self._progress(),
            "step": self.step_count,
        }
        return StepResult(self.observation(), float(reward), bool(done), info)

    # ------------------------------------------------------------------
    # Observation / snapshot
    # ------------------------------------------------------------------

    def _build_snapshot(self) -> StateSnapshot:
        angle = self._angle()
        distance_off = max(0.0, abs(self._distance_from_center() - self.radius) - self.config.half_width)
        return StateSnapshot(
            track_progress=self._progress(),
            speed=float(self.state[3]),
            heading_alignment=float(np.dot(self._heading_dir(), self._tangent(angle))),
            center_offset=float(np.clip(self._center_offset(), -1.0, 1.0)),
            distance_from_track=distance_off,
            is_on_track=self._on_track(),
            grip=self.grip,
            lap_valid=self.lap_valid,
        )

    def snapshot(self) -> StateSnapshot:
        return self._snapshot

    def observation(self) -> np.ndarray:
        cfg = self.config
        angle = self._angle()
        tangent = self._tangent(angle)
        heading_dir = self._heading_dir()
        speed = float(self.state[3])

        ahead = angle + cfg.lookahead / self.radius
        target = np.array([self.radius * math.cos(ahead), self.radius * math.sin(ahead)]) - self.state[:2]
        norm = float(np.linalg.norm(target))
        target_dir = target / norm if norm > 1e-6 else tangent

        r = self._distance_from_center()
        inner, outer = self.radius - cfg.half_width, self.radius + cfg.half_width

        obs = np.zeros(OBSERVATION_SIZE, dtype=np.float32)
        obs[0] = speed / cfg.max_speed
        obs[1] = float(np.dot(heading_dir, tangent))
        obs[2] = self._progress()
        obs[3] = float(np.clip(self._center_offset(), -1.0, 1.0))
        obs[4:6] = heading_dir * speed / cfg.max_speed
        obs[6:8] = tangent
        obs[8:10] = target_dir
        obs[10:15] = min(1.0, cfg.curvature_reference / self.radius)
        obs[15] = self.grip
        obs[16] = self.fuel
        obs[17] = 1.0 if self._on_track() else 0.0
        obs[18] = float(np.clip((r - inner) / (2 * cfg.half_width), 0.0, 1.0))
        obs[19] = float(np.clip((outer - r) / (2 * cfg.half_width), 0.0, 1.0))
        return obs


__all__ = ["ToyTrackConfig", "ToyTrackEnv"]
