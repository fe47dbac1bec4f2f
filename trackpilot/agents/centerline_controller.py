"""Rule-based centerline follower.

Used as the expert for behavior cloning and as a baseline driver.

Steering:
  1. Blend the track tangent (0.6) with the lookahead target direction (0.4).
  2. Push the blend back toward the centerline along the track normal
     (-t_y, t_x), proportional to -center_offset * centering_gain.
  3. Steer by the signed angle between the car's travel direction and the
     desired direction (positive = counter-clockwise).

Throttle: target speed drops with the sharpest upcoming curvature;
full throttle well below target, tapering near it, coasting above it,
halved while off track.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional, Sequence

import numpy as np

from trackpilot.agents.policy_interface import (
    OBS_CENTER_OFFSET,
    OBS_CURVATURE,
    OBS_ON_TRACK,
    OBS_SPEED,
    OBS_TANGENT,
    OBS_TARGET_DIR,
    OBS_VELOCITY,
    RULE_BASED,
    Action,
    Agent,
)
from trackpilot.errors import ContractViolation

CONTROLLER_KIND = "centerline_controller"


@dataclass
class CenterlineControllerConfig:
    curvature_speed_factor: float = 0.7
    centering_gain: float = 1.0
    max_throttle: float = 0.9
    min_corner_throttle: float = 0.3
    target_speed: float = 0.8  # normalized
    min_corner_speed: float = 0.3  # normalized
    steer_gain: float = 2.0
    tangent_weight: float = 0.6

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CenterlineControllerConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


def _normalize(v: np.ndarray, fallback: np.ndarray) -> np.ndarray:
    mag = float(np.linalg.norm(v))
    if mag > 1e-3:
        return v / mag
    return fallback


class CenterlineFollowingController(Agent):
    kind = CONTROLLER_KIND
    capabilities = RULE_BASED

    def __init__(self, config: Optional[CenterlineControllerConfig] = None):
        self.config = config or CenterlineControllerConfig()

    def desired_direction(self, obs: np.ndarray) -> np.ndarray:
        cfg = self.config
        tangent = obs[OBS_TANGENT].astype(np.float64)
        target = obs[OBS_TARGET_DIR].astype(np.float64)

        blend = tangent * cfg.tangent_weight + target * (1.0 - cfg.tangent_weight)
        direction = _normalize(blend, tangent)

        normal = np.array([-tangent[1], tangent[0]])
        direction = direction + normal * (-obs[OBS_CENTER_OFFSET] * cfg.centering_gain)
        return _normalize(direction, tangent)

    def target_speed(self, obs: np.ndarray) -> float:
        cfg = self.config
        max_curvature = float(np.max(np.abs(obs[OBS_CURVATURE])))
        speed_range = cfg.target_speed - cfg.min_corner_speed
        return cfg.target_speed - max_curvature * cfg.curvature_speed_factor * speed_range

    def act(self, observation: Sequence[float]) -> Action:
        obs = np.asarray(observation, dtype=np.float32)
        if obs.shape[-1] <= OBS_ON_TRACK:
            raise ContractViolation(f"observation too short for centerline controller: {obs.shape}")
        cfg = self.config

        desired = self.desired_direction(obs)
        tangent = obs[OBS_TANGENT].astype(np.float64)
        travel = _normalize(obs[OBS_VELOCITY].astype(np.float64), tangent)
        cross = travel[0] * desired[1] - travel[1] * desired[0]
        dot = float(np.dot(travel, desired))
        steer = cfg.steer_gain * math.atan2(cross, dot) / (math.pi / 2)

        speed = float(obs[OBS_SPEED])
        target = self.target_speed(obs)
        if speed < target * 0.8:
            throttle = cfg.max_throttle
        elif speed < target:
            ratio = speed / target
            throttle = cfg.max_throttle * (1 - (ratio - 0.8) / 0.2 * 0.5)
        elif speed > target * 1.1:
            throttle = 0.0
        else:
            throttle = cfg.min_corner_throttle

        if obs[OBS_ON_TRACK] < 0.5:
            throttle *= 0.5

        return Action(steer, throttle).clamped()

    def save(self) -> Dict[str, Any]:
        return {"kind": self.kind, "config": asdict(self.config)}

    def load(self, snapshot: Dict[str, Any]) -> None:
        kind = snapshot.get("kind")
        if kind != self.kind:
            raise ContractViolation(f"snapshot kind '{kind}' cannot be loaded into {type(self).__name__}")
        self.config = CenterlineControllerConfig.from_dict(snapshot.get("config", {}))


__all__ = ["CONTROLLER_KIND", "CenterlineControllerConfig", "CenterlineFollowingController"]
