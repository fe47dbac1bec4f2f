"""Agent capability interface and trajectory containers.

Every driving agent (learned or rule-based) exposes the same surface:

    act(obs) -> Action
    act_deterministic(obs) -> Action
    save() -> snapshot dict
    load(snapshot)

Training-related operations (value estimates, supervised and actor-critic
updates) are only meaningful for some agents. Instead of probing with
hasattr, callers check `agent.capabilities`.

Observation layout (20 features)
--------------------------------
 0 speed (normalized)       10-14 lookahead curvatures
 1 heading alignment        15 tire grip
 2 track progress [0, 1)    16 fuel
 3 centerline offset        17 on-track flag
 4-5 velocity x/y           18 left edge distance
 6-7 track tangent x/y      19 right edge distance
 8-9 lookahead target dir
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import numpy as np

from trackpilot.errors import ContractViolation

OBSERVATION_SIZE = 20
ACTION_SIZE = 2

OBS_SPEED = 0
OBS_HEADING = 1
OBS_PROGRESS = 2
OBS_CENTER_OFFSET = 3
OBS_VELOCITY = slice(4, 6)
OBS_TANGENT = slice(6, 8)
OBS_TARGET_DIR = slice(8, 10)
OBS_CURVATURE = slice(10, 15)
OBS_GRIP = 15
OBS_FUEL = 16
OBS_ON_TRACK = 17
OBS_EDGE_LEFT = 18
OBS_EDGE_RIGHT = 19


class Action(NamedTuple):
    steer: float
    throttle: float

    def clamped(self) -> "Action":
        return Action(
            steer=float(min(1.0, max(-1.0, self.steer))),
            throttle=float(min(1.0, max(-1.0, self.throttle))),
        )

    def as_array(self) -> np.ndarray:
        return np.array([self.steer, self.throttle], dtype=np.float32)

    @classmethod
    def from_array(cls, arr: Sequence[float]) -> "Action":
        return cls(float(arr[0]), float(arr[1]))


@dataclass(frozen=True)
class AgentCapabilities:
    stochastic: bool = False
    value: bool = False
    supervised: bool = False
    critic_only: bool = False
    actor_critic: bool = False


RULE_BASED = AgentCapabilities()
FULL_ACTOR_CRITIC = AgentCapabilities(
    stochastic=True, value=True, supervised=True, critic_only=True, actor_critic=True
)


class Agent:
    """Base class for driving agents.

    Subclasses set `kind` (the snapshot tag) and `capabilities`, and
    override the operations their capabilities advertise.
    """

    kind: str = "agent"
    capabilities: AgentCapabilities = RULE_BASED

    def act(self, observation: Sequence[float]) -> Action:
        raise NotImplementedError

    def act_deterministic(self, observation: Sequence[float]) -> Action:
        return self.act(observation)

    def value(self, observation: Sequence[float]) -> float:
        raise ContractViolation(f"{type(self).__name__} has no value estimate")

    def save(self) -> Dict[str, Any]:
        raise NotImplementedError

    def load(self, snapshot: Dict[str, Any]) -> None:
        raise NotImplementedError

    def dispose(self) -> None:
        """Release any held resources. Default: nothing to release."""


@dataclass
class TrajectoryStep:
    observation: np.ndarray
    action: np.ndarray
    reward: float
    next_observation: Optional[np.ndarray]
    done: bool
    value: Optional[float] = None


@dataclass
class TrajectoryBatch:
    """Column-major view of a trajectory in time order.

    advantages and returns, when present, align index-for-index with
    observations.
    """

    observations: np.ndarray
    actions: np.ndarray
    rewards: np.ndarray
    dones: np.ndarray
    values: Optional[np.ndarray] = None
    advantages: Optional[np.ndarray] = None
    returns: Optional[np.ndarray] = None
    next_observations: Optional[np.ndarray] = None
    info: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return int(len(self.observations))

    @classmethod
    def from_steps(cls, steps: List[TrajectoryStep]) -> "TrajectoryBatch":
        if not steps:
            raise ContractViolation("cannot build a TrajectoryBatch from zero steps")
        values = None
        if all(s.value is not None for s in steps):
            values = np.asarray([s.value for s in steps], dtype=np.float32)
        next_obs = None
        if all(s.next_observation is not None for s in steps):
            next_obs = np.stack([np.asarray(s.next_observation, dtype=np.float32) for s in steps])
        return cls(
            observations=np.stack([np.asarray(s.observation, dtype=np.float32) for s in steps]),
            actions=np.stack([np.asarray(s.action, dtype=np.float32) for s in steps]),
            rewards=np.asarray([s.reward for s in steps], dtype=np.float32),
            dones=np.asarray([s.done for s in steps], dtype=bool),
            values=values,
            next_observations=next_obs,
        )

    def validate(self) -> None:
        """Raise ContractViolation unless the batch is ready for an actor-critic update."""
        n = len(self)
        if n == 0:
            raise ContractViolation("empty trajectory batch")
        if self.returns is None or self.advantages is None:
            raise ContractViolation("batch is missing returns or advantages")
        for name in ("actions", "rewards", "dones", "advantages", "returns"):
            arr = getattr(self, name)
            if len(arr) != n:
                raise ContractViolation(f"{name} has length {len(arr)}, expected {n}")


__all__ = [
    "OBSERVATION_SIZE",
    "ACTION_SIZE",
    "Action",
    "AgentCapabilities",
    "RULE_BASED",
    "FULL_ACTOR_CRITIC",
    "Agent",
    "TrajectoryStep",
    "TrajectoryBatch",
]
