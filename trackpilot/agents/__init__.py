"""Driving agents: the actor-critic policy and the rule-based expert."""

from .policy_interface import (
    ACTION_SIZE,
    OBSERVATION_SIZE,
    Action,
    Agent,
    AgentCapabilities,
    TrajectoryBatch,
    TrajectoryStep,
)
from .actor_critic import ActorCriticAgent, AgentConfig, UpdateResult
from .centerline_controller import (
    CenterlineControllerConfig,
    CenterlineFollowingController,
)

__all__ = [
    "ACTION_SIZE",
    "OBSERVATION_SIZE",
    "Action",
    "Agent",
    "AgentCapabilities",
    "TrajectoryBatch",
    "TrajectoryStep",
    "ActorCriticAgent",
    "AgentConfig",
    "UpdateResult",
    "CenterlineControllerConfig",
    "CenterlineFollowingController",
]
