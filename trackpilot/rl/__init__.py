"""
RL module for the track-driving policy.

Trainers (episode_trainer, fine_tuner, self_imitation) are imported from
their own modules; this package only re-exports the leaf building blocks.
"""
from .advantage import compute_gae, compute_returns, normalize_advantages
from .env_interface import Environment, SnapshotProvider, StateSnapshot, StepResult
from .rewards import (
    REWARD_PRESETS,
    ConfigurableRewardCalculator,
    RewardCalculator,
    RewardWeights,
    progress_delta,
)
from .toy_track_env import ToyTrackConfig, ToyTrackEnv

__all__ = [
    'compute_gae',
    'compute_returns',
    'normalize_advantages',
    'Environment',
    'SnapshotProvider',
    'StateSnapshot',
    'StepResult',
    'REWARD_PRESETS',
    'ConfigurableRewardCalculator',
    'RewardCalculator',
    'RewardWeights',
    'progress_delta',
    'ToyTrackConfig',
    'ToyTrackEnv',
]
