"""
Supervised training from demonstrations (expert controller or recorded laps).
"""
from .behavior_cloning import (
    BCTrainingStats,
    BehaviorCloningConfig,
    BehaviorCloningTrainer,
    DemonstrationStats,
    run_supervised_epochs,
)
from .demo_trainer import DemoTrainer, DemoTrainingConfig, DemoTrainingStats, weighted_resample

__all__ = [
    'BCTrainingStats',
    'BehaviorCloningConfig',
    'BehaviorCloningTrainer',
    'DemonstrationStats',
    'run_supervised_epochs',
    'DemoTrainer',
    'DemoTrainingConfig',
    'DemoTrainingStats',
    'weighted_resample',
]
