"""Lap replay data model and storage contract."""

from .replay import (
    DemonstrationSample,
    InMemoryReplayStore,
    LapIncident,
    LapReplay,
    ReplayFrame,
    ReplayStore,
    samples_from_replay,
    stack_samples,
)

__all__ = [
    "DemonstrationSample",
    "InMemoryReplayStore",
    "LapIncident",
    "LapReplay",
    "ReplayFrame",
    "ReplayStore",
    "samples_from_replay",
    "stack_samples",
]
