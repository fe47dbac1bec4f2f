from __future__ import annotations

import numpy as np
import pytest

from trackpilot.data.replay import (
    InMemoryReplayStore,
    LapReplay,
    ReplayFrame,
    samples_from_replay,
    stack_samples,
)


def _lap(lap_id: str, track_id: str = "oval", **kwargs) -> LapReplay:
    frames = [
        ReplayFrame(0, [0.1, 0.5, 0.0], np.ones(4)),
        ReplayFrame(1, [0.2, 0.6, 0.0], None),
        ReplayFrame(2, [0.3, 0.7, 0.0], np.zeros(4)),
    ]
    return LapReplay(id=lap_id, track_id=track_id, frames=frames, lap_time=60.0, **kwargs)


def test_samples_skip_frames_without_observations():
    samples = samples_from_replay(_lap("a", training_weight=2.0))
    assert len(samples) == 2
    assert [s.source_id for s in samples] == ["a", "a"]
    assert all(s.weight == 2.0 for s in samples)
    np.testing.assert_allclose(samples[1].action, [0.3, 0.7])


def test_stack_samples_shapes():
    obs, act = stack_samples(samples_from_replay(_lap("a")))
    assert obs.shape == (2, 4) and obs.dtype == np.float32
    assert act.shape == (2, 2)


def test_has_observations():
    assert _lap("a").has_observations
    blind = LapReplay(id="b", track_id="oval", frames=[ReplayFrame(0, [0.0, 1.0])], lap_time=1.0)
    assert not blind.has_observations


def test_in_memory_store():
    store = InMemoryReplayStore([_lap("a"), _lap("b"), _lap("c", track_id="street")])
    assert len(store) == 3
    assert {r.id for r in store.get_replays_for_track("oval")} == {"a", "b"}
    assert store.get_replay("zzz") is None

    store.set_training_data("b", True)
    assert [r.id for r in store.training_laps("oval")] == ["b"]
    with pytest.raises(KeyError):
        store.set_training_data("zzz", True)
