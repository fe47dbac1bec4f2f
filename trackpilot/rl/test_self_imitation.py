"""Tests for the instant self-imitation loop."""

from __future__ import annotations

from typing import Dict, Optional

import numpy as np
import pytest

from trackpilot.agents.actor_critic import ActorCriticAgent, AgentConfig
from trackpilot.agents.policy_interface import OBSERVATION_SIZE
from trackpilot.data.replay import InMemoryReplayStore, LapReplay, ReplayFrame
from trackpilot.eval.lap_evaluator import LapQualityScore
from trackpilot.rl.self_imitation import SelfImitationLearner, SILConfig


class StubScorer:
    """Returns a fixed overall score per lap id."""

    def __init__(self, scores: Dict[str, int]):
        self.scores = scores
        self.best_lap_time: Optional[float] = None
        self.agent_best: Optional[float] = None

    def evaluate(self, lap: LapReplay) -> LapQualityScore:
        overall = self.scores.get(lap.id, 0)
        return LapQualityScore(overall, 0, 0, 0, 0, 0, 5.0)

    def set_best_lap_time(self, time: float) -> None:
        self.best_lap_time = time

    def set_agent_best_lap_time(self, time: Optional[float]) -> None:
        self.agent_best = time


class CountingAgent(ActorCriticAgent):
    def __init__(self):
        super().__init__(AgentConfig(hidden_layers=[16]), seed=0)
        self.supervised_calls = 0

    def update_supervised(self, observations, actions, freeze_trunk=False):
        self.supervised_calls += 1
        return super().update_supervised(observations, actions, freeze_trunk=freeze_trunk)


def _lap(lap_id: str, lap_time: float = 60.0, track_id: str = "oval", **kwargs) -> LapReplay:
    rng = np.random.default_rng(sum(map(ord, lap_id)))
    frames = [
        ReplayFrame(i, [0.1, 0.8], rng.normal(size=OBSERVATION_SIZE).astype(np.float32))
        for i in range(10)
    ]
    return LapReplay(id=lap_id, track_id=track_id, frames=frames, lap_time=lap_time, **kwargs)


def _learner(scores, laps=(), config=None, **callbacks):
    store = InMemoryReplayStore(laps)
    learner = SelfImitationLearner(
        store,
        config or SILConfig(epochs_per_lap=2),
        scorer=StubScorer(scores),
        rng=np.random.default_rng(0),
        **callbacks,
    )
    return learner, store


def test_good_lap_is_collected_and_trained_once():
    collected = []
    lap = _lap("good")
    learner, store = _learner({"good": 80}, [lap], on_lap_collected=lambda l, s: collected.append((l.id, s.overall)))
    agent = CountingAgent()
    learner.start(agent, "oval")

    score = learner.on_lap_complete(lap)

    assert score.overall == 80
    assert collected == [("good", 80)]
    assert learner.session.session_training_updates == 1
    # one call per epoch: 10 samples fit in a single batch of 32
    assert agent.supervised_calls == 2
    assert store.get_replay("good").is_training_data
    assert learner.session.session_good_laps == 1


def test_poor_lap_is_not_trained_but_updates_best_time():
    collected = []
    lap = _lap("poor", lap_time=55.0)
    learner, store = _learner({"poor": 30}, [lap], on_lap_collected=lambda l, s: collected.append(l.id))
    agent = CountingAgent()
    learner.start(agent, "oval", agent_best_lap_time=58.0)

    learner.on_lap_complete(lap)

    assert collected == []
    assert agent.supervised_calls == 0
    assert learner.session.session_training_updates == 0
    assert learner.session.session_best_lap_time == 55.0
    assert learner.session.all_time_best_lap_time == 55.0
    assert learner.scorer.best_lap_time == 55.0
    assert learner.scorer.agent_best == 58.0
    assert not store.get_replay("poor").is_training_data


def test_laps_from_other_tracks_are_ignored():
    lap = _lap("elsewhere", track_id="street")
    learner, _ = _learner({"elsewhere": 90}, [lap])
    learner.start(CountingAgent(), "oval")

    assert learner.on_lap_complete(lap) is None
    assert learner.session.session_laps_completed == 0


def test_improvement_fires_only_after_a_previous_best():
    improvements = []
    laps = [_lap("a", 62.0), _lap("b", 61.0), _lap("c", 63.0)]
    learner, _ = _learner({}, laps, on_improvement=lambda old, new: improvements.append((old, new)))
    learner.start(CountingAgent(), "oval")

    for lap in laps:
        learner.on_lap_complete(lap)

    assert improvements == [(62.0, 61.0)]
    assert learner.session.session_laps_completed == 3


def test_lap_arriving_mid_training_is_curated_but_not_trained():
    first, second = _lap("first"), _lap("second")
    learner, store = _learner({"first": 80, "second": 90}, [first, second])
    agent = CountingAgent()
    nested = []

    def host_yield():
        if not nested:
            nested.append(learner.on_lap_complete(second))

    learner.yield_point = host_yield
    learner.start(agent, "oval")
    learner.on_lap_complete(first)

    assert nested[0].overall == 90
    assert store.get_replay("second").is_training_data
    assert learner.session.session_good_laps == 2
    assert learner.session.session_training_updates == 1
    assert agent.supervised_calls == 2
    assert not learner.is_training


def test_target_lap_time_ends_session_once():
    ended = []
    laps = [_lap("slow", 61.0), _lap("fast", 57.5), _lap("faster", 57.0)]
    learner, _ = _learner(
        {"slow": 80, "fast": 80, "faster": 80},
        laps,
        config=SILConfig(epochs_per_lap=1, target_lap_time=58.0),
        on_session_end=ended.append,
    )
    learner.start(CountingAgent(), "oval")

    for lap in laps:
        learner.on_lap_complete(lap)
    learner.stop()

    assert len(ended) == 1
    assert ended[0].session_best_lap_time == 57.5
    assert not ended[0].is_active
    assert not learner.is_active
    assert ended[0].session_laps_completed == 2


def test_start_loads_curated_laps_best_first():
    laps = [
        _lap("c1", 60.0, is_training_data=True, quality_score=55),
        _lap("c2", 59.0, is_training_data=True, quality_score=90),
        _lap("c3", 61.0, is_training_data=True, quality_score=70),
        _lap("plain", 50.0),
    ]
    learner, _ = _learner({}, laps, config=SILConfig(max_laps_to_keep=2))
    session = learner.start(CountingAgent(), "oval", agent_best_lap_time=62.0)

    assert [lap.id for lap in learner.collected_laps] == ["c2", "c3"]
    assert session.selected_lap_count == 2
    assert session.all_time_best_lap_time == 59.0
    assert learner.scorer.best_lap_time == 59.0


def test_inactive_learner_ignores_laps():
    lap = _lap("good")
    learner, _ = _learner({"good": 80}, [lap])
    assert learner.on_lap_complete(lap) is None


def test_start_twice_keeps_first_session():
    learner, _ = _learner({})
    first = learner.start(CountingAgent(), "oval")
    second = learner.start(CountingAgent(), "street")
    assert first is second
    assert learner.track_id == "oval"


@pytest.mark.parametrize("threshold,trained", [(50, True), (81, False)])
def test_threshold_is_inclusive_of_score(threshold, trained):
    lap = _lap("edge")
    learner, _ = _learner({"edge": 80}, [lap], config=SILConfig(epochs_per_lap=1, quality_threshold=threshold))
    agent = CountingAgent()
    learner.start(agent, "oval")
    learner.on_lap_complete(lap)
    assert (agent.supervised_calls > 0) is trained
