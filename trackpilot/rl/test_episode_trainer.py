"""Tests for the on-policy episode loop."""

from __future__ import annotations

from typing import Optional

import numpy as np
import pytest
import torch

from trackpilot.agents.actor_critic import ActorCriticAgent, AgentConfig
from trackpilot.agents.centerline_controller import CenterlineFollowingController
from trackpilot.agents.policy_interface import OBSERVATION_SIZE
from trackpilot.errors import AlreadyTrainingError, ContractViolation
from trackpilot.rl.env_interface import StepResult
from trackpilot.rl.episode_trainer import EpisodeTrainer, TrainerConfig, TrainerState
from trackpilot.rl.rewards import ConfigurableRewardCalculator, RewardWeights
from trackpilot.rl.toy_track_env import ToyTrackConfig, ToyTrackEnv


class ConstantRewardEnv:
    """Reward 1 every step, done after `length` steps."""

    def __init__(self, length: int = 10):
        self.length = length
        self.t = 0
        self.seeds = []

    def reset(self, seed: Optional[int] = None) -> np.ndarray:
        self.seeds.append(seed)
        self.t = 0
        return np.zeros(OBSERVATION_SIZE, dtype=np.float32)

    def step(self, action) -> StepResult:
        self.t += 1
        obs = np.full(OBSERVATION_SIZE, 0.01 * self.t, dtype=np.float32)
        return StepResult(obs, 1.0, self.t >= self.length, {"lap_completed": False})


def _agent(seed: int = 0) -> ActorCriticAgent:
    return ActorCriticAgent(AgentConfig(hidden_layers=[16]), seed=seed)


def _config(**overrides) -> TrainerConfig:
    base = dict(total_episodes=1, use_bc_warmup=False, seed=0)
    base.update(overrides)
    return TrainerConfig(**base)


def test_returns_without_baseline_match_closed_form():
    trainer = EpisodeTrainer(
        _agent(), ConstantRewardEnv(10), _config(discount_factor=0.9, use_value_baseline=False)
    )
    history = trainer.train()

    assert len(history) == 1
    assert history[0].steps == 10
    assert history[0].total_reward == pytest.approx(10.0)
    batch = trainer.last_batch
    expected = np.array([(1 - 0.9 ** (10 - t)) / (1 - 0.9) for t in range(10)])
    np.testing.assert_allclose(batch.returns, expected, rtol=1e-5)
    np.testing.assert_allclose(batch.advantages, batch.returns)
    assert batch.values is None


def test_value_baseline_uses_gae():
    trainer = EpisodeTrainer(_agent(), ConstantRewardEnv(6), _config(discount_factor=0.9))
    trainer.train()

    batch = trainer.last_batch
    assert batch.values is not None and len(batch.values) == 6
    np.testing.assert_allclose(batch.returns, batch.advantages + batch.values, rtol=1e-5, atol=1e-5)
    # last step is terminal: A = r - V
    assert batch.advantages[-1] == pytest.approx(1.0 - batch.values[-1], abs=1e-5)


def test_fixed_track_seed_and_callbacks():
    env = ConstantRewardEnv(4)
    events = []
    trainer = EpisodeTrainer(
        _agent(),
        env,
        _config(total_episodes=3, track_seed=42),
        on_episode_start=lambda ep, seed: events.append(("start", ep, seed)),
        on_episode_end=lambda stats: events.append(("end", stats.episode)),
        on_training_complete=lambda history: events.append(("done", len(history))),
    )
    steps = []
    trainer.on_step = lambda step, reward, action: steps.append(step)

    trainer.train()

    assert env.seeds == [42, 42, 42]
    assert events == [
        ("start", 0, 42), ("end", 0),
        ("start", 1, 42), ("end", 1),
        ("start", 2, 42), ("end", 2),
        ("done", 3),
    ]
    assert steps == [1, 2, 3, 4] * 3
    assert trainer.state is TrainerState.IDLE


def test_episode_capped_at_max_steps():
    trainer = EpisodeTrainer(_agent(), ConstantRewardEnv(100), _config(max_steps_per_episode=7))
    history = trainer.train()
    assert history[0].steps == 7
    assert len(trainer.last_batch) == 7


def test_stop_mid_episode_returns_partial_history():
    env = ConstantRewardEnv(5)
    trainer = EpisodeTrainer(_agent(), env, _config(total_episodes=10))

    def on_step(step, reward, action):
        if len(trainer.history) == 2 and step == 3:
            trainer.stop()

    trainer.on_step = on_step
    completed = []
    trainer.on_training_complete = completed.append

    history = trainer.train()

    assert [s.episode for s in history] == [0, 1]
    assert completed == [history]
    assert not trainer.is_running
    # the interrupted third episode ran its in-flight step, then stopped
    assert env.t == 3


def test_train_rejects_reentry():
    errors = []
    trainer = EpisodeTrainer(_agent(), ConstantRewardEnv(3), _config(total_episodes=2))

    def reenter():
        try:
            trainer.train()
        except AlreadyTrainingError as exc:
            errors.append(exc)

    trainer.yield_point = reenter
    history = trainer.train()

    assert len(history) == 2
    assert errors and all(e.retryable for e in errors)


def test_rule_based_agent_is_rejected():
    trainer = EpisodeTrainer(CenterlineFollowingController(), ConstantRewardEnv(3), _config())
    with pytest.raises(ContractViolation):
        trainer.train()
    assert trainer.state is TrainerState.IDLE


def test_bc_warmup_finishes_before_first_episode():
    env = ToyTrackEnv(ToyTrackConfig(max_episode_steps=20))
    order = []
    agent = _agent()
    trainer = EpisodeTrainer(
        agent,
        env,
        TrainerConfig(
            total_episodes=1,
            max_steps_per_episode=20,
            use_bc_warmup=True,
            bc_warmup_episodes=2,
            bc_epochs=3,
            bc_batch_size=16,
            seed=3,
        ),
        on_episode_start=lambda ep, seed: order.append(("episode", trainer.bc_stats is not None)),
    )
    trainer.train()

    assert trainer.bc_stats is not None
    assert len(trainer.bc_stats.epoch_losses) == 3
    assert order == [("episode", True)]


def test_evaluate_is_deterministic_and_does_not_update():
    env = ToyTrackEnv(ToyTrackConfig(max_episode_steps=30))
    agent = _agent()
    trainer = EpisodeTrainer(agent, env, _config(max_steps_per_episode=30))
    before = [p.detach().clone() for p in agent.net.parameters()]

    first = trainer.evaluate(track_seed=5)
    second = trainer.evaluate(track_seed=5)

    assert first.total_reward == pytest.approx(second.total_reward)
    assert first.steps == second.steps == 30
    for p, q in zip(before, agent.net.parameters()):
        assert torch.equal(p, q)


def _warmup_config(**overrides) -> TrainerConfig:
    base = dict(
        total_episodes=3,
        max_steps_per_episode=20,
        use_bc_warmup=True,
        bc_warmup_episodes=2,
        bc_epochs=20,
        bc_batch_size=16,
        seed=3,
    )
    base.update(overrides)
    return TrainerConfig(**base)


def test_stop_during_bc_epochs_ends_warmup_and_training():
    env = ToyTrackEnv(ToyTrackConfig(max_episode_steps=20))
    started = []
    trainer = EpisodeTrainer(
        _agent(), env, _warmup_config(), on_episode_start=lambda ep, seed: started.append(ep)
    )
    trainer.yield_point = trainer.stop

    history = trainer.train()

    assert len(trainer.bc_stats.epoch_losses) == 1
    assert history == []
    assert started == []


def test_stop_during_demonstration_collection_skips_cloning():
    env = ToyTrackEnv(ToyTrackConfig(max_episode_steps=20))
    agent = _agent()
    before = [p.detach().clone() for p in agent.net.parameters()]
    trainer = EpisodeTrainer(agent, env, _warmup_config(yield_every_steps=5))
    trainer.yield_point = trainer.stop

    history = trainer.train()

    assert trainer.bc_stats is None
    assert history == []
    for p, q in zip(before, agent.net.parameters()):
        assert torch.equal(p, q)


def test_returns_come_from_the_agent():
    agent = _agent()
    calls = []
    original = agent.compute_returns

    def spy(rewards, gamma=None):
        calls.append(gamma)
        return original(rewards, gamma)

    agent.compute_returns = spy
    EpisodeTrainer(agent, ConstantRewardEnv(4), _config(use_value_baseline=False)).train()

    assert calls == [None]
    np.testing.assert_allclose(
        original([1.0] * 4), [1 + 0.99 + 0.99 ** 2 + 0.99 ** 3, 1 + 0.99 + 0.99 ** 2, 1 + 0.99, 1.0], rtol=1e-5
    )


def test_reward_calculator_replaces_env_reward():
    weights = RewardWeights(**{name: 0.0 for name in RewardWeights().as_dict()}).updated(time_penalty=1.0)
    trainer = EpisodeTrainer(
        _agent(),
        ToyTrackEnv(ToyTrackConfig(max_episode_steps=10)),
        _config(max_steps_per_episode=10),
        reward_calculator=ConfigurableRewardCalculator(weights),
    )
    history = trainer.train()

    np.testing.assert_allclose(trainer.last_batch.rewards, -0.01, atol=1e-7)
    assert history[0].total_reward == pytest.approx(-0.01 * history[0].steps)


def test_episode_stats_track_center_offset():
    env = ConstantRewardEnv(3)
    trainer = EpisodeTrainer(_agent(), env, _config())
    stats = trainer.train()[0]
    # observations seen: 0.0, 0.01, 0.02
    assert stats.avg_center_offset == pytest.approx(0.01, abs=1e-6)
    assert stats.avg_speed == pytest.approx(0.01, abs=1e-6)
