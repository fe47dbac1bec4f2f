"""Tests for snapshot and checkpoint persistence."""

from __future__ import annotations

import numpy as np
import pytest

from trackpilot.agents.actor_critic import ActorCriticAgent, AgentConfig
from trackpilot.agents.centerline_controller import (
    CenterlineControllerConfig,
    CenterlineFollowingController,
)
from trackpilot.errors import ContractViolation
from trackpilot.utils.device import resolve_torch_device
from trackpilot.utils.checkpointing import (
    agent_from_checkpoint,
    agent_from_snapshot,
    load_agent_snapshot,
    maybe_load_checkpoint,
    save_agent_snapshot,
    save_checkpoint,
)


def _sample_obs(n: int = 6) -> np.ndarray:
    return np.random.default_rng(0).uniform(-1, 1, size=(n, 20)).astype(np.float32)


def test_snapshot_file_round_trip(tmp_path):
    agent = ActorCriticAgent(AgentConfig(hidden_layers=[24]), seed=11)
    path = save_agent_snapshot(tmp_path / "agent.json", agent.save())

    restored = agent_from_snapshot(load_agent_snapshot(path))

    assert isinstance(restored, ActorCriticAgent)
    np.testing.assert_allclose(restored.action_means(_sample_obs()), agent.action_means(_sample_obs()), atol=1e-6)


def test_kind_dispatch_builds_controller():
    controller = CenterlineFollowingController(CenterlineControllerConfig(centering_gain=0.25))
    restored = agent_from_snapshot(controller.save())

    assert isinstance(restored, CenterlineFollowingController)
    assert restored.config.centering_gain == 0.25


def test_unknown_kind_rejected():
    with pytest.raises(ContractViolation):
        agent_from_snapshot({"kind": "transformer"})


def test_checkpoint_restores_rng_and_optimizer(tmp_path):
    agent = ActorCriticAgent(AgentConfig(hidden_layers=[16]), seed=5)
    agent.update_supervised(_sample_obs(), np.zeros((6, 2), dtype=np.float32))
    agent.act(_sample_obs()[0])

    path = save_checkpoint(out_dir=tmp_path, step=3, cfg={"episodes": 3}, agent=agent)
    ckpt = maybe_load_checkpoint(path)
    assert ckpt["step"] == 3
    assert ckpt["cfg"] == {"episodes": 3}

    restored = agent_from_checkpoint(ckpt)
    obs = _sample_obs()[1]
    assert restored.act(obs) == agent.act(obs)
    assert len(restored.optimizer.state_dict()["state"]) > 0


def test_missing_files_raise(tmp_path):
    assert maybe_load_checkpoint(None) is None
    with pytest.raises(FileNotFoundError):
        maybe_load_checkpoint(tmp_path / "nope.pt")
    with pytest.raises(FileNotFoundError):
        load_agent_snapshot(tmp_path / "nope.json")


def test_snapshot_rebuilt_on_requested_device():
    agent = ActorCriticAgent(AgentConfig(hidden_layers=[8]), seed=0)
    restored = agent_from_snapshot(agent.save(), device="auto")

    expected = resolve_torch_device("auto")
    assert restored.device == expected
    assert next(restored.net.parameters()).device.type == expected.type
