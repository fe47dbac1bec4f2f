"""Tests for return and GAE arithmetic."""

from __future__ import annotations

import numpy as np
import pytest

from trackpilot.errors import ContractViolation
from trackpilot.rl.advantage import compute_gae, compute_returns, normalize_advantages


def test_returns_recursion():
    rewards = [1.0, 0.0, 2.0, -1.0]
    gamma = 0.9
    returns = compute_returns(rewards, gamma)

    assert len(returns) == len(rewards)
    assert returns[-1] == pytest.approx(-1.0)
    for t in range(len(rewards) - 1):
        assert returns[t] == pytest.approx(rewards[t] + gamma * returns[t + 1], rel=1e-6)


def test_returns_constant_reward_closed_form():
    gamma = 0.9
    returns = compute_returns([1.0] * 10, gamma)
    expected = [(1 - gamma ** (10 - t)) / (1 - gamma) for t in range(10)]
    np.testing.assert_allclose(returns, expected, rtol=1e-5)


def test_gae_zero_when_values_match_returns():
    rewards = [0.5, 1.0, 0.0, 2.0]
    gamma = 0.95
    values = compute_returns(rewards, gamma)
    dones = [False, False, False, True]

    advantages, returns = compute_gae(rewards, values, dones, gamma=gamma, gae_lambda=0.9)

    np.testing.assert_allclose(advantages, np.zeros(4), atol=1e-5)
    np.testing.assert_allclose(returns, values, atol=1e-5)


def test_gae_lambda_zero_is_one_step_td():
    rewards = [1.0, 2.0, 3.0]
    values = [0.5, -0.2, 1.5]
    dones = [False, False, True]
    gamma = 0.9

    advantages, _ = compute_gae(rewards, values, dones, gamma=gamma, gae_lambda=0.0)

    assert advantages[0] == pytest.approx(1.0 + gamma * -0.2 - 0.5, rel=1e-6)
    assert advantages[1] == pytest.approx(2.0 + gamma * 1.5 + 0.2, rel=1e-6)
    assert advantages[2] == pytest.approx(3.0 - 1.5, rel=1e-6)


def test_gae_lambda_one_matches_discounted_returns():
    rewards = [1.0, -0.5, 0.25, 2.0, 1.0]
    values = [0.3, 0.1, -0.4, 0.9, 0.0]
    gamma = 0.97

    _, returns = compute_gae(rewards, values, [False] * 4 + [True], gamma=gamma, gae_lambda=1.0)

    np.testing.assert_allclose(returns, compute_returns(rewards, gamma), rtol=1e-5, atol=1e-6)


def test_gae_terminal_mask_stops_bootstrap():
    # A terminal in the middle cuts the advantage chain.
    rewards = [0.0, 1.0, 0.0, 1.0]
    values = [0.0, 0.0, 5.0, 0.0]
    advantages, _ = compute_gae(rewards, values, [False, True, False, True], gamma=0.9, gae_lambda=0.95)

    assert advantages[1] == pytest.approx(1.0)


def test_gae_length_mismatch_raises():
    with pytest.raises(ContractViolation):
        compute_gae([1.0, 2.0], [0.0], [False, True])


def test_normalize_constant_advantages_is_finite():
    out = normalize_advantages(np.full(8, 3.0, dtype=np.float32))
    assert np.all(np.isfinite(out))
    np.testing.assert_allclose(out, np.zeros(8), atol=1e-6)
