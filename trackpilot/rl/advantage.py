"""Discounted returns and generalized advantage estimation (numpy)."""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np

from trackpilot.errors import ContractViolation


def compute_returns(rewards: Sequence[float], gamma: float = 0.99) -> np.ndarray:
    """R[t] = r[t] + gamma * R[t+1], with R[T] = r[T] for the last step T."""
    rewards = np.asarray(rewards, dtype=np.float64)
    returns = np.zeros_like(rewards)
    running = 0.0
    for t in reversed(range(len(rewards))):
        running = rewards[t] + gamma * running
        returns[t] = running
    return returns.astype(np.float32)


def compute_gae(
    rewards: Sequence[float],
    values: Sequence[float],
    dones: Optional[Sequence[bool]] = None,
    gamma: float = 0.99,
    gae_lambda: float = 0.95,
    last_value: float = 0.0,
) -> Tuple[np.ndarray, np.ndarray]:
    """Generalized advantage estimation.

    Iterates last -> first:
        delta_t = r_t + gamma * V_{t+1} * mask_t - V_t
        A_t     = delta_t + gamma * lambda * mask_t * A_{t+1}
    with mask_t = 0 on terminal steps and V_{T+1} = last_value (0 by default).

    Returns (advantages, returns) where returns = advantages + values.
    """
    rewards = np.asarray(rewards, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    if dones is None:
        dones = np.zeros(len(rewards), dtype=bool)
    dones = np.asarray(dones, dtype=bool)
    if not (len(rewards) == len(values) == len(dones)):
        raise ContractViolation(
            f"rewards/values/dones length mismatch: {len(rewards)}/{len(values)}/{len(dones)}"
        )

    advantages = np.zeros_like(rewards)
    gae = 0.0
    for t in reversed(range(len(rewards))):
        next_val = values[t + 1] if t + 1 < len(rewards) else last_value
        mask = 0.0 if dones[t] else 1.0
        delta = rewards[t] + gamma * next_val * mask - values[t]
        gae = delta + gamma * gae_lambda * mask * gae
        advantages[t] = gae

    returns = advantages + values
    return advantages.astype(np.float32), returns.astype(np.float32)


def normalize_advantages(advantages: np.ndarray, eps: float = 1e-8) -> np.ndarray:
    """(A - mean) / (std + eps) with population std; safe for constant input."""
    advantages = np.asarray(advantages, dtype=np.float32)
    if advantages.size == 0:
        return advantages
    return (advantages - advantages.mean()) / (advantages.std() + eps)


__all__ = ["compute_returns", "compute_gae", "normalize_advantages"]
