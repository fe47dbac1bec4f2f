"""
Actor-Critic Driving Agent
==========================

A shared-trunk actor-critic with a diagonal Gaussian policy over
(steer, throttle):

    obs -> trunk (Linear + ReLU)* -> mean head (tanh)     -> mu in [-1, 1]^2
                                  -> log-std head         -> log sigma
                                  -> value head           -> V(s)

The agent supports three kinds of update:

- update_actor_critic: advantage actor-critic step (policy gradient with
  normalized advantages, value regression, entropy bonus).
- update_supervised: behavior cloning of the action mean. Never touches the
  value or log-std heads.
- update_critic_only: value regression on the value head alone. The trunk
  output is detached so actor outputs cannot change.

A single Adam optimizer covers all parameters; parameters that receive no
gradient in a given update keep their values and moment estimates.

Exploration noise comes from an explicit numpy Generator owned by the agent,
so rollouts can be replayed with get_rng_state()/set_rng_state().

Usage:
    from trackpilot.agents.actor_critic import ActorCriticAgent, AgentConfig

    agent = ActorCriticAgent(AgentConfig(), seed=0)
    action = agent.act(obs)
    snapshot = agent.save()
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F

from trackpilot.agents.policy_interface import (
    ACTION_SIZE,
    FULL_ACTOR_CRITIC,
    OBSERVATION_SIZE,
    Action,
    Agent,
    TrajectoryBatch,
)
from trackpilot.errors import ContractViolation
from trackpilot.rl.advantage import compute_gae, compute_returns, normalize_advantages
from trackpilot.utils.device import release_device_memory, resolve_torch_device

logger = logging.getLogger(__name__)

AGENT_KIND = "actor_critic"
LOG_STD_INIT = -0.7  # exp(-0.7) ~= 0.5


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class AgentConfig:
    observation_size: int = OBSERVATION_SIZE
    hidden_layers: List[int] = field(default_factory=lambda: [128, 128])
    learning_rate: float = 3e-4
    discount_factor: float = 0.99
    entropy_coef: float = 0.01
    value_coef: float = 0.5
    max_grad_norm: Optional[float] = 0.5
    gae_lambda: float = 0.95

    def __post_init__(self):
        """Validate configuration."""
        self.hidden_layers = [int(h) for h in self.hidden_layers]
        assert self.observation_size > 0, "observation_size must be positive"
        assert len(self.hidden_layers) > 0, "hidden_layers must not be empty"
        assert all(h > 0 for h in self.hidden_layers), "hidden layer sizes must be positive"
        assert self.learning_rate > 0, "learning_rate must be positive"
        assert 0 <= self.discount_factor <= 1.0, "discount_factor must be in [0, 1]"
        assert 0 <= self.gae_lambda <= 1.0, "gae_lambda must be in [0, 1]"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AgentConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class UpdateResult:
    loss: float
    policy_loss: float
    value_loss: float
    entropy: float


# ============================================================================
# Gaussian helpers
# ============================================================================

def gaussian_log_prob(actions: torch.Tensor, mean: torch.Tensor, log_std: torch.Tensor) -> torch.Tensor:
    """Sum over action dims of the diagonal Gaussian log density."""
    std = log_std.exp()
    d = actions.shape[-1]
    z = (actions - mean) / std
    return -0.5 * (z ** 2).sum(-1) - log_std.sum(-1) - 0.5 * d * math.log(2 * math.pi)


def gaussian_entropy(log_std: torch.Tensor) -> torch.Tensor:
    d = log_std.shape[-1]
    return 0.5 * d * (1.0 + math.log(2 * math.pi)) + log_std.sum(-1)


# ============================================================================
# Network
# ============================================================================

class ActorCriticNetwork(nn.Module):
    def __init__(self, observation_size: int, hidden_layers: Sequence[int], action_size: int = ACTION_SIZE):
        super().__init__()
        layers: List[nn.Module] = []
        in_dim = observation_size
        for h in hidden_layers:
            linear = nn.Linear(in_dim, h)
            nn.init.kaiming_normal_(linear.weight, nonlinearity="relu")
            nn.init.zeros_(linear.bias)
            layers += [linear, nn.ReLU()]
            in_dim = h
        self.trunk = nn.Sequential(*layers)

        self.mean_head = nn.Linear(in_dim, action_size)
        nn.init.xavier_normal_(self.mean_head.weight)
        nn.init.zeros_(self.mean_head.bias)

        self.log_std_head = nn.Linear(in_dim, action_size)
        nn.init.zeros_(self.log_std_head.weight)
        nn.init.constant_(self.log_std_head.bias, LOG_STD_INIT)

        self.value_head = nn.Linear(in_dim, 1)
        nn.init.xavier_normal_(self.value_head.weight)
        nn.init.zeros_(self.value_head.bias)

    def forward(self, obs: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        z = self.trunk(obs)
        return torch.tanh(self.mean_head(z)), self.log_std_head(z), self.value_head(z).squeeze(-1)

    def linear_layers(self) -> List[nn.Linear]:
        """All Linear layers in snapshot order: trunk..., mean, log_std, value."""
        trunk = [m for m in self.trunk if isinstance(m, nn.Linear)]
        return trunk + [self.mean_head, self.log_std_head, self.value_head]


# ============================================================================
# Agent
# ============================================================================

class ActorCriticAgent(Agent):
    kind = AGENT_KIND
    capabilities = FULL_ACTOR_CRITIC

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        seed: Optional[int] = None,
        device: str = "cpu",
    ):
        self.config = config or AgentConfig()
        self.device = resolve_torch_device(device)
        self.seed = seed
        self.rng = np.random.default_rng(seed)
        self._disposed = False
        self._build()

    def _build(self) -> None:
        if self.seed is not None:
            with torch.random.fork_rng(devices=[]):
                torch.manual_seed(self.seed)
                self.net = ActorCriticNetwork(self.config.observation_size, self.config.hidden_layers)
        else:
            self.net = ActorCriticNetwork(self.config.observation_size, self.config.hidden_layers)
        self.net.to(self.device)
        self.optimizer = torch.optim.Adam(self.net.parameters(), lr=self.config.learning_rate)

    def _check_alive(self) -> None:
        if self._disposed:
            raise ContractViolation("agent has been disposed")

    def _to_tensor(self, x: Any, ndim: int) -> torch.Tensor:
        t = torch.as_tensor(np.asarray(x, dtype=np.float32), device=self.device)
        if ndim == 2 and t.dim() == 1:
            t = t.unsqueeze(0)
        if t.shape[-1] != self.config.observation_size:
            raise ContractViolation(
                f"observation has {t.shape[-1]} features, expected {self.config.observation_size}"
            )
        return t

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def _policy(self, observation: Sequence[float]) -> Tuple[np.ndarray, np.ndarray, float]:
        self._check_alive()
        obs_t = self._to_tensor(observation, ndim=2)
        with torch.no_grad():
            mean, log_std, value = self.net(obs_t)
        return mean[0].cpu().numpy(), log_std[0].exp().cpu().numpy(), float(value[0])

    def act(self, observation: Sequence[float]) -> Action:
        """Sample mean + std * noise, clamped to [-1, 1]."""
        mean, std, _ = self._policy(observation)
        noise = self.rng.standard_normal(ACTION_SIZE)
        sample = mean + std * noise
        return Action.from_array(sample).clamped()

    def act_deterministic(self, observation: Sequence[float]) -> Action:
        mean, _, _ = self._policy(observation)
        return Action.from_array(mean).clamped()

    def act_with_value(self, observation: Sequence[float]) -> Tuple[Action, float]:
        """Stochastic action and V(s) from a single forward pass."""
        mean, std, value = self._policy(observation)
        noise = self.rng.standard_normal(ACTION_SIZE)
        return Action.from_array(mean + std * noise).clamped(), value

    def value(self, observation: Sequence[float]) -> float:
        return self._policy(observation)[2]

    def values(self, observations: Sequence[Sequence[float]]) -> np.ndarray:
        self._check_alive()
        if len(observations) == 0:
            return np.zeros(0, dtype=np.float32)
        obs_t = self._to_tensor(observations, ndim=2)
        with torch.no_grad():
            _, _, value = self.net(obs_t)
        return value.cpu().numpy().astype(np.float32)

    def action_means(self, observations: Sequence[Sequence[float]]) -> np.ndarray:
        self._check_alive()
        obs_t = self._to_tensor(observations, ndim=2)
        with torch.no_grad():
            mean, _, _ = self.net(obs_t)
        return mean.cpu().numpy()

    def exploration_level(self) -> float:
        """Mean policy std at a neutral (all-zero) observation."""
        _, std, _ = self._policy(np.zeros(self.config.observation_size, dtype=np.float32))
        return float(std.mean())

    # ------------------------------------------------------------------
    # Returns / advantages
    # ------------------------------------------------------------------

    def compute_returns(self, rewards: Sequence[float], gamma: Optional[float] = None) -> np.ndarray:
        gamma = self.config.discount_factor if gamma is None else gamma
        return compute_returns(rewards, gamma)

    def compute_advantages(
        self,
        rewards: Sequence[float],
        values: Sequence[float],
        dones: Sequence[bool],
        gamma: Optional[float] = None,
        lam: Optional[float] = None,
    ) -> Tuple[np.ndarray, np.ndarray]:
        """GAE; returns (advantages, returns) with returns = advantages + values."""
        gamma = self.config.discount_factor if gamma is None else gamma
        lam = self.config.gae_lambda if lam is None else lam
        return compute_gae(rewards, values, dones, gamma=gamma, gae_lambda=lam)

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    def _step(self, loss: torch.Tensor) -> None:
        loss.backward()
        max_norm = self.config.max_grad_norm
        if max_norm is not None and max_norm > 0:
            torch.nn.utils.clip_grad_norm_(self.net.parameters(), max_norm)
        self.optimizer.step()

    def update_actor_critic(self, batch: TrajectoryBatch) -> UpdateResult:
        self._check_alive()
        batch.validate()

        obs = self._to_tensor(batch.observations, ndim=2)
        actions = torch.as_tensor(np.asarray(batch.actions, dtype=np.float32), device=self.device)
        advantages = torch.as_tensor(normalize_advantages(batch.advantages), device=self.device)
        returns = torch.as_tensor(np.asarray(batch.returns, dtype=np.float32), device=self.device)

        self.net.train()
        self.optimizer.zero_grad(set_to_none=True)
        mean, log_std, values = self.net(obs)

        log_prob = gaussian_log_prob(actions, mean, log_std)
        policy_loss = -(log_prob * advantages).mean()
        value_loss = F.mse_loss(values, returns)
        entropy = gaussian_entropy(log_std).mean()

        loss = policy_loss + self.config.value_coef * value_loss - self.config.entropy_coef * entropy
        self._step(loss)

        result = UpdateResult(
            loss=float(loss.item()),
            policy_loss=float(policy_loss.item()),
            value_loss=float(value_loss.item()),
            entropy=float(entropy.item()),
        )
        logger.debug("actor-critic update n=%d %s", len(batch), result)
        return result

    def _check_pairs(self, observations: Any, targets: Any, name: str) -> None:
        if len(observations) == 0:
            raise ContractViolation(f"{name}: empty batch")
        if len(observations) != len(targets):
            raise ContractViolation(
                f"{name}: {len(observations)} observations but {len(targets)} targets"
            )

    def update_supervised(
        self,
        observations: Sequence[Sequence[float]],
        actions: Sequence[Sequence[float]],
        freeze_trunk: bool = False,
    ) -> Dict[str, float]:
        """MSE between the action mean and target actions.

        Trains trunk + mean head (only the mean head when freeze_trunk is set).
        Value and log-std heads are never updated.
        """
        self._check_alive()
        self._check_pairs(observations, actions, "update_supervised")
        obs = self._to_tensor(observations, ndim=2)
        target = torch.as_tensor(np.asarray(actions, dtype=np.float32), device=self.device)
        if target.dim() != 2 or target.shape[-1] != ACTION_SIZE:
            raise ContractViolation(f"actions must have shape (N, {ACTION_SIZE}), got {tuple(target.shape)}")

        self.net.train()
        self.optimizer.zero_grad(set_to_none=True)
        if freeze_trunk:
            with torch.no_grad():
                z = self.net.trunk(obs)
        else:
            z = self.net.trunk(obs)
        mean = torch.tanh(self.net.mean_head(z))
        loss = F.mse_loss(mean, target)
        self._step(loss)
        return {"loss": float(loss.item())}

    def update_critic_only(
        self,
        observations: Sequence[Sequence[float]],
        returns: Sequence[float],
    ) -> Dict[str, float]:
        """MSE between V(s) and target returns, value head only."""
        self._check_alive()
        self._check_pairs(observations, returns, "update_critic_only")
        obs = self._to_tensor(observations, ndim=2)
        target = torch.as_tensor(np.asarray(returns, dtype=np.float32).reshape(-1), device=self.device)

        self.net.train()
        self.optimizer.zero_grad(set_to_none=True)
        with torch.no_grad():
            z = self.net.trunk(obs)
        values = self.net.value_head(z).squeeze(-1)
        loss = F.mse_loss(values, target)
        self._step(loss)
        return {"loss": float(loss.item())}

    # ------------------------------------------------------------------
    # Hyperparameters
    # ------------------------------------------------------------------

    def set_learning_rate(self, rate: float) -> None:
        if rate <= 0:
            raise ContractViolation(f"learning rate must be positive, got {rate}")
        self.config.learning_rate = float(rate)
        for group in self.optimizer.param_groups:
            group["lr"] = float(rate)

    def set_entropy_coef(self, coef: float) -> None:
        if coef < 0:
            raise ContractViolation(f"entropy coefficient must be non-negative, got {coef}")
        self.config.entropy_coef = float(coef)

    # ------------------------------------------------------------------
    # RNG
    # ------------------------------------------------------------------

    def get_rng_state(self) -> Dict[str, Any]:
        return self.rng.bit_generator.state

    def set_rng_state(self, state: Dict[str, Any]) -> None:
        self.rng.bit_generator.state = state

    def reset_rng(self, seed: Optional[int] = None) -> None:
        self.rng = np.random.default_rng(self.seed if seed is None else seed)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self) -> Dict[str, Any]:
        """Snapshot of parameters and hyperparameters.

        weights holds one [kernel, bias] pair per Linear layer in order
        trunk..., mean, log_std, value; kernels are flattened row-major with
        shape (in_features, out_features).
        """
        self._check_alive()
        weights = []
        for layer in self.net.linear_layers():
            kernel = layer.weight.detach().cpu().numpy().T
            weights.append([kernel.reshape(-1).tolist(), layer.bias.detach().cpu().numpy().tolist()])
        return {"kind": self.kind, "config": asdict(self.config), "weights": weights}

    def load(self, snapshot: Dict[str, Any]) -> None:
        """Replace parameters and hyperparameters from a snapshot.

        Optimizer moment estimates are reset.
        """
        self._check_alive()
        kind = snapshot.get("kind", AGENT_KIND)
        if kind != self.kind:
            raise ContractViolation(f"snapshot kind '{kind}' cannot be loaded into {type(self).__name__}")
        if "weights" not in snapshot:
            raise ContractViolation("snapshot has no weights")

        config = AgentConfig.from_dict(snapshot.get("config", {}))
        net = ActorCriticNetwork(config.observation_size, config.hidden_layers).to(self.device)
        layers = net.linear_layers()
        weights = snapshot["weights"]
        if len(weights) != len(layers):
            raise ContractViolation(f"snapshot has {len(weights)} layers, expected {len(layers)}")

        with torch.no_grad():
            for i, (layer, (kernel, bias)) in enumerate(zip(layers, weights)):
                out_f, in_f = layer.weight.shape
                kernel = np.asarray(kernel, dtype=np.float32)
                bias = np.asarray(bias, dtype=np.float32)
                if kernel.size != in_f * out_f or bias.size != out_f:
                    raise ContractViolation(
                        f"layer {i}: expected kernel {in_f}x{out_f} and bias {out_f}, "
                        f"got {kernel.size} and {bias.size} values"
                    )
                layer.weight.copy_(torch.from_numpy(kernel.reshape(in_f, out_f).T.copy()))
                layer.bias.copy_(torch.from_numpy(bias))

        self.config = config
        self.net = net
        self.optimizer = torch.optim.Adam(self.net.parameters(), lr=self.config.learning_rate)
        logger.info("loaded actor-critic snapshot (%d layers, hidden=%s)", len(layers), config.hidden_layers)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        del self.optimizer
        del self.net
        release_device_memory(self.device)

    @property
    def disposed(self) -> bool:
        return self._disposed


__all__ = [
    "AGENT_KIND",
    "AgentConfig",
    "UpdateResult",
    "ActorCriticNetwork",
    "ActorCriticAgent",
    "gaussian_log_prob",
    "gaussian_entropy",
]
