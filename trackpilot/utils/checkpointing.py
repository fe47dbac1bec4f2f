from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Dict

import torch

from trackpilot.agents.actor_critic import AGENT_KIND, ActorCriticAgent, AgentConfig
from trackpilot.agents.centerline_controller import (
    CONTROLLER_KIND,
    CenterlineControllerConfig,
    CenterlineFollowingController,
)
from trackpilot.agents.policy_interface import Agent
from trackpilot.errors import ContractViolation

logger = logging.getLogger(__name__)


def _ensure_dir(p: Path) -> Path:
    p.mkdir(parents=True, exist_ok=True)
    return p


def _cfg_blob(cfg: Any) -> Dict[str, Any]:
    if hasattr(cfg, "__dataclass_fields__"):
        return asdict(cfg)
    if isinstance(cfg, dict):
        return dict(cfg)
    return {"repr": repr(cfg)}


# ============================================================================
# Agent snapshots (framework-neutral JSON)
# ============================================================================

def _build_actor_critic(snapshot: Dict[str, Any], device: str) -> Agent:
    agent = ActorCriticAgent(AgentConfig.from_dict(snapshot.get("config", {})), device=device)
    agent.load(snapshot)
    return agent


def _build_controller(snapshot: Dict[str, Any], device: str) -> Agent:
    return CenterlineFollowingController(CenterlineControllerConfig.from_dict(snapshot.get("config", {})))


AGENT_BUILDERS: Dict[str, Callable[[Dict[str, Any], str], Agent]] = {
    AGENT_KIND: _build_actor_critic,
    CONTROLLER_KIND: _build_controller,
}


def agent_from_snapshot(snapshot: Dict[str, Any], device: str = "cpu") -> Agent:
    """Rebuild an agent from a snapshot, dispatching on its "kind" tag.

    Snapshots without a kind are treated as actor-critic weights. device only
    matters for learned agents.
    """
    kind = snapshot.get("kind", AGENT_KIND)
    builder = AGENT_BUILDERS.get(kind)
    if builder is None:
        raise ContractViolation(f"Unknown agent kind '{kind}'. Known: {sorted(AGENT_BUILDERS)}")
    return builder(snapshot, device)


def save_agent_snapshot(path: Path, snapshot: Dict[str, Any]) -> Path:
    """Write a snapshot as JSON."""
    path = Path(path)
    _ensure_dir(path.parent)
    path.write_text(json.dumps(snapshot))
    logger.info("wrote agent snapshot (%s) -> %s", snapshot.get("kind", AGENT_KIND), path)
    return path


def load_agent_snapshot(path: Path) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Snapshot not found: {p}")
    snapshot = json.loads(p.read_text())
    if not isinstance(snapshot, dict):
        raise ContractViolation(f"Unexpected snapshot format: {p}")
    return snapshot


# ============================================================================
# Training checkpoints (torch)
# ============================================================================

def save_checkpoint(
    *,
    out_dir: Path,
    step: int,
    cfg: Any,
    agent: Agent,
    name: str = "latest.pt",
) -> Path:
    """Save a training checkpoint.

    Stores the agent snapshot plus, for learned agents, the optimizer
    state and exploration RNG state so training can resume exactly.
    cfg can be a dataclass or plain dict.
    """

    ckpt_dir = _ensure_dir(Path(out_dir) / "checkpoints")
    path = ckpt_dir / name

    payload: Dict[str, Any] = {
        "step": int(step),
        "cfg": _cfg_blob(cfg),
        "agent": agent.save(),
    }
    if isinstance(agent, ActorCriticAgent):
        payload["optim"] = agent.optimizer.state_dict()
        payload["rng"] = agent.get_rng_state()

    torch.save(payload, path)
    return path


def maybe_load_checkpoint(resume: str | Path | None) -> dict[str, Any] | None:
    """Load a checkpoint path if provided.

    resume supports:
      - None: return None
      - explicit path to a .pt file
    """

    if resume is None:
        return None

    p = Path(resume)
    if not p.exists():
        raise FileNotFoundError(f"Checkpoint not found: {p}")

    ckpt = torch.load(p, map_location="cpu", weights_only=False)
    if not isinstance(ckpt, dict) or "agent" not in ckpt:
        raise ValueError(f"Unexpected checkpoint format: {p}")
    return ckpt


def agent_from_checkpoint(ckpt: Dict[str, Any], device: str = "cpu") -> Agent:
    """Rebuild the agent stored in a loaded checkpoint, restoring optimizer and RNG."""
    agent = agent_from_snapshot(ckpt["agent"], device=device)
    if isinstance(agent, ActorCriticAgent):
        if "optim" in ckpt:
            agent.optimizer.load_state_dict(ckpt["optim"])
        if "rng" in ckpt:
            agent.set_rng_state(ckpt["rng"])
    return agent
