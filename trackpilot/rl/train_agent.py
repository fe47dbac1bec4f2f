"""Train a driving agent on the toy circular track.

Two modes:

1. From scratch: centerline-expert behavior cloning warm-up, then on-policy
   actor-critic episodes (EpisodeTrainer).
2. Fine-tune (--fine-tune-from): load an agent snapshot (.json) or
   checkpoint (.pt), collect expert demonstrations, and run the fine-tuning
   orchestrator (BC warm-up, critic pretraining, relaxed hyperparameters,
   RL episodes).

Usage
-----
python -m trackpilot.rl.train_agent --episodes 200 --out-dir out/trackpilot

python -m trackpilot.rl.train_agent \
  --fine-tune-from out/trackpilot/agent.json \
  --episodes 50 --critic-pretrain-epochs 20 \
  --out-dir out/trackpilot_ft

Outputs
-------
- <out-dir>/agent.json               framework-neutral agent snapshot
- <out-dir>/checkpoints/latest.pt    snapshot + optimizer + RNG state
- <out-dir>/metrics.json
"""

from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from trackpilot.agents.actor_critic import ActorCriticAgent, AgentConfig
from trackpilot.agents.policy_interface import Agent
from trackpilot.rl.episode_trainer import EpisodeTrainer, TrainerConfig
from trackpilot.rl.fine_tuner import FineTuneConfig, RLFineTuner
from trackpilot.rl.rewards import preset_weights
from trackpilot.rl.toy_track_env import ToyTrackConfig, ToyTrackEnv
from trackpilot.sft.behavior_cloning import BehaviorCloningConfig, BehaviorCloningTrainer
from trackpilot.utils.checkpointing import (
    agent_from_checkpoint,
    agent_from_snapshot,
    load_agent_snapshot,
    maybe_load_checkpoint,
    save_agent_snapshot,
    save_checkpoint,
)

logger = logging.getLogger(__name__)


@dataclass
class Config:
    out_dir: Path = Path("out/trackpilot")

    episodes: int = 200
    max_steps: int = 1000
    track_seed: Optional[int] = None
    reward_profile: str = "balanced"

    hidden_layers: List[int] = field(default_factory=lambda: [128, 128])
    lr: float = 3e-4
    gamma: float = 0.99
    gae_lambda: float = 0.95
    entropy_coef: float = 0.01

    bc_episodes: int = 10
    bc_epochs: int = 20
    batch_size: int = 64

    # fine-tuning
    fine_tune_from: Optional[Path] = None
    critic_pretrain_epochs: int = 20
    fine_tune_lr: float = 1e-5
    fine_tune_entropy_coef: float = 1e-3
    demo_replay_ratio: float = 0.0

    resume: Optional[Path] = None
    eval_episodes: int = 3
    device: str = "cpu"
    seed: int = 0


def _load_config_file(path: Path) -> Dict[str, Any]:
    data = json.loads(Path(path).read_text())
    if not isinstance(data, dict):
        raise SystemExit(f"Config file must hold a JSON object: {path}")
    known = {f.name for f in fields(Config)}
    unknown = set(data) - known
    if unknown:
        raise SystemExit(f"Unknown config keys in {path}: {sorted(unknown)}")
    return data


def parse_args(argv: Optional[Sequence[str]] = None) -> Config:
    p = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    p.add_argument("--config", type=Path, default=None, help="JSON file with Config fields; flags override it")
    p.add_argument("--out-dir", type=Path, default=None)
    p.add_argument("--episodes", type=int, default=None)
    p.add_argument("--max-steps", type=int, default=None)
    p.add_argument("--track-seed", type=int, default=None)
    p.add_argument("--reward-profile", type=str, default=None)
    p.add_argument("--hidden-layers", type=int, nargs="+", default=None)
    p.add_argument("--lr", type=float, default=None)
    p.add_argument("--gamma", type=float, default=None)
    p.add_argument("--gae-lambda", type=float, default=None)
    p.add_argument("--entropy-coef", type=float, default=None)
    p.add_argument("--bc-episodes", type=int, default=None)
    p.add_argument("--bc-epochs", type=int, default=None)
    p.add_argument("--batch-size", type=int, default=None)
    p.add_argument("--fine-tune-from", type=Path, default=None)
    p.add_argument("--critic-pretrain-epochs", type=int, default=None)
    p.add_argument("--fine-tune-lr", type=float, default=None)
    p.add_argument("--fine-tune-entropy-coef", type=float, default=None)
    p.add_argument("--demo-replay-ratio", type=float, default=None)
    p.add_argument("--resume", type=Path, default=None)
    p.add_argument("--eval-episodes", type=int, default=None)
    p.add_argument("--device", type=str, default=None)
    p.add_argument("--seed", type=int, default=None)
    a = p.parse_args(argv)

    values: Dict[str, Any] = _load_config_file(a.config) if a.config is not None else {}
    for name, value in vars(a).items():
        if name != "config" and value is not None:
            values[name] = value
    for name in ("out_dir", "fine_tune_from", "resume"):
        if values.get(name) is not None:
            values[name] = Path(values[name])
    return Config(**values)


def _build_agent(cfg: Config) -> ActorCriticAgent:
    agent_cfg = AgentConfig(
        hidden_layers=list(cfg.hidden_layers),
        learning_rate=cfg.lr,
        discount_factor=cfg.gamma,
        entropy_coef=cfg.entropy_coef,
        gae_lambda=cfg.gae_lambda,
    )
    return ActorCriticAgent(agent_cfg, seed=cfg.seed, device=cfg.device)


def _load_agent(path: Path, device: str = "cpu") -> Agent:
    if Path(path).suffix == ".pt":
        return agent_from_checkpoint(maybe_load_checkpoint(path), device=device)
    return agent_from_snapshot(load_agent_snapshot(path), device=device)


def _evaluate(trainer: EpisodeTrainer, cfg: Config) -> Dict[str, Any]:
    rng = np.random.default_rng(cfg.seed + 1)
    runs = [trainer.evaluate(track_seed=int(rng.integers(0, 1_000_000))) for _ in range(cfg.eval_episodes)]
    lap_times = [r.lap_time for r in runs if r.lap_time is not None]
    return {
        "eval_episodes": len(runs),
        "eval_avg_reward": float(np.mean([r.total_reward for r in runs])) if runs else 0.0,
        "eval_laps_completed": sum(1 for r in runs if r.lap_completed),
        "eval_best_lap_time": min(lap_times) if lap_times else None,
    }


def run_from_scratch(cfg: Config, env: ToyTrackEnv, agent: Agent) -> Dict[str, Any]:
    trainer = EpisodeTrainer(
        agent,
        env,
        TrainerConfig(
            total_episodes=cfg.episodes,
            max_steps_per_episode=cfg.max_steps,
            track_seed=cfg.track_seed,
            use_bc_warmup=cfg.bc_episodes > 0 and cfg.resume is None,
            bc_warmup_episodes=cfg.bc_episodes,
            bc_epochs=cfg.bc_epochs,
            bc_batch_size=cfg.batch_size,
            seed=cfg.seed,
        ),
    )
    history = trainer.train()
    lap_times = [s.lap_time for s in history if s.lap_time is not None]
    metrics: Dict[str, Any] = {
        "mode": "scratch",
        "episodes": len(history),
        "avg_reward": float(np.mean([s.total_reward for s in history])) if history else 0.0,
        "laps_completed": sum(1 for s in history if s.lap_completed),
        "best_lap_time": min(lap_times) if lap_times else None,
        "bc_final_loss": trainer.bc_stats.final_loss if trainer.bc_stats else None,
    }
    metrics.update(_evaluate(trainer, cfg))
    return metrics


def run_fine_tune(cfg: Config, env: ToyTrackEnv, agent: Agent) -> Dict[str, Any]:
    bc = BehaviorCloningTrainer(
        BehaviorCloningConfig(demonstration_episodes=cfg.bc_episodes, max_steps_per_episode=cfg.max_steps),
        rng=np.random.default_rng(cfg.seed),
    )
    demo_stats = bc.collect_demonstrations(env)
    print(f"[rl/train_agent] collected {demo_stats.total_samples} expert samples")

    tuner = RLFineTuner(
        agent,
        FineTuneConfig(
            episodes=cfg.episodes,
            max_steps_per_episode=cfg.max_steps,
            discount_factor=cfg.gamma,
            gae_lambda=cfg.gae_lambda,
            reward_weights=preset_weights(cfg.reward_profile),
            bc_warmup_epochs=0,
            critic_pretrain_epochs=cfg.critic_pretrain_epochs,
            batch_size=cfg.batch_size,
            fine_tune_learning_rate=cfg.fine_tune_lr,
            fine_tune_entropy_coef=cfg.fine_tune_entropy_coef,
            use_demo_replay=cfg.demo_replay_ratio > 0,
            demo_replay_ratio=cfg.demo_replay_ratio,
            seed=cfg.seed,
        ),
    )
    tuner.set_demonstrations(bc.demonstrations)
    result = tuner.train(env, track_seed=cfg.track_seed)
    metrics: Dict[str, Any] = {"mode": "fine_tune", "demo_samples": demo_stats.total_samples}
    metrics.update(asdict(result))
    metrics["episodes"] = result.episodes_trained
    return metrics


def main(argv: Optional[Sequence[str]] = None) -> Dict[str, Any]:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    cfg = parse_args(argv)
    cfg.out_dir.mkdir(parents=True, exist_ok=True)

    env = ToyTrackEnv(
        ToyTrackConfig(max_episode_steps=cfg.max_steps, reward_profile=cfg.reward_profile),
        seed=cfg.seed,
    )

    if cfg.fine_tune_from is not None:
        agent = _load_agent(cfg.fine_tune_from, cfg.device)
        print(f"[rl/train_agent] loaded agent ({agent.kind}) from {cfg.fine_tune_from}")
        metrics = run_fine_tune(cfg, env, agent)
    else:
        if cfg.resume is not None:
            agent = _load_agent(cfg.resume, cfg.device)
            print(f"[rl/train_agent] resumed agent from {cfg.resume}")
        else:
            agent = _build_agent(cfg)
        metrics = run_from_scratch(cfg, env, agent)

    snapshot_path = save_agent_snapshot(cfg.out_dir / "agent.json", agent.save())
    ckpt_path = save_checkpoint(out_dir=cfg.out_dir, step=metrics["episodes"], cfg=cfg, agent=agent)

    cfg_blob = {k: (str(v) if isinstance(v, Path) else v) for k, v in asdict(cfg).items()}
    metrics["config"] = cfg_blob
    (cfg.out_dir / "metrics.json").write_text(json.dumps(metrics, indent=2) + "\n")
    print(f"[rl/train_agent] wrote: {snapshot_path}")
    print(f"[rl/train_agent] wrote: {ckpt_path}")
    print(f"[rl/train_agent] wrote: {cfg.out_dir / 'metrics.json'}")
    return metrics


if __name__ == "__main__":
    main()
