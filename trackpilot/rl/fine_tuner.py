"""
Fine-Tuning Orchestrator
========================

Fine-tune an already-trained agent on curated demonstrations and a live
environment. Four phases, each skippable:

1. bc      supervised warm-up on the demonstrations (bc_warmup_epochs);
           mean head only by default, so V(s) is unchanged
2. critic  critic-only pretraining on heuristic per-lap returns
           (critic_pretrain_epochs); keeps a random value head from
           producing destructive advantages in phase 4
3.         hyperparameter relaxation: lower learning rate and entropy
4. rl      on-policy episodes with GAE, optionally mixing demonstration
           samples into each episode's batch

Rewards come from the orchestrator's own ConfigurableRewardCalculator when
the environment exposes snapshots, so reward weights can be edited while a
run is in flight (set_reward_weights). Otherwise the environment's reward is
used as-is.

One run per instance: a second train() while one is active raises
AlreadyTrainingError before any rollout starts.

Usage:
    tuner = RLFineTuner(agent, FineTuneConfig(episodes=50), store=replays)
    tuner.load_demonstrations(["lap-1", "lap-7"])
    result = tuner.train(ToyTrackEnv(), track_seed=3)
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from trackpilot.agents.policy_interface import Agent, TrajectoryBatch, TrajectoryStep
from trackpilot.data.replay import DemonstrationSample, ReplayStore, samples_from_replay, stack_samples
from trackpilot.errors import AlreadyTrainingError, ContractViolation, MissingDataError
from trackpilot.rl.advantage import compute_gae
from trackpilot.rl.env_interface import Environment, SnapshotProvider
from trackpilot.rl.rewards import ConfigurableRewardCalculator, RewardWeights
from trackpilot.sft.behavior_cloning import run_supervised_epochs
from trackpilot.utils.scheduling import StepYielder, YieldPoint, noop_yield

logger = logging.getLogger(__name__)

PHASE_BC = "bc"
PHASE_CRITIC = "critic"
PHASE_RL = "rl"


# ============================================================================
# Configuration / reporting types
# ============================================================================

@dataclass
class FineTuneConfig:
    episodes: int = 100
    max_steps_per_episode: int = 2000
    discount_factor: float = 0.99
    gae_lambda: float = 0.95
    reward_weights: RewardWeights = field(default_factory=RewardWeights)

    bc_warmup_epochs: int = 0
    bc_freeze_trunk: bool = True  # False also trains the shared trunk
    critic_pretrain_epochs: int = 20
    batch_size: int = 64

    # phase 3; None leaves the agent's value untouched
    fine_tune_learning_rate: Optional[float] = 1e-5
    fine_tune_entropy_coef: Optional[float] = 1e-3

    use_demo_replay: bool = False
    demo_replay_ratio: float = 0.2
    demo_reward: float = 1.0

    # critic pretraining return heuristic, applied per source lap
    demo_terminal_bonus: float = 10.0
    demo_step_reward: float = 0.1

    yield_every_steps: int = 100
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        assert self.episodes >= 0, "episodes must be non-negative"
        assert self.max_steps_per_episode > 0, "max_steps_per_episode must be positive"
        assert 0.0 <= self.discount_factor <= 1.0, "discount_factor must be in [0, 1]"
        assert 0.0 <= self.gae_lambda <= 1.0, "gae_lambda must be in [0, 1]"
        assert self.bc_warmup_epochs >= 0, "bc_warmup_epochs must be non-negative"
        assert self.critic_pretrain_epochs >= 0, "critic_pretrain_epochs must be non-negative"
        assert self.batch_size > 0, "batch_size must be positive"
        assert 0.0 <= self.demo_replay_ratio <= 1.0, "demo_replay_ratio must be in [0, 1]"
        assert self.yield_every_steps > 0, "yield_every_steps must be positive"


@dataclass
class FineTuneProgress:
    episode: int
    total_episodes: int
    step: int
    reward: float
    avg_reward: float
    lap_time: Optional[float]
    best_lap_time: Optional[float]
    loss: float
    phase: str


@dataclass
class FineTuneResult:
    success: bool
    episodes_trained: int
    final_avg_reward: float
    best_lap_time: Optional[float]
    session_id: str


@dataclass
class FineTuneSession:
    """Bookkeeping for one train() call; reporting only."""
    id: str
    started_at: float
    finished_at: Optional[float] = None
    track_seed: Optional[int] = None
    demo_samples: int = 0
    phases_completed: List[str] = field(default_factory=list)
    episodes_trained: int = 0
    best_lap_time: Optional[float] = None
    cancelled: bool = False


def estimate_demo_returns(
    samples: Sequence[DemonstrationSample],
    gamma: float,
    terminal_bonus: float = 10.0,
    step_reward: float = 0.1,
) -> np.ndarray:
    """Heuristic returns for demonstration samples.

    Each run of consecutive samples with the same source_id is treated as one
    successful lap: the last sample gets terminal_bonus and earlier samples
    step_reward + gamma * (next return). An approximation, not the
    environment's real return.
    """
    returns = np.zeros(len(samples), dtype=np.float32)
    end = len(samples)
    while end > 0:
        start = end - 1
        source = samples[start].source_id
        while start > 0 and samples[start - 1].source_id == source:
            start -= 1
        running = terminal_bonus
        for i in range(end - 1, start - 1, -1):
            returns[i] = running
            running = step_reward + gamma * running
        end = start
    return returns


# ============================================================================
# Orchestrator
# ============================================================================

class RLFineTuner:
    def __init__(
        self,
        agent: Agent,
        config: Optional[FineTuneConfig] = None,
        store: Optional[ReplayStore] = None,
        yield_point: YieldPoint = noop_yield,
        on_progress: Optional[Callable[[FineTuneProgress], None]] = None,
        on_complete: Optional[Callable[[FineTuneResult], None]] = None,
    ):
        self.agent = agent
        self.config = config or FineTuneConfig()
        self.store = store
        self.yield_point = yield_point
        self.on_progress = on_progress
        self.on_complete = on_complete

        self.rng = np.random.default_rng(self.config.seed)
        self.reward_calculator = ConfigurableRewardCalculator(self.config.reward_weights)
        self.demonstrations: List[DemonstrationSample] = []
        self.session: Optional[FineTuneSession] = None

        self._lock = threading.Lock()
        self._stop_requested = False
        self.current_episode = 0
        self.best_lap_time: Optional[float] = None
        self.reward_history: List[float] = []

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def set_callbacks(
        self,
        on_progress: Optional[Callable[[FineTuneProgress], None]],
        on_complete: Optional[Callable[[FineTuneResult], None]],
    ) -> None:
        self.on_progress = on_progress
        self.on_complete = on_complete

    def set_reward_weights(self, weights: Optional[RewardWeights] = None, **changes: float) -> None:
        """Takes effect on the next reward calculation, mid-episode included."""
        self.reward_calculator.set_weights(weights, **changes)
        self.config.reward_weights = self.reward_calculator.weights

    def stop(self) -> None:
        self._stop_requested = True

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def get_config(self) -> FineTuneConfig:
        return replace(self.config, reward_weights=self.reward_calculator.weights)

    def get_stats(self) -> Dict[str, object]:
        return {
            "current_episode": self.current_episode,
            "best_lap_time": self.best_lap_time,
            "avg_reward": self._average_reward(10),
            "reward_history": list(self.reward_history),
        }

    def _average_reward(self, n: int) -> float:
        if not self.reward_history:
            return 0.0
        return float(np.mean(self.reward_history[-n:]))

    def _should_stop(self) -> bool:
        return self._stop_requested

    def _emit(self, progress: FineTuneProgress) -> None:
        if self.on_progress is not None:
            self.on_progress(progress)

    # ------------------------------------------------------------------
    # Demonstrations
    # ------------------------------------------------------------------

    def load_demonstrations(self, lap_ids: Sequence[str]) -> int:
        """Replace the demonstration buffer with the frames of the given laps.

        Returns the number of samples loaded.
        """
        if not lap_ids:
            raise ContractViolation("no lap ids given")
        if self.store is None:
            raise ContractViolation("RLFineTuner has no replay store")

        samples: List[DemonstrationSample] = []
        missing, dropped = 0, 0
        for lap_id in lap_ids:
            replay = self.store.get_replay(lap_id)
            if replay is None:
                missing += 1
                continue
            lap_samples = samples_from_replay(replay)
            dropped += len(replay.frames) - len(lap_samples)
            samples.extend(lap_samples)

        if missing:
            logger.warning("%d of %d laps not found in the replay store", missing, len(lap_ids))
        if dropped:
            logger.warning("dropped %d frames without observations", dropped)
        if not samples:
            raise MissingDataError("no usable demonstration samples in the requested laps")

        self.demonstrations = samples
        logger.info("loaded %d demo samples from %d laps", len(samples), len(lap_ids) - missing)
        return len(samples)

    def set_demonstrations(self, samples: Sequence[DemonstrationSample]) -> int:
        self.demonstrations = list(samples)
        return len(self.demonstrations)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def train(self, env: Environment, track_seed: Optional[int] = None) -> FineTuneResult:
        """Run all configured phases; returns a partial result when stopped."""
        if not self._lock.acquire(blocking=False):
            raise AlreadyTrainingError("fine-tuning already in progress")
        try:
            caps = self.agent.capabilities
            if not (caps.actor_critic and caps.value):
                raise ContractViolation(f"{type(self.agent).__name__} cannot be fine-tuned with actor-critic updates")

            self._stop_requested = False
            self.current_episode = 0
            self.best_lap_time = None
            self.reward_history = []
            self.session = FineTuneSession(
                id=str(uuid.uuid4()),
                started_at=time.time(),
                track_seed=track_seed,
                demo_samples=len(self.demonstrations),
            )

            try:
                self._run_phases(env, track_seed)
            except Exception:
                logger.exception("fine-tuning failed in session %s", self.session.id)
                raise

            session = self.session
            session.finished_at = time.time()
            session.episodes_trained = self.current_episode
            session.best_lap_time = self.best_lap_time
            session.cancelled = self._stop_requested

            result = FineTuneResult(
                success=not self._stop_requested,
                episodes_trained=self.current_episode,
                final_avg_reward=self._average_reward(50),
                best_lap_time=self.best_lap_time,
                session_id=session.id,
            )
            if self._stop_requested:
                logger.info("fine-tuning stopped after %d episodes", self.current_episode)
            if self.on_complete is not None:
                self.on_complete(result)
            return result
        finally:
            self._lock.release()

    def _run_phases(self, env: Environment, track_seed: Optional[int]) -> None:
        cfg = self.config
        if cfg.bc_warmup_epochs > 0 and self.demonstrations and not self._should_stop():
            self.run_bc_warmup()
            self.session.phases_completed.append(PHASE_BC)

        if cfg.critic_pretrain_epochs > 0 and self.demonstrations and not self._should_stop():
            self.run_critic_pretraining()
            self.session.phases_completed.append(PHASE_CRITIC)

        if self._should_stop():
            return

        logger.info("switching to conservative fine-tuning hyperparameters")
        if cfg.fine_tune_learning_rate is not None:
            self.agent.set_learning_rate(cfg.fine_tune_learning_rate)
        if cfg.fine_tune_entropy_coef is not None:
            self.agent.set_entropy_coef(cfg.fine_tune_entropy_coef)

        self.run_rl_training(env, track_seed)
        self.session.phases_completed.append(PHASE_RL)

    def run_bc_warmup(self) -> List[float]:
        cfg = self.config
        if not self.agent.capabilities.supervised:
            logger.warning("agent does not support supervised updates; skipping BC warm-up")
            return []
        logger.info("BC warm-up: %d epochs on %d samples", cfg.bc_warmup_epochs, len(self.demonstrations))
        observations, actions = stack_samples(self.demonstrations)

        def _on_epoch(epoch: int, loss: float) -> None:
            self._emit(FineTuneProgress(0, cfg.episodes, epoch, 0.0, 0.0, None, None, loss, PHASE_BC))

        return run_supervised_epochs(
            self.agent,
            observations,
            actions,
            epochs=cfg.bc_warmup_epochs,
            batch_size=cfg.batch_size,
            rng=self.rng,
            freeze_trunk=cfg.bc_freeze_trunk,
            yield_point=self.yield_point,
            on_epoch=_on_epoch,
            should_stop=self._should_stop,
        )

    def run_critic_pretraining(self) -> List[float]:
        """Critic-only epochs on heuristic demo returns; actor outputs are untouched."""
        cfg = self.config
        if not self.agent.capabilities.critic_only:
            logger.warning("agent does not support critic-only updates; skipping critic pretraining")
            return []
        returns = estimate_demo_returns(
            self.demonstrations,
            cfg.discount_factor,
            terminal_bonus=cfg.demo_terminal_bonus,
            step_reward=cfg.demo_step_reward,
        )
        observations, _ = stack_samples(self.demonstrations)
        n = len(observations)
        logger.info("critic pretraining: %d epochs on %d samples", cfg.critic_pretrain_epochs, n)

        losses: List[float] = []
        for epoch in range(cfg.critic_pretrain_epochs):
            if self._should_stop():
                break
            order = self.rng.permutation(n)
            total, batches = 0.0, 0
            for start in range(0, n, cfg.batch_size):
                idx = order[start:start + cfg.batch_size]
                total += self.agent.update_critic_only(observations[idx], returns[idx])["loss"]
                batches += 1
            loss = total / max(1, batches)
            losses.append(loss)
            if (epoch + 1) % 5 == 0:
                logger.info("[critic] epoch %d/%d loss=%.6f", epoch + 1, cfg.critic_pretrain_epochs, loss)
            self._emit(FineTuneProgress(0, cfg.episodes, epoch, 0.0, 0.0, None, None, loss, PHASE_CRITIC))
            self.yield_point()
        return losses

    def run_rl_training(self, env: Environment, track_seed: Optional[int] = None) -> None:
        cfg = self.config
        logger.info("RL fine-tuning: %d episodes (track seed %s)", cfg.episodes, track_seed)
        for episode in range(cfg.episodes):
            if self._should_stop():
                break
            total_reward, steps, lap_time, loss = self._run_episode(env, track_seed)
            self.current_episode = episode + 1
            self.reward_history.append(total_reward)

            if lap_time is not None and (self.best_lap_time is None or lap_time < self.best_lap_time):
                self.best_lap_time = lap_time
                logger.info("new best lap: %.2fs", lap_time)

            self._emit(
                FineTuneProgress(
                    episode=self.current_episode,
                    total_episodes=cfg.episodes,
                    step=steps,
                    reward=total_reward,
                    avg_reward=self._average_reward(10),
                    lap_time=lap_time,
                    best_lap_time=self.best_lap_time,
                    loss=loss,
                    phase=PHASE_RL,
                )
            )
            if (episode + 1) % 10 == 0:
                logger.info(
                    "[rl] episode %d/%d reward=%.1f avg_reward=%.1f steps=%d",
                    episode + 1, cfg.episodes, total_reward, self._average_reward(10), steps,
                )
            self.yield_point()

    def _run_episode(self, env: Environment, track_seed: Optional[int]):
        cfg = self.config
        obs = env.reset(seed=track_seed)
        self.reward_calculator.reset()
        shaped = isinstance(env, SnapshotProvider)
        prev = env.snapshot() if shaped else None

        yielder = StepYielder(self.yield_point, every=cfg.yield_every_steps)
        transitions: List[TrajectoryStep] = []
        total_reward, steps, lap_time = 0.0, 0, None
        done = False

        while not done and steps < cfg.max_steps_per_episode:
            action, value = self.agent.act_with_value(obs)
            result = env.step(action)
            steps += 1

            if shaped:
                curr = env.snapshot()
                reward = self.reward_calculator.calculate(
                    prev, curr, bool(result.info.get("lap_completed")), result.info.get("lap_valid")
                )
                prev = curr
            else:
                reward = float(result.reward)

            transitions.append(
                TrajectoryStep(
                    observation=np.asarray(obs, dtype=np.float32),
                    action=np.array([action[0], action[1]], dtype=np.float32),
                    reward=reward,
                    next_observation=None,
                    done=bool(result.done),
                    value=value,
                )
            )
            total_reward += reward
            if result.info.get("lap_completed") and (result.info.get("lap_time") or 0) > 0:
                lap_time = float(result.info["lap_time"])
            obs, done = result.observation, result.done

            if cfg.use_demo_replay and self.demonstrations and self.rng.random() < cfg.demo_replay_ratio:
                demo = self.demonstrations[int(self.rng.integers(len(self.demonstrations)))]
                transitions.append(
                    TrajectoryStep(
                        observation=np.asarray(demo.observation, dtype=np.float32),
                        action=np.asarray(demo.action, dtype=np.float32),
                        reward=cfg.demo_reward,
                        next_observation=None,
                        done=False,
                        value=self.agent.value(demo.observation),
                    )
                )
            yielder.tick()

        loss = 0.0
        if transitions:
            batch = TrajectoryBatch.from_steps(transitions)
            batch.advantages, batch.returns = compute_gae(
                batch.rewards, batch.values, batch.dones, gamma=cfg.discount_factor, gae_lambda=cfg.gae_lambda
            )
            loss = self.agent.update_actor_critic(batch).loss
        return float(total_reward), steps, lap_time, float(loss)


__all__ = [
    "PHASE_BC",
    "PHASE_CRITIC",
    "PHASE_RL",
    "FineTuneConfig",
    "FineTuneProgress",
    "FineTuneResult",
    "FineTuneSession",
    "estimate_demo_returns",
    "RLFineTuner",
]
