"""
Episode Trainer
===============

On-policy training loop: one rollout, one update.

    for each episode:
        obs = env.reset(track_seed)
        step until done or max_steps_per_episode (act, optionally V(s))
        returns/advantages: GAE when values were collected, else discounted returns
        agent.update_actor_critic(batch)

Optional behavior-cloning warm-up runs to completion before the first
episode: the expert drives bc_warmup_episodes episodes and the agent is
trained on its actions for bc_epochs shuffled minibatch epochs.

When a reward_calculator is given and the environment exposes snapshots,
step rewards come from the calculator instead of the environment, so a
caller can change reward weights between episodes (see curriculum_trainer).

Cancellation is cooperative: stop() sets a flag checked after every
environment step and between warm-up epochs, so the in-flight step always
completes. A stopped run returns the episode stats collected so far; the
interrupted episode is discarded without an update.

Usage:
    trainer = EpisodeTrainer(agent, ToyTrackEnv(), TrainerConfig(total_episodes=50))
    history = trainer.train()
    eval_stats = trainer.evaluate(track_seed=7)
"""

from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass
from typing import Callable, List, Optional, Union

import numpy as np

from trackpilot.agents.centerline_controller import CenterlineFollowingController
from trackpilot.agents.policy_interface import Action, Agent, TrajectoryBatch, TrajectoryStep
from trackpilot.errors import AlreadyTrainingError, ContractViolation
from trackpilot.rl.env_interface import Environment, EpisodeInfo, ExpertController, SnapshotProvider, StepResult
from trackpilot.rl.rewards import ConfigurableRewardCalculator, RewardCalculator
from trackpilot.sft.behavior_cloning import BCTrainingStats, BehaviorCloningConfig, BehaviorCloningTrainer
from trackpilot.utils.scheduling import StepYielder, YieldPoint, noop_yield

logger = logging.getLogger(__name__)

AnyRewardCalculator = Union[RewardCalculator, ConfigurableRewardCalculator]


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class TrainerConfig:
    total_episodes: int = 1000
    max_steps_per_episode: int = 1000
    evaluate_every: int = 10
    track_seed: Optional[int] = None  # None = fresh seed per episode
    discount_factor: Optional[float] = None  # None = agent's own
    use_value_baseline: bool = True
    use_bc_warmup: bool = True
    bc_warmup_episodes: int = 10
    bc_epochs: int = 20
    bc_batch_size: int = 64
    yield_every_steps: int = 100
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        assert self.total_episodes >= 0, "total_episodes must be non-negative"
        assert self.max_steps_per_episode > 0, "max_steps_per_episode must be positive"
        assert self.evaluate_every > 0, "evaluate_every must be positive"
        assert self.yield_every_steps > 0, "yield_every_steps must be positive"


class TrainerState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class EpisodeStats:
    episode: int
    total_reward: float
    steps: int
    lap_completed: bool
    lap_time: Optional[float]
    avg_speed: float
    off_track_count: int
    track_seed: Optional[int] = None
    loss: Optional[float] = None
    avg_center_offset: float = 0.0
    laps_completed: int = 0

    @classmethod
    def from_info(
        cls,
        episode: int,
        info: EpisodeInfo,
        track_seed: Optional[int] = None,
        loss: Optional[float] = None,
    ) -> "EpisodeStats":
        return cls(
            episode=episode,
            total_reward=float(info.total_reward),
            steps=info.steps,
            lap_completed=info.lap_completed,
            lap_time=info.last_lap_time,
            avg_speed=info.avg_speed,
            off_track_count=info.off_track_steps,
            track_seed=track_seed,
            loss=loss,
            avg_center_offset=info.avg_center_offset,
            laps_completed=info.laps_completed,
        )

    def to_dict(self) -> dict:
        return asdict(self)


# ============================================================================
# Trainer
# ============================================================================

class EpisodeTrainer:
    def __init__(
        self,
        agent: Agent,
        env: Environment,
        config: Optional[TrainerConfig] = None,
        expert: Optional[ExpertController] = None,
        yield_point: YieldPoint = noop_yield,
        on_episode_start: Optional[Callable[[int, Optional[int]], None]] = None,
        on_episode_end: Optional[Callable[[EpisodeStats], None]] = None,
        on_step: Optional[Callable[[int, float, Action], None]] = None,
        on_training_complete: Optional[Callable[[List[EpisodeStats]], None]] = None,
        reward_calculator: Optional[AnyRewardCalculator] = None,
    ):
        self.agent = agent
        self.env = env
        self.config = config or TrainerConfig()
        self.expert = expert or CenterlineFollowingController()
        self.yield_point = yield_point
        self.on_episode_start = on_episode_start
        self.on_episode_end = on_episode_end
        self.on_step = on_step
        self.on_training_complete = on_training_complete
        self.reward_calculator = reward_calculator

        self.rng = np.random.default_rng(self.config.seed)
        self.state = TrainerState.IDLE
        self.history: List[EpisodeStats] = []
        self.last_batch: Optional[TrajectoryBatch] = None
        self.bc_stats: Optional[BCTrainingStats] = None
        self.current_track_seed: Optional[int] = None
        self._stop_requested = False

    @property
    def is_running(self) -> bool:
        return self.state is TrainerState.RUNNING

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def stop(self) -> None:
        """Request cancellation; honored after the in-flight step or epoch."""
        self._stop_requested = True

    def clear_stop(self) -> None:
        self._stop_requested = False

    def _uses_values(self) -> bool:
        return self.config.use_value_baseline and self.agent.capabilities.value

    def next_track_seed(self) -> int:
        if self.config.track_seed is not None:
            return self.config.track_seed
        return int(self.rng.integers(0, 1_000_000))

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def train(self) -> List[EpisodeStats]:
        if self.state is TrainerState.RUNNING:
            raise AlreadyTrainingError("episode trainer is already running")
        if not self.agent.capabilities.actor_critic:
            raise ContractViolation(f"{type(self.agent).__name__} cannot be trained with actor-critic updates")

        self.state = TrainerState.RUNNING
        self.clear_stop()
        self.history = []
        try:
            if self.config.use_bc_warmup and self.config.bc_warmup_episodes > 0 and self.agent.capabilities.supervised:
                self.run_bc_warmup()
                self.yield_point()

            for episode in range(self.config.total_episodes):
                if self._stop_requested:
                    break
                self.current_track_seed = self.next_track_seed()
                if self.on_episode_start is not None:
                    self.on_episode_start(episode, self.current_track_seed)

                stats = self.run_episode(episode, self.current_track_seed)
                if stats is None:
                    break
                self.history.append(stats)
                if self.on_episode_end is not None:
                    self.on_episode_end(stats)
                if (episode + 1) % self.config.evaluate_every == 0:
                    self._log_progress(episode)
                self.yield_point()
        except Exception:
            logger.exception("episode training failed after %d episodes", len(self.history))
            raise
        finally:
            self.state = TrainerState.IDLE

        if self._stop_requested:
            logger.info("training stopped after %d episodes", len(self.history))
        if self.on_training_complete is not None:
            self.on_training_complete(self.history)
        return self.history

    def run_bc_warmup(self, episodes: Optional[int] = None, epochs: Optional[int] = None) -> Optional[BCTrainingStats]:
        """Clone the expert into the agent. Returns None if nothing was trained."""
        cfg = self.config
        episodes = cfg.bc_warmup_episodes if episodes is None else episodes
        logger.info("running behavior cloning warm-up (%d expert episodes)", episodes)
        bc = BehaviorCloningTrainer(
            BehaviorCloningConfig(
                demonstration_episodes=episodes,
                batch_size=cfg.bc_batch_size,
                epochs=cfg.bc_epochs if epochs is None else epochs,
                max_steps_per_episode=cfg.max_steps_per_episode,
                yield_every_steps=cfg.yield_every_steps,
            ),
            expert=self.expert,
            rng=self.rng,
            yield_point=self.yield_point,
        )
        bc.collect_demonstrations(self.env, should_stop=lambda: self._stop_requested)
        if self._stop_requested or not bc.demonstrations:
            logger.info("behavior cloning warm-up skipped (%d samples collected)", len(bc.demonstrations))
            return None
        self.bc_stats = bc.train(self.agent, should_stop=lambda: self._stop_requested)
        logger.info("behavior cloning complete: final loss %.6f", self.bc_stats.final_loss)
        return self.bc_stats

    def _step_reward(self, result: StepResult, prev, curr) -> float:
        if self.reward_calculator is None or curr is None:
            return float(result.reward)
        return self.reward_calculator.calculate(
            prev, curr, bool(result.info.get("lap_completed")), result.info.get("lap_valid")
        )

    def run_episode(self, episode: int, track_seed: Optional[int] = None) -> Optional[EpisodeStats]:
        """Roll out one episode and update the agent.

        Returns None if stop() interrupted the episode.
        """
        use_values = self._uses_values()
        shaped = self.reward_calculator is not None and isinstance(self.env, SnapshotProvider)
        yielder = StepYielder(self.yield_point, every=self.config.yield_every_steps)
        steps: List[TrajectoryStep] = []
        info = EpisodeInfo()
        obs = self.env.reset(seed=track_seed)
        prev = None
        if shaped:
            self.reward_calculator.reset()
            prev = self.env.snapshot()

        while len(steps) < self.config.max_steps_per_episode:
            if use_values:
                action, value = self.agent.act_with_value(obs)
            else:
                action, value = self.agent.act(obs), None

            result = self.env.step(action)
            curr = self.env.snapshot() if shaped else None
            reward = self._step_reward(result, prev, curr)
            prev = curr
            steps.append(
                TrajectoryStep(
                    observation=np.asarray(obs, dtype=np.float32),
                    action=np.array([action[0], action[1]], dtype=np.float32),
                    reward=reward,
                    next_observation=np.asarray(result.observation, dtype=np.float32),
                    done=bool(result.done),
                    value=value,
                )
            )
            info.observe(obs, reward, result.info)
            if self.on_step is not None:
                self.on_step(len(steps), reward, action)

            obs = result.observation
            if result.done:
                break
            if self._stop_requested:
                logger.info("episode %d interrupted after %d steps", episode, len(steps))
                return None
            yielder.tick()

        loss = self._update(steps, use_values)
        return EpisodeStats.from_info(episode, info, track_seed=track_seed, loss=loss)

    def _update(self, steps: List[TrajectoryStep], use_values: bool) -> Optional[float]:
        if not steps:
            return None
        batch = TrajectoryBatch.from_steps(steps)
        gamma = self.config.discount_factor
        if use_values and batch.values is not None:
            batch.advantages, batch.returns = self.agent.compute_advantages(
                batch.rewards, batch.values, batch.dones, gamma=gamma
            )
        else:
            batch.returns = self.agent.compute_returns(batch.rewards, gamma=gamma)
            batch.advantages = batch.returns.copy()
        self.last_batch = batch
        result = self.agent.update_actor_critic(batch)
        return result.loss

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate(self, track_seed: Optional[int] = None) -> EpisodeStats:
        """Deterministic rollout with no update; reports the environment's own reward."""
        obs = self.env.reset(seed=track_seed)
        info = EpisodeInfo()
        while info.steps < self.config.max_steps_per_episode:
            result = self.env.step(self.agent.act_deterministic(obs))
            info.observe(obs, result.reward, result.info)
            obs = result.observation
            if result.done:
                break
        return EpisodeStats.from_info(-1, info, track_seed=track_seed)

    def _log_progress(self, episode: int) -> None:
        window = self.history[-self.config.evaluate_every:]
        avg_reward = float(np.mean([s.total_reward for s in window]))
        laps = sum(1 for s in window if s.lap_completed)
        lap_times = [s.lap_time for s in window if s.lap_time is not None]
        best = min(lap_times) if lap_times else None
        logger.info(
            "[rl] episode %d avg_reward=%.3f laps=%d/%d best_lap=%s",
            episode + 1, avg_reward, laps, len(window), f"{best:.2f}" if best is not None else "-",
        )


__all__ = ["TrainerConfig", "TrainerState", "EpisodeStats", "EpisodeTrainer"]
