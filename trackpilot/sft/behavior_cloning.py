"""Behavior cloning from an expert controller.

Two stages:
1. collect_demonstrations(env): drive the expert for N episodes and record
   (observation, expert action) pairs.
2. train(agent): shuffled minibatch epochs of agent.update_supervised.

run_supervised_epochs() is the shared minibatch loop; the episode trainer,
demo trainer and fine-tuning orchestrator all use it.

Usage:
    bc = BehaviorCloningTrainer(BehaviorCloningConfig(demonstration_episodes=5))
    bc.collect_demonstrations(env)
    stats = bc.train(agent)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

import numpy as np

from trackpilot.agents.centerline_controller import CenterlineFollowingController
from trackpilot.agents.policy_interface import OBS_PROGRESS, Agent
from trackpilot.data.replay import DemonstrationSample, stack_samples
from trackpilot.errors import ContractViolation, MissingDataError
from trackpilot.rl.env_interface import Environment, ExpertController
from trackpilot.rl.rewards import progress_delta
from trackpilot.utils.scheduling import StepYielder, YieldPoint, noop_yield

logger = logging.getLogger(__name__)


@dataclass
class BehaviorCloningConfig:
    demonstration_episodes: int = 20
    batch_size: int = 64
    epochs: int = 50
    max_steps_per_episode: int = 1000
    shuffle: bool = True
    log_every: int = 10
    yield_every_steps: int = 100
    freeze_trunk: bool = False

    def __post_init__(self):
        """Validate configuration."""
        assert self.demonstration_episodes >= 0, "demonstration_episodes must be non-negative"
        assert self.batch_size > 0, "batch_size must be positive"
        assert self.epochs >= 0, "epochs must be non-negative"
        assert self.max_steps_per_episode > 0, "max_steps_per_episode must be positive"


@dataclass
class DemonstrationStats:
    total_samples: int
    episodes_collected: int
    avg_steps_per_episode: float
    laps_completed: int


@dataclass
class BCTrainingStats:
    final_loss: float
    avg_loss: float
    epoch_losses: List[float] = field(default_factory=list)


def run_supervised_epochs(
    agent: Agent,
    observations: np.ndarray,
    actions: np.ndarray,
    *,
    epochs: int,
    batch_size: int,
    rng: np.random.Generator,
    shuffle: bool = True,
    freeze_trunk: bool = False,
    yield_point: YieldPoint = noop_yield,
    on_epoch: Optional[Callable[[int, float], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> List[float]:
    """Minibatch supervised epochs; returns the mean loss of each finished epoch.

    Yields after every epoch; should_stop is checked right after each yield.
    """
    if not agent.capabilities.supervised:
        raise ContractViolation(f"{type(agent).__name__} does not support supervised updates")
    observations = np.asarray(observations, dtype=np.float32)
    actions = np.asarray(actions, dtype=np.float32)
    n = len(observations)
    if n == 0:
        raise MissingDataError("no demonstration samples to train on")
    if n != len(actions):
        raise ContractViolation(f"{n} observations but {len(actions)} actions")

    losses: List[float] = []
    for epoch in range(epochs):
        order = rng.permutation(n) if shuffle else np.arange(n)
        total, batches = 0.0, 0
        for start in range(0, n, batch_size):
            idx = order[start:start + batch_size]
            result = agent.update_supervised(observations[idx], actions[idx], freeze_trunk=freeze_trunk)
            total += result["loss"]
            batches += 1
        epoch_loss = total / max(1, batches)
        losses.append(epoch_loss)
        logger.debug("supervised epoch %d/%d loss=%.6f", epoch + 1, epochs, epoch_loss)
        if on_epoch is not None:
            on_epoch(epoch, epoch_loss)
        yield_point()
        if should_stop is not None and should_stop():
            logger.info("supervised training stopped after %d/%d epochs", epoch + 1, epochs)
            break
    return losses


class BehaviorCloningTrainer:
    """Clone a rule-based expert into a learnable agent."""

    def __init__(
        self,
        config: Optional[BehaviorCloningConfig] = None,
        expert: Optional[ExpertController] = None,
        rng: Optional[np.random.Generator] = None,
        yield_point: YieldPoint = noop_yield,
        on_demonstration_episode: Optional[Callable[[int, int, int], None]] = None,
        on_epoch: Optional[Callable[[int, float], None]] = None,
    ):
        self.config = config or BehaviorCloningConfig()
        self.expert = expert or CenterlineFollowingController()
        self.rng = rng or np.random.default_rng()
        self.yield_point = yield_point
        self.on_demonstration_episode = on_demonstration_episode
        self.on_epoch = on_epoch
        self.demonstrations: List[DemonstrationSample] = []

    def collect_demonstrations(
        self,
        env: Environment,
        episodes: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> DemonstrationStats:
        """Drive the expert on fresh track seeds, replacing any stored samples.

        should_stop is checked after every step; a stop keeps what was collected.
        """
        cfg = self.config
        episodes = cfg.demonstration_episodes if episodes is None else episodes
        self.demonstrations = []
        yielder = StepYielder(self.yield_point, every=cfg.yield_every_steps)
        total_laps, collected = 0, 0

        for episode in range(episodes):
            if should_stop is not None and should_stop():
                break
            seed = int(self.rng.integers(0, 1_000_000))
            obs = env.reset(seed=seed)
            done, steps, laps, progress = False, 0, 0, 0.0
            while not done and steps < cfg.max_steps_per_episode:
                action = self.expert.act(obs)
                self.demonstrations.append(
                    DemonstrationSample(
                        observation=np.asarray(obs, dtype=np.float32).copy(),
                        action=np.array([action[0], action[1]], dtype=np.float32),
                        source_id=f"expert-{episode}",
                    )
                )
                result = env.step(action)
                progress += progress_delta(float(obs[OBS_PROGRESS]), float(result.observation[OBS_PROGRESS]))
                if result.info.get("lap_completed"):
                    laps += 1
                obs, done = result.observation, result.done
                steps += 1
                if should_stop is not None and should_stop():
                    break
                yielder.tick()

            total_laps += laps
            collected += 1
            logger.debug("expert episode %d: steps=%d laps=%d progress=%.3f", episode + 1, steps, laps, progress)
            if self.on_demonstration_episode is not None:
                self.on_demonstration_episode(episode + 1, steps, laps)

        stats = DemonstrationStats(
            total_samples=len(self.demonstrations),
            episodes_collected=collected,
            avg_steps_per_episode=len(self.demonstrations) / collected if collected else 0.0,
            laps_completed=total_laps,
        )
        logger.info(
            "collected %d expert samples over %d episodes (%d laps)",
            stats.total_samples, collected, total_laps,
        )
        return stats

    def train(
        self,
        agent: Agent,
        epochs: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> BCTrainingStats:
        if not self.demonstrations:
            raise MissingDataError("no demonstrations collected; call collect_demonstrations() first")
        return self.train_from_demonstrations(agent, self.demonstrations, epochs=epochs, should_stop=should_stop)

    def train_from_demonstrations(
        self,
        agent: Agent,
        samples: Sequence[DemonstrationSample],
        epochs: Optional[int] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> BCTrainingStats:
        """Supervised epochs over externally supplied samples."""
        if not samples:
            raise MissingDataError("no demonstration samples to train on")
        cfg = self.config
        epochs = cfg.epochs if epochs is None else epochs
        observations, actions = stack_samples(samples)

        def _on_epoch(epoch: int, loss: float) -> None:
            if (epoch + 1) % max(1, cfg.log_every) == 0 or epoch == epochs - 1:
                logger.info("[bc] epoch %d/%d loss=%.6f", epoch + 1, epochs, loss)
            if self.on_epoch is not None:
                self.on_epoch(epoch, loss)

        losses = run_supervised_epochs(
            agent,
            observations,
            actions,
            epochs=epochs,
            batch_size=cfg.batch_size,
            rng=self.rng,
            shuffle=cfg.shuffle,
            freeze_trunk=cfg.freeze_trunk,
            yield_point=self.yield_point,
            on_epoch=_on_epoch,
            should_stop=should_stop,
        )
        return BCTrainingStats(
            final_loss=losses[-1] if losses else 0.0,
            avg_loss=float(np.mean(losses)) if losses else 0.0,
            epoch_losses=losses,
        )

    def clear(self) -> None:
        self.demonstrations = []


__all__ = [
    "BehaviorCloningConfig",
    "DemonstrationStats",
    "BCTrainingStats",
    "run_supervised_epochs",
    "BehaviorCloningTrainer",
]
