"""Train agents from recorded laps (player or AI demonstrations).

Recorded laps become (observation, action) samples; frames recorded
without an observation are dropped. When laps carry different
training weights, the sample pool is resampled with replacement in
proportion to weight, so cleaner laps appear more often while recovery
laps still contribute.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

from trackpilot.agents.actor_critic import ActorCriticAgent, AgentConfig
from trackpilot.agents.policy_interface import Agent
from trackpilot.data.replay import (
    DemonstrationSample,
    LapReplay,
    ReplayStore,
    samples_from_replay,
    stack_samples,
)
from trackpilot.errors import AlreadyTrainingError, ContractViolation, MissingDataError
from trackpilot.sft.behavior_cloning import run_supervised_epochs
from trackpilot.utils.scheduling import YieldPoint, noop_yield

logger = logging.getLogger(__name__)


@dataclass
class DemoTrainingConfig:
    epochs: int = 50
    batch_size: int = 64
    shuffle: bool = True
    log_every: int = 10

    def __post_init__(self):
        """Validate configuration."""
        assert self.epochs >= 0, "epochs must be non-negative"
        assert self.batch_size > 0, "batch_size must be positive"


@dataclass
class DemoTrainingStats:
    final_loss: float
    avg_loss: float
    epoch_losses: List[float] = field(default_factory=list)
    total_samples: int = 0
    demonstrations_used: int = 0


def weighted_resample(
    samples: Sequence[DemonstrationSample],
    rng: np.random.Generator,
    count: Optional[int] = None,
) -> List[DemonstrationSample]:
    """Draw `count` samples with replacement, probability proportional to weight.

    Equal weights return the samples unchanged; all-zero weights fall back
    to uniform sampling.
    """
    if not samples:
        return []
    weights = np.asarray([s.weight for s in samples], dtype=np.float64)
    if np.all(weights == weights[0]):
        return list(samples)
    count = len(samples) if count is None else count
    total = float(np.clip(weights, 0.0, None).sum())
    if total <= 0:
        idx = rng.integers(0, len(samples), size=count)
    else:
        idx = rng.choice(len(samples), size=count, replace=True, p=np.clip(weights, 0.0, None) / total)
    return [samples[i] for i in idx]


class DemoTrainer:
    def __init__(
        self,
        store: Optional[ReplayStore] = None,
        config: Optional[DemoTrainingConfig] = None,
        rng: Optional[np.random.Generator] = None,
        yield_point: YieldPoint = noop_yield,
        on_epoch: Optional[Callable[[int, float], None]] = None,
    ):
        self.store = store
        self.config = config or DemoTrainingConfig()
        self.rng = rng or np.random.default_rng()
        self.yield_point = yield_point
        self.on_epoch = on_epoch
        self._training = False

    @property
    def is_training(self) -> bool:
        return self._training

    def _require_store(self) -> ReplayStore:
        if self.store is None:
            raise ContractViolation("DemoTrainer has no replay store")
        return self.store

    def replays_to_samples(self, replays: Sequence[LapReplay]) -> List[DemonstrationSample]:
        pool: List[DemonstrationSample] = []
        dropped = 0
        for replay in replays:
            samples = samples_from_replay(replay)
            dropped += len(replay.frames) - len(samples)
            pool.extend(samples)
        if dropped:
            logger.warning("dropped %d frames without observations", dropped)
        return weighted_resample(pool, self.rng)

    def _run(
        self,
        agent: Agent,
        replays: Sequence[LapReplay],
        epochs: Optional[int],
        batch_size: Optional[int],
    ) -> DemoTrainingStats:
        if self._training:
            raise AlreadyTrainingError("demo training already in progress")
        self._training = True
        try:
            samples = self.replays_to_samples(replays)
            if not samples:
                raise MissingDataError("no usable training samples; laps may be missing observation data")
            cfg = self.config
            epochs = cfg.epochs if epochs is None else epochs
            observations, actions = stack_samples(samples)

            def _on_epoch(epoch: int, loss: float) -> None:
                if (epoch + 1) % max(1, cfg.log_every) == 0 or epoch == epochs - 1:
                    logger.info("[demo] epoch %d/%d loss=%.6f", epoch + 1, epochs, loss)
                if self.on_epoch is not None:
                    self.on_epoch(epoch, loss)

            losses = run_supervised_epochs(
                agent,
                observations,
                actions,
                epochs=epochs,
                batch_size=cfg.batch_size if batch_size is None else batch_size,
                rng=self.rng,
                shuffle=cfg.shuffle,
                yield_point=self.yield_point,
                on_epoch=_on_epoch,
            )
            return DemoTrainingStats(
                final_loss=losses[-1] if losses else 0.0,
                avg_loss=float(np.mean(losses)) if losses else 0.0,
                epoch_losses=losses,
                total_samples=len(samples),
                demonstrations_used=len(replays),
            )
        finally:
            self._training = False

    def train_on_laps(
        self,
        agent: Agent,
        laps: Sequence[LapReplay],
        epochs: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> DemoTrainingStats:
        if not laps:
            raise MissingDataError("no laps to train on")
        return self._run(agent, laps, epochs, batch_size)

    def train_with_lap_ids(
        self,
        agent: Agent,
        lap_ids: Sequence[str],
        epochs: Optional[int] = None,
        batch_size: Optional[int] = None,
    ) -> DemoTrainingStats:
        if not lap_ids:
            raise ContractViolation("no lap ids given")
        store = self._require_store()
        replays = [r for r in (store.get_replay(i) for i in lap_ids) if r is not None]
        if len(replays) < len(lap_ids):
            logger.warning("%d of %d laps not found in the replay store", len(lap_ids) - len(replays), len(lap_ids))
        if not replays:
            raise MissingDataError("none of the requested laps were found")
        return self._run(agent, replays, epochs, batch_size)

    def train_existing_agent(self, agent: Agent, track_id: str) -> DemoTrainingStats:
        """Train on every lap marked as training data for the track."""
        store = self._require_store()
        replays = [r for r in store.get_replays_for_track(track_id) if r.is_training_data]
        if not replays:
            raise MissingDataError(f"no training laps for track '{track_id}'; mark some laps as training data first")
        logger.info("loaded %d training laps for %s", len(replays), track_id)
        return self._run(agent, replays, None, None)

    def train(
        self,
        track_id: str,
        agent_config: Optional[AgentConfig] = None,
        seed: Optional[int] = None,
    ) -> Tuple[ActorCriticAgent, DemoTrainingStats]:
        """Train a fresh actor-critic agent on the track's training laps."""
        agent = ActorCriticAgent(agent_config or AgentConfig(), seed=seed)
        stats = self.train_existing_agent(agent, track_id)
        logger.info("demo training complete: final loss %.6f", stats.final_loss)
        return agent, stats


__all__ = [
    "DemoTrainingConfig",
    "DemoTrainingStats",
    "weighted_resample",
    "DemoTrainer",
]
