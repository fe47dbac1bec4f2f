"""
Curriculum Trainer
==================

Behavior cloning followed by RL episodes whose reward shifts from
"stay on the centerline" to "go fast":

    phase               episodes            centerline weight
    behavior_cloning    0 (warm-up)         -
    rl_high_centerline  1 .. H              start
    rl_transition       H+1 .. H+T          start -> end, linear per episode
    rl_speed_only       H+T+1 .. N          end

Episodes run through an EpisodeTrainer whose rewards come from a
ConfigurableRewardCalculator; before each episode the calculator's
centerline weight is set from the schedule. The other weights stay at
base_reward_weights (cutting_penalty forced to 0 when disabled).

Usage:
    curriculum = CurriculumTrainer(agent, ToyTrackEnv(), CurriculumConfig(rl_episodes=300))
    stats = curriculum.train()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional

import numpy as np

from trackpilot.agents.policy_interface import Agent
from trackpilot.errors import AlreadyTrainingError, ContractViolation
from trackpilot.rl.env_interface import Environment, ExpertController, SnapshotProvider
from trackpilot.rl.episode_trainer import EpisodeStats, EpisodeTrainer, TrainerConfig
from trackpilot.rl.rewards import ConfigurableRewardCalculator, RewardWeights
from trackpilot.sft.behavior_cloning import BCTrainingStats
from trackpilot.utils.scheduling import YieldPoint, noop_yield

logger = logging.getLogger(__name__)

PHASE_BEHAVIOR_CLONING = "behavior_cloning"
PHASE_HIGH_CENTERLINE = "rl_high_centerline"
PHASE_TRANSITION = "rl_transition"
PHASE_SPEED_ONLY = "rl_speed_only"


# ============================================================================
# Configuration / schedule
# ============================================================================

@dataclass
class CurriculumConfig:
    # behavior cloning
    bc_demonstration_episodes: int = 20
    bc_epochs: int = 50
    bc_batch_size: int = 64

    # RL
    rl_episodes: int = 1000
    max_steps_per_episode: int = 1000
    track_seed: Optional[int] = None

    # schedule
    high_centerline_episodes: int = 200
    transition_episodes: int = 300
    centerline_weight_start: float = 0.8
    centerline_weight_end: float = 0.0

    base_reward_weights: RewardWeights = field(default_factory=RewardWeights)
    cutting_penalty_enabled: bool = True

    log_every: int = 10
    yield_every_steps: int = 100
    seed: Optional[int] = None

    def __post_init__(self):
        """Validate configuration."""
        assert self.bc_demonstration_episodes >= 0, "bc_demonstration_episodes must be non-negative"
        assert self.rl_episodes >= 0, "rl_episodes must be non-negative"
        assert self.max_steps_per_episode > 0, "max_steps_per_episode must be positive"
        assert self.high_centerline_episodes >= 0, "high_centerline_episodes must be non-negative"
        assert self.transition_episodes >= 0, "transition_episodes must be non-negative"
        assert self.centerline_weight_start >= 0, "centerline_weight_start must be non-negative"
        assert self.centerline_weight_end >= 0, "centerline_weight_end must be non-negative"
        assert self.log_every > 0, "log_every must be positive"


@dataclass(frozen=True)
class CurriculumPhase:
    name: str
    start_episode: int
    end_episode: int
    weight_start: float
    weight_end: float

    def centerline_weight(self, episode: int) -> float:
        """Linear from weight_start at start_episode; constant when both ends match."""
        if self.weight_start == self.weight_end:
            return self.weight_start
        length = max(1, self.end_episode - self.start_episode + 1)
        progress = (episode - self.start_episode) / length
        return self.weight_start - progress * (self.weight_start - self.weight_end)


def build_phases(config: CurriculumConfig) -> List[CurriculumPhase]:
    h, t = config.high_centerline_episodes, config.transition_episodes
    start, end = config.centerline_weight_start, config.centerline_weight_end
    return [
        CurriculumPhase(PHASE_BEHAVIOR_CLONING, 0, 0, 1.0, 1.0),
        CurriculumPhase(PHASE_HIGH_CENTERLINE, 1, h, start, start),
        CurriculumPhase(PHASE_TRANSITION, h + 1, h + t, start, end),
        CurriculumPhase(PHASE_SPEED_ONLY, h + t + 1, config.rl_episodes, end, end),
    ]


def phase_for_episode(phases: List[CurriculumPhase], episode: int) -> CurriculumPhase:
    """Latest phase whose start_episode has been reached."""
    for phase in reversed(phases):
        if episode >= phase.start_episode:
            return phase
    return phases[0]


@dataclass
class CurriculumEpisodeMetrics:
    episode: int
    phase: str
    centerline_weight: float
    total_reward: float
    steps: int
    laps_completed: int
    avg_speed: float
    avg_centerline_deviation: float
    off_track_percentage: float
    cutting_progress: float
    lap_time: Optional[float]

    @classmethod
    def from_stats(
        cls, stats: EpisodeStats, phase: str, weight: float, cutting_progress: float
    ) -> "CurriculumEpisodeMetrics":
        return cls(
            episode=stats.episode,
            phase=phase,
            centerline_weight=weight,
            total_reward=stats.total_reward,
            steps=stats.steps,
            laps_completed=stats.laps_completed,
            avg_speed=stats.avg_speed,
            avg_centerline_deviation=stats.avg_center_offset,
            off_track_percentage=100.0 * stats.off_track_count / max(1, stats.steps),
            cutting_progress=cutting_progress,
            lap_time=stats.lap_time,
        )


@dataclass
class CurriculumTrainingStats:
    bc_stats: Optional[BCTrainingStats]
    rl_episodes: int
    final_lap_time: Optional[float]
    best_lap_time: Optional[float]
    avg_reward_last_n: float
    stopped: bool = False


# ============================================================================
# Trainer
# ============================================================================

class CurriculumTrainer:
    def __init__(
        self,
        agent: Agent,
        env: Environment,
        config: Optional[CurriculumConfig] = None,
        expert: Optional[ExpertController] = None,
        yield_point: YieldPoint = noop_yield,
        on_phase_change: Optional[Callable[[CurriculumPhase], None]] = None,
        on_episode: Optional[Callable[[CurriculumEpisodeMetrics], None]] = None,
        on_training_complete: Optional[Callable[[CurriculumTrainingStats], None]] = None,
    ):
        self.agent = agent
        self.env = env
        self.config = config or CurriculumConfig()
        self.on_phase_change = on_phase_change
        self.on_episode = on_episode
        self.on_training_complete = on_training_complete
        self.phases = build_phases(self.config)

        cfg = self.config
        weights = cfg.base_reward_weights
        if not cfg.cutting_penalty_enabled:
            weights = replace(weights, cutting_penalty=0.0)
        self.reward_calculator = ConfigurableRewardCalculator(weights)
        self.trainer = EpisodeTrainer(
            agent,
            env,
            TrainerConfig(
                total_episodes=cfg.rl_episodes,
                max_steps_per_episode=cfg.max_steps_per_episode,
                track_seed=cfg.track_seed,
                use_bc_warmup=cfg.bc_demonstration_episodes > 0,
                bc_warmup_episodes=cfg.bc_demonstration_episodes,
                bc_epochs=cfg.bc_epochs,
                bc_batch_size=cfg.bc_batch_size,
                yield_every_steps=cfg.yield_every_steps,
                seed=cfg.seed,
            ),
            expert=expert,
            yield_point=yield_point,
            reward_calculator=self.reward_calculator,
        )

        self.metrics: List[CurriculumEpisodeMetrics] = []
        self.best_lap_time: Optional[float] = None
        self._running = False

    @property
    def yield_point(self) -> YieldPoint:
        return self.trainer.yield_point

    @yield_point.setter
    def yield_point(self, value: YieldPoint) -> None:
        self.trainer.yield_point = value

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Honored after the in-flight step or warm-up epoch."""
        self.trainer.stop()

    def phase_for_episode(self, episode: int) -> CurriculumPhase:
        return phase_for_episode(self.phases, episode)

    def centerline_weight(self, episode: int) -> float:
        return self.phase_for_episode(episode).centerline_weight(episode)

    def _enter_phase(self, phase: CurriculumPhase, weight: float) -> None:
        logger.info("curriculum phase: %s (centerline weight %.2f)", phase.name, weight)
        if self.on_phase_change is not None:
            self.on_phase_change(phase)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def train(self) -> CurriculumTrainingStats:
        if self._running:
            raise AlreadyTrainingError("curriculum training already in progress")
        if not self.agent.capabilities.actor_critic:
            raise ContractViolation(f"{type(self.agent).__name__} cannot be trained with actor-critic updates")
        if not isinstance(self.env, SnapshotProvider):
            raise ContractViolation("curriculum rewards need an environment that provides state snapshots")

        cfg = self.config
        self._running = True
        self.trainer.clear_stop()
        self.metrics = []
        self.best_lap_time = None
        bc_stats: Optional[BCTrainingStats] = None
        try:
            if cfg.bc_demonstration_episodes > 0 and self.agent.capabilities.supervised:
                self._enter_phase(self.phases[0], 1.0)
                bc_stats = self.trainer.run_bc_warmup()
                self.yield_point()

            current: Optional[str] = None
            for episode in range(1, cfg.rl_episodes + 1):
                if self.trainer.stop_requested:
                    break
                phase = self.phase_for_episode(episode)
                weight = phase.centerline_weight(episode)
                if phase.name != current:
                    current = phase.name
                    self._enter_phase(phase, weight)

                self.reward_calculator.set_weights(centerline=weight)
                stats = self.trainer.run_episode(episode, self.trainer.next_track_seed())
                if stats is None:
                    break

                metrics = CurriculumEpisodeMetrics.from_stats(
                    stats, phase.name, weight, self.reward_calculator.cutting_progress
                )
                self.metrics.append(metrics)
                if metrics.lap_time is not None and (self.best_lap_time is None or metrics.lap_time < self.best_lap_time):
                    self.best_lap_time = metrics.lap_time
                if self.on_episode is not None:
                    self.on_episode(metrics)
                if episode % cfg.log_every == 0 or episode == cfg.rl_episodes:
                    self._log_progress(episode)
                self.yield_point()
        except Exception:
            logger.exception("curriculum training failed after %d episodes", len(self.metrics))
            raise
        finally:
            self._running = False

        stopped = self.trainer.stop_requested
        if stopped:
            logger.info("curriculum training stopped after %d episodes", len(self.metrics))
        result = CurriculumTrainingStats(
            bc_stats=bc_stats,
            rl_episodes=len(self.metrics),
            final_lap_time=self._last_lap_time(),
            best_lap_time=self.best_lap_time,
            avg_reward_last_n=self._average_reward(50),
            stopped=stopped,
        )
        if self.on_training_complete is not None:
            self.on_training_complete(result)
        return result

    def _average_reward(self, n: int) -> float:
        recent = self.metrics[-n:]
        if not recent:
            return 0.0
        return float(np.mean([m.total_reward for m in recent]))

    def _last_lap_time(self) -> Optional[float]:
        for m in reversed(self.metrics):
            if m.lap_time is not None:
                return m.lap_time
        return None

    def _log_progress(self, episode: int) -> None:
        recent = self.metrics[-self.config.log_every:]
        logger.info(
            "[curriculum] episode %d/%d phase=%s cl_weight=%.2f avg_reward=%.1f avg_steps=%.0f laps=%d/%d cl_dev=%.3f",
            episode,
            self.config.rl_episodes,
            recent[-1].phase,
            recent[-1].centerline_weight,
            float(np.mean([m.total_reward for m in recent])),
            float(np.mean([m.steps for m in recent])),
            sum(1 for m in recent if m.laps_completed > 0),
            len(recent),
            float(np.mean([m.avg_centerline_deviation for m in recent])),
        )


__all__ = [
    "PHASE_BEHAVIOR_CLONING",
    "PHASE_HIGH_CENTERLINE",
    "PHASE_TRANSITION",
    "PHASE_SPEED_ONLY",
    "CurriculumConfig",
    "CurriculumPhase",
    "CurriculumEpisodeMetrics",
    "CurriculumTrainingStats",
    "build_phases",
    "phase_for_episode",
    "CurriculumTrainer",
]
