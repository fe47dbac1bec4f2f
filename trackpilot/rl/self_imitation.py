"""Instant self-imitation: train on each good lap as soon as it is driven.

The host application drives the agent and pushes every completed lap into
on_lap_complete(). Laps that clear the quality threshold are marked as
training data in the replay store and the agent gets a short supervised run
on that single lap (a few epochs, batch 32). No batching, no cycles.

Only one training call runs at a time. A qualifying lap that arrives while
one is in flight stays marked as training data but is not trained on.

Usage:
    sil = SelfImitationLearner(store, SILConfig(target_lap_time=58.0))
    sil.start(agent, "monza", agent_best_lap_time=61.4)
    ...
    sil.on_lap_complete(lap)   # from the host's lap-finished hook
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from trackpilot.agents.policy_interface import Agent
from trackpilot.data.replay import LapReplay, ReplayStore
from trackpilot.eval.lap_evaluator import LapEvaluator, LapQualityScore, QualityScorer
from trackpilot.sft.demo_trainer import DemoTrainer, DemoTrainingConfig
from trackpilot.utils.scheduling import YieldPoint, noop_yield

logger = logging.getLogger(__name__)


@dataclass
class SILConfig:
    quality_threshold: float = 50.0  # 0-100
    max_laps_to_keep: int = 30
    epochs_per_lap: int = 5
    batch_size: int = 32
    target_lap_time: Optional[float] = None  # None = run until stopped

    def __post_init__(self):
        """Validate configuration."""
        assert 0.0 <= self.quality_threshold <= 100.0, "quality_threshold must be in [0, 100]"
        assert self.max_laps_to_keep > 0, "max_laps_to_keep must be positive"
        assert self.epochs_per_lap > 0, "epochs_per_lap must be positive"
        assert self.batch_size > 0, "batch_size must be positive"


@dataclass
class SILSession:
    """Counters for one start()/stop() session. Session fields start at zero;
    all_time_best_lap_time carries over from the agent's known best."""

    id: str
    track_id: str
    started_at: float
    session_laps_completed: int = 0
    session_good_laps: int = 0
    session_best_lap_time: Optional[float] = None
    session_training_updates: int = 0
    selected_lap_count: int = 0
    session_auto_added: int = 0
    all_time_best_lap_time: Optional[float] = None
    is_active: bool = True
    ended_at: Optional[float] = None


class SelfImitationLearner:
    def __init__(
        self,
        store: ReplayStore,
        config: Optional[SILConfig] = None,
        scorer: Optional[QualityScorer] = None,
        rng: Optional[np.random.Generator] = None,
        yield_point: YieldPoint = noop_yield,
        on_lap_collected: Optional[Callable[[LapReplay, LapQualityScore], None]] = None,
        on_improvement: Optional[Callable[[float, float], None]] = None,
        on_session_end: Optional[Callable[[SILSession], None]] = None,
    ):
        self.store = store
        self.config = config or SILConfig()
        self.scorer = scorer or LapEvaluator()
        self.rng = rng or np.random.default_rng()
        self.yield_point = yield_point
        self.on_lap_collected = on_lap_collected
        self.on_improvement = on_improvement
        self.on_session_end = on_session_end

        self.agent: Optional[Agent] = None
        self.track_id: Optional[str] = None
        self.session: Optional[SILSession] = None
        self.collected_laps: List[LapReplay] = []
        self._active = False
        self._training = False

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_training(self) -> bool:
        return self._training

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start(
        self,
        agent: Agent,
        track_id: str,
        agent_best_lap_time: Optional[float] = None,
        load_curated: bool = True,
    ) -> SILSession:
        """Bind agent and track and open a session. No-op if already active."""
        if self._active:
            logger.warning("SIL session already running for %s", self.track_id)
            return self.session

        self.agent = agent
        self.track_id = track_id
        self.collected_laps = []
        self._active = True
        if agent_best_lap_time:
            self.scorer.set_agent_best_lap_time(agent_best_lap_time)

        now = time.time()
        self.session = SILSession(
            id=f"sil-{int(now * 1000)}",
            track_id=track_id,
            started_at=now,
            all_time_best_lap_time=agent_best_lap_time,
        )
        if load_curated:
            self.load_selected_laps()

        logger.info(
            "SIL started on %s: threshold %.0f, %d epochs/lap",
            track_id, self.config.quality_threshold, self.config.epochs_per_lap,
        )
        return self.session

    def stop(self) -> None:
        """End the session; on_session_end fires once per session."""
        if not self._active:
            return
        self._active = False
        session = self.session
        session.is_active = False
        session.ended_at = time.time()
        logger.info("SIL stopped: %d training updates", session.session_training_updates)
        if self.on_session_end is not None:
            self.on_session_end(session)

    def load_selected_laps(self) -> int:
        """Load curated laps for the bound track, best quality first."""
        selected = [lap for lap in self.store.get_replays_for_track(self.track_id) if lap.is_training_data]
        selected.sort(key=lambda lap: lap.quality_score or 0.0, reverse=True)
        self.collected_laps = selected[: self.config.max_laps_to_keep]

        if self.collected_laps:
            best = min(lap.lap_time for lap in self.collected_laps)
            self.scorer.set_best_lap_time(best)
            if self.session.all_time_best_lap_time is None or best < self.session.all_time_best_lap_time:
                self.session.all_time_best_lap_time = best
        self.session.selected_lap_count = len(self.collected_laps)
        logger.info("SIL loaded %d curated laps", len(self.collected_laps))
        return len(self.collected_laps)

    # ------------------------------------------------------------------
    # Lap events
    # ------------------------------------------------------------------

    def _record_times(self, lap: LapReplay) -> None:
        session = self.session
        if session.session_best_lap_time is None or lap.lap_time < session.session_best_lap_time:
            old = session.session_best_lap_time
            session.session_best_lap_time = lap.lap_time
            if old is not None and self.on_improvement is not None:
                self.on_improvement(old, lap.lap_time)
        if session.all_time_best_lap_time is None or lap.lap_time < session.all_time_best_lap_time:
            session.all_time_best_lap_time = lap.lap_time
            self.scorer.set_best_lap_time(lap.lap_time)

    def on_lap_complete(self, lap: LapReplay) -> Optional[LapQualityScore]:
        """Score a finished lap and train on it if it is good enough.

        Returns the score, or None if the lap was ignored.
        """
        if not self._active or lap.track_id != self.track_id:
            return None

        self.session.session_laps_completed += 1
        score = self.scorer.evaluate(lap)
        self._record_times(lap)

        if score.overall < self.config.quality_threshold:
            logger.debug("lap %s scored %d, below threshold", lap.id, score.overall)
            return score

        lap.quality_score = score.overall
        self.store.set_training_data(lap.id, True)
        self.session.session_good_laps += 1
        self.session.session_auto_added += 1
        self.session.selected_lap_count += 1
        self._keep(lap)
        if self.on_lap_collected is not None:
            self.on_lap_collected(lap, score)

        if self.train_on_lap(lap) and self._target_reached():
            logger.info("SIL target lap time %.2fs reached", self.config.target_lap_time)
            self.stop()
        return score

    def _keep(self, lap: LapReplay) -> None:
        self.collected_laps.append(lap)
        if len(self.collected_laps) > self.config.max_laps_to_keep:
            self.collected_laps.sort(key=lambda r: r.quality_score or 0.0, reverse=True)
            del self.collected_laps[self.config.max_laps_to_keep:]

    def train_on_lap(self, lap: LapReplay) -> bool:
        """Short supervised run on one lap; False if a run was already in flight."""
        if self._training:
            logger.info("SIL training in progress, skipping lap %s", lap.id)
            return False

        self._training = True
        try:
            trainer = DemoTrainer(
                config=DemoTrainingConfig(
                    epochs=self.config.epochs_per_lap,
                    batch_size=self.config.batch_size,
                    log_every=self.config.epochs_per_lap,
                ),
                rng=self.rng,
                yield_point=self.yield_point,
            )
            stats = trainer.train_on_laps(self.agent, [lap])
            self.session.session_training_updates += 1
            logger.debug("SIL trained on %s: final loss %.6f", lap.id, stats.final_loss)
            return True
        except Exception:
            logger.exception("SIL training failed on lap %s", lap.id)
            raise
        finally:
            self._training = False

    def _target_reached(self) -> bool:
        target = self.config.target_lap_time
        best = self.session.session_best_lap_time if self.session else None
        return target is not None and best is not None and best <= target

    @property
    def collected_lap_count(self) -> int:
        return len(self.collected_laps)


__all__ = ["SILConfig", "SILSession", "SelfImitationLearner"]
