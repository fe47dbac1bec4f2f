"""Lap quality scoring.

Scores a recorded lap 0-100 for use as imitation data:

- time (0-50): closeness to the best known lap time
- consistency (0-20): sector time spread, or deltas to best sectors
- validity (0-20): clean laps get the full bonus
- improvement (0-10): beating the agent's previous best
- incidents (0 to -30): off-track and wall hits, weighted by severity

Without any reference times a clean lap scores about 50 ("Good").

Usage
-----
    evaluator = LapEvaluator()
    evaluator.set_best_lap_time(61.2)
    score = evaluator.evaluate(lap)
    print(score.summary())
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from trackpilot.data.replay import LapReplay

TIER_EXCELLENT = 85
TIER_GREAT = 70
TIER_GOOD = 50


def quality_tier_name(score: float) -> str:
    if score >= TIER_EXCELLENT:
        return "Excellent"
    if score >= TIER_GREAT:
        return "Great"
    if score >= TIER_GOOD:
        return "Good"
    return "Poor"


@dataclass
class LapQualityScore:
    """Breakdown of a lap's quality."""
    overall: int  # 0-100
    time_score: int  # 0-50
    consistency_score: int  # 0-20
    validity_bonus: int  # 0-20
    improvement_bonus: int  # 0-10
    incident_penalty: int  # -30-0
    star_rating: float  # 0-5

    def to_dict(self) -> dict:
        return {
            "overall": self.overall,
            "time_score": self.time_score,
            "consistency_score": self.consistency_score,
            "validity_bonus": self.validity_bonus,
            "improvement_bonus": self.improvement_bonus,
            "incident_penalty": self.incident_penalty,
            "star_rating": self.star_rating,
        }

    def summary(self) -> str:
        return (
            f"{self.overall} ({quality_tier_name(self.overall)}) | "
            f"time {self.time_score} | consistency {self.consistency_score} | "
            f"validity {self.validity_bonus} | improvement {self.improvement_bonus} | "
            f"incidents {self.incident_penalty}"
        )


@dataclass
class ReferenceTimes:
    best_lap_time: float = math.inf
    best_sector_times: List[float] = field(default_factory=lambda: [math.inf, math.inf, math.inf])
    agent_best_lap_time: Optional[float] = None


class QualityScorer(Protocol):
    def evaluate(self, lap: LapReplay) -> LapQualityScore: ...

    def set_best_lap_time(self, time: float) -> None: ...

    def set_agent_best_lap_time(self, time: Optional[float]) -> None: ...


class LapEvaluator:
    def __init__(self, reference: Optional[ReferenceTimes] = None):
        self.reference = reference or ReferenceTimes()

    def set_best_lap_time(self, time: float) -> None:
        """Lower the reference best lap time (never raises it)."""
        if time < self.reference.best_lap_time:
            self.reference.best_lap_time = float(time)

    def set_best_sector_times(self, times: Sequence[float]) -> None:
        for i, t in enumerate(list(times)[:3]):
            if t < self.reference.best_sector_times[i]:
                self.reference.best_sector_times[i] = float(t)

    def set_agent_best_lap_time(self, time: Optional[float]) -> None:
        self.reference.agent_best_lap_time = time

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def time_score(self, lap_time: float) -> float:
        best = self.reference.best_lap_time
        if math.isinf(best) or best <= 0:
            return 20.0

        pct = (lap_time - best) / best * 100
        if pct <= 0:
            return 50.0
        if pct <= 2:
            return 50 - pct * 2.5
        if pct <= 5:
            return 45 - (pct - 2) * 3.33
        if pct <= 10:
            return 35 - (pct - 5) * 2
        if pct <= 20:
            return 25 - (pct - 10)
        if pct <= 30:
            return 15 - (pct - 20)
        return 5.0

    def relative_time_score(self, lap_time: float, all_lap_times: Sequence[float]) -> float:
        """0-50 from the lap's percentile rank among all laps on the track."""
        if len(all_lap_times) <= 1:
            return 25.0
        ranked = sorted(all_lap_times)
        rank = next((i for i, t in enumerate(ranked) if t >= lap_time), len(ranked))
        return float(round((1 - rank / len(ranked)) * 50))

    def consistency_score(self, sector_times: Sequence[float]) -> float:
        if not sector_times or len(sector_times) < 3:
            return 5.0

        best = self.reference.best_sector_times
        if any(math.isinf(t) for t in best):
            mean = sum(sector_times) / len(sector_times)
            if mean <= 0:
                return 5.0
            variance = sum((t - mean) ** 2 for t in sector_times) / len(sector_times)
            cv = math.sqrt(variance) / mean
            if cv < 0.05:
                return 20.0
            if cv < 0.1:
                return 15.0
            if cv < 0.2:
                return 10.0
            return 5.0

        avg_pct = sum(abs((sector_times[i] - best[i]) / best[i]) * 100 for i in range(3)) / 3
        if avg_pct <= 3:
            return 20.0
        if avg_pct <= 7:
            return 15.0
        if avg_pct <= 15:
            return 10.0
        return 5.0

    def validity_bonus(self, lap: LapReplay) -> float:
        if not lap.incidents:
            return 20.0
        if sum(i.severity for i in lap.incidents) < 0.5:
            return 10.0
        return 0.0

    def incident_penalty(self, lap: LapReplay) -> float:
        penalty = 0.0
        for incident in lap.incidents:
            if incident.kind == "off_track":
                penalty -= 8 * incident.severity
            elif incident.kind == "wall_collision":
                penalty -= 15 * incident.severity
        return max(-30.0, penalty)

    def improvement_bonus(self, lap_time: float) -> float:
        agent_best = self.reference.agent_best_lap_time
        if not agent_best or math.isinf(agent_best):
            return 3.0
        pct = (lap_time - agent_best) / agent_best * 100
        if pct <= 0:
            return 10.0
        if pct <= 2:
            return 7.0
        if pct <= 5:
            return 5.0
        if pct <= 10:
            return 3.0
        return 0.0

    def estimate_star_rating(self, lap: LapReplay) -> float:
        """5 stars minus incident deductions, rounded to the nearest half star."""
        stars = 5.0
        for incident in lap.incidents:
            if incident.kind == "off_track":
                stars -= 0.5 * incident.severity
            elif incident.kind == "wall_collision":
                stars -= 1.0 * incident.severity
        return max(0.0, round(stars * 2) / 2)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _combine(self, lap: LapReplay, time_score: float) -> LapQualityScore:
        consistency = self.consistency_score(lap.sector_times)
        validity = self.validity_bonus(lap)
        improvement = self.improvement_bonus(lap.lap_time)
        incidents = self.incident_penalty(lap)
        stars = lap.star_rating if lap.star_rating is not None else self.estimate_star_rating(lap)

        overall = max(0.0, min(100.0, time_score + consistency + validity + improvement + incidents))
        return LapQualityScore(
            overall=int(round(overall)),
            time_score=int(round(time_score)),
            consistency_score=int(round(consistency)),
            validity_bonus=int(round(validity)),
            improvement_bonus=int(round(improvement)),
            incident_penalty=int(round(incidents)),
            star_rating=stars,
        )

    def evaluate(self, lap: LapReplay) -> LapQualityScore:
        return self._combine(lap, self.time_score(lap.lap_time))

    def evaluate_with_context(self, lap: LapReplay, all_lap_times: Sequence[float]) -> LapQualityScore:
        """Like evaluate, but time is scored by percentile among all_lap_times."""
        return self._combine(lap, self.relative_time_score(lap.lap_time, all_lap_times))

    def is_good_enough(self, lap: LapReplay, threshold: float = 40) -> bool:
        return self.evaluate(lap).overall >= threshold

    def select_best_laps(self, laps: Sequence[LapReplay], top_percent: float = 30, min_count: int = 1) -> List[LapReplay]:
        if not laps:
            return []
        scored = sorted(laps, key=lambda lap: self.evaluate(lap).overall, reverse=True)
        keep = max(min_count, math.ceil(len(laps) * top_percent / 100))
        return scored[:keep]

    def select_laps_above_threshold(self, laps: Sequence[LapReplay], threshold: float = 40) -> List[LapReplay]:
        return [lap for lap in laps if self.evaluate(lap).overall >= threshold]


__all__ = [
    "TIER_EXCELLENT",
    "TIER_GREAT",
    "TIER_GOOD",
    "quality_tier_name",
    "LapQualityScore",
    "ReferenceTimes",
    "QualityScorer",
    "LapEvaluator",
]
