"""Tests for lap quality scoring."""

from __future__ import annotations

import pytest

from trackpilot.data.replay import LapIncident, LapReplay
from trackpilot.eval.lap_evaluator import LapEvaluator, quality_tier_name


def _lap(lap_time=60.0, sectors=(20.0, 20.0, 20.0), incidents=(), lap_id="lap", stars=None) -> LapReplay:
    return LapReplay(
        id=lap_id,
        track_id="oval",
        frames=[],
        lap_time=lap_time,
        sector_times=list(sectors),
        incidents=list(incidents),
        star_rating=stars,
    )


def test_clean_lap_without_references():
    score = LapEvaluator().evaluate(_lap())
    assert score.time_score == 20
    assert score.consistency_score == 20
    assert score.validity_bonus == 20
    assert score.improvement_bonus == 3
    assert score.incident_penalty == 0
    assert score.overall == 63
    assert score.star_rating == 5.0
    assert quality_tier_name(score.overall) == "Good"


def test_best_lap_and_personal_best_scores_100():
    evaluator = LapEvaluator()
    evaluator.set_best_lap_time(60.0)
    evaluator.set_agent_best_lap_time(62.0)
    score = evaluator.evaluate(_lap(60.0))
    assert score.time_score == 50
    assert score.improvement_bonus == 10
    assert score.overall == 100


def test_best_lap_time_only_moves_down():
    evaluator = LapEvaluator()
    evaluator.set_best_lap_time(60.0)
    evaluator.set_best_lap_time(65.0)
    assert evaluator.reference.best_lap_time == 60.0


def test_time_score_piecewise():
    evaluator = LapEvaluator()
    evaluator.set_best_lap_time(100.0)
    assert evaluator.time_score(101.0) == pytest.approx(47.5)
    assert evaluator.time_score(110.0) == pytest.approx(25.0)
    assert evaluator.time_score(140.0) == 5.0


def test_incidents_penalize_and_cap():
    evaluator = LapEvaluator()
    dirty = _lap(incidents=[LapIncident(10, "wall_collision", 1.0), LapIncident(20, "wall_collision", 1.0)])
    score = evaluator.evaluate(dirty)
    assert score.incident_penalty == -30
    assert score.validity_bonus == 0
    assert score.star_rating == 3.0

    minor = evaluator.evaluate(_lap(incidents=[LapIncident(5, "off_track", 0.25)]))
    assert minor.validity_bonus == 10
    assert minor.incident_penalty == -2


def test_stored_star_rating_wins():
    assert LapEvaluator().evaluate(_lap(stars=2)).star_rating == 2


def test_consistency_uses_sector_references_when_known():
    evaluator = LapEvaluator()
    evaluator.set_best_sector_times([20.0, 20.0, 20.0])
    assert evaluator.consistency_score([21.0, 21.0, 21.0]) == 15.0
    assert evaluator.consistency_score([20.0, 20.0]) == 5.0


def test_relative_time_score():
    evaluator = LapEvaluator()
    times = [60.0, 62.0, 64.0, 66.0]
    assert evaluator.relative_time_score(60.0, times) == 50.0
    assert evaluator.relative_time_score(64.0, times) == 25.0
    assert evaluator.relative_time_score(70.0, times) == 0.0
    assert evaluator.relative_time_score(70.0, [70.0]) == 25.0


def test_lap_selection():
    evaluator = LapEvaluator()
    clean = _lap(lap_id="clean")
    dirty = _lap(lap_id="dirty", incidents=[LapIncident(1, "wall_collision", 1.0)])
    assert evaluator.select_best_laps([dirty, clean], top_percent=10) == [clean]
    assert evaluator.select_laps_above_threshold([dirty, clean], threshold=50) == [clean]
    assert evaluator.select_best_laps([]) == []
