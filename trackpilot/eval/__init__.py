"""Lap quality evaluation."""
from .lap_evaluator import LapEvaluator, LapQualityScore, QualityScorer, ReferenceTimes, quality_tier_name

__all__ = ['LapEvaluator', 'LapQualityScore', 'QualityScorer', 'ReferenceTimes', 'quality_tier_name']
