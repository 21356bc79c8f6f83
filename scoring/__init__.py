"""
Match Engine scoring core.

Public API: calculate_match_statistics(...) -> MatchStatistics
"""
from scoring.models import ConfidenceLevel, CommitSnapshot, MatchStatistics, SampleMatch
from scoring.match_scorer import (
    calculate_match_statistics,
    calculate_suspicion_score,
    get_confidence_level,
)
from scoring.normalization import normalize_message, truncate_to_minute

__all__ = [
    'ConfidenceLevel',
    'CommitSnapshot',
    'MatchStatistics',
    'SampleMatch',
    'calculate_match_statistics',
    'calculate_suspicion_score',
    'get_confidence_level',
    'normalize_message',
    'truncate_to_minute',
]
