"""Matching of observed transactions to recurring templates."""

from .engine import (
    STOP_WORDS,
    CandidateScore,
    MatchResult,
    MatchScore,
    MatchScorer,
    MatchStatus,
    tokenize,
)

__all__ = [
    "STOP_WORDS",
    "CandidateScore",
    "MatchResult",
    "MatchScore",
    "MatchScorer",
    "MatchStatus",
    "tokenize",
]
