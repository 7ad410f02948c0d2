"""Matching engine and strategies."""

from .engine import (
    CancellationToken,
    MatchingEngine,
    MatchRunResult,
    MatchStatistics,
    SkippedRecord,
)
from .strategies import (
    AmountTolerance,
    Candidate,
    MatchingStrategy,
    MatchScore,
    MatchScorer,
    SingleMatchStrategy,
    TextSimilarity,
)
from .combinations import (
    GroupMatchStrategy,
    ManyToManyStrategy,
    ManyToOneStrategy,
    OneToManyStrategy,
    find_best_subset,
)
from .classifier import UnmatchedClassifier, UnmatchedRecord

__all__ = [
    "CancellationToken",
    "MatchingEngine",
    "MatchRunResult",
    "MatchStatistics",
    "SkippedRecord",
    "AmountTolerance",
    "Candidate",
    "MatchingStrategy",
    "MatchScore",
    "MatchScorer",
    "SingleMatchStrategy",
    "TextSimilarity",
    "GroupMatchStrategy",
    "ManyToManyStrategy",
    "ManyToOneStrategy",
    "OneToManyStrategy",
    "find_best_subset",
    "UnmatchedClassifier",
    "UnmatchedRecord",
]
