"""Matching module — team load index, candidate selector, batch matcher."""

from peertest.matching.load_index import compute_team_loads, load_of
from peertest.matching.matcher import (
    AssignmentMatcher,
    MatchResult,
    OutcomeKind,
    ProjectOutcome,
)
from peertest.matching.selector import CandidateSelector, SelectionResult

__all__ = [
    "compute_team_loads",
    "load_of",
    "AssignmentMatcher",
    "MatchResult",
    "OutcomeKind",
    "ProjectOutcome",
    "CandidateSelector",
    "SelectionResult",
]
