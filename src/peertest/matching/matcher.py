"""Assignment matcher — runs the candidate selector over a batch.

A single running load index is threaded through every selection, so a
batch of many projects respects the load cap across the whole batch,
not only within one project. Nothing here is persisted; the result is
handed to the proposal manager.
"""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass, field
from typing import Optional, Sequence

import structlog

from peertest.matching.selector import CandidateSelector
from peertest.models.team import Project, Team

logger = structlog.get_logger()


class OutcomeKind(str, enum.Enum):
    FULL = "fully_assigned"
    PARTIAL = "partially_assigned"
    FAILED = "failed"


@dataclass(frozen=True)
class ProjectOutcome:
    """Selection outcome for one project in a batch."""
    project_id: str
    owner_team_id: str
    team_ids: tuple[str, ...] = ()

    @property
    def kind(self) -> OutcomeKind:
        if len(self.team_ids) >= 2:
            return OutcomeKind.FULL
        if self.team_ids:
            return OutcomeKind.PARTIAL
        return OutcomeKind.FAILED


@dataclass
class MatchResult:
    """Per-project outcomes plus the final in-memory load index."""
    outcomes: list[ProjectOutcome] = field(default_factory=list)
    loads: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind == kind)

    def summary(self) -> dict[str, int]:
        return {
            "fully_assigned": self.count(OutcomeKind.FULL),
            "partially_assigned": self.count(OutcomeKind.PARTIAL),
            "failed": self.count(OutcomeKind.FAILED),
        }


class AssignmentMatcher:
    """Proposes testing teams for every project in a batch.

    Usage:
        matcher = AssignmentMatcher(CandidateSelector(load_cap=2))
        result = matcher.match(unassigned, teams, loads, seed="round-1")
    """

    def __init__(
        self,
        selector: CandidateSelector,
        min_recommended_teams: int = 3,
    ) -> None:
        self._selector = selector
        self._min_recommended_teams = min_recommended_teams

    def match(
        self,
        projects: Sequence[Project],
        teams: Sequence[Team],
        loads: dict[str, int],
        seed: Optional[str] = None,
    ) -> MatchResult:
        """Select testers for each project, in input order.

        Args:
            projects: Projects with no durable assignment.
            teams: The full team roster.
            loads: Index seeded from every active durable assignment.
            seed: Randomness seed for reproducible tie-breaks.
        """
        rng = random.Random()
        if seed is not None:
            rng.seed(seed)

        result = MatchResult(loads=dict(loads))
        if len(teams) < self._min_recommended_teams:
            result.warnings.append(
                f"At least {self._min_recommended_teams} teams are recommended "
                f"for good distribution; roster has {len(teams)}"
            )

        for project in projects:
            selection = self._selector.select(project, teams, result.loads, rng=rng)
            result.loads = selection.loads
            result.outcomes.append(
                ProjectOutcome(
                    project_id=project.project_id,
                    owner_team_id=project.owner_team_id,
                    team_ids=tuple(t.team_id for t in selection.teams),
                )
            )

        logger.debug(
            "Batch matched",
            projects=len(projects),
            teams=len(teams),
            **result.summary(),
        )
        return result
