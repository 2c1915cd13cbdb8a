"""Candidate selector — picks up to two testing teams for one project.

Hard constraints (never relaxed):
- The owning team never tests its own project.
- No team is pushed past the load cap.
- The two teams are distinct.

Soft preference (relaxed tier by tier when the roster is too small):
- Team 1 from a subgroup other than the project's.
- Team 2 from a subgroup other than both the project's and Team 1's,
  then other than the project's only, then any subgroup.

Within a tier the least-loaded team wins; ties are broken at random.
The randomness source is pluggable so tests can seed it.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from peertest.matching.load_index import load_of
from peertest.models.team import Project, Team


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of selecting testers for one project.

    loads is the caller's index with the selected teams already counted.
    """
    team1: Optional[Team]
    team2: Optional[Team]
    loads: dict[str, int] = field(default_factory=dict)

    @property
    def teams(self) -> list[Team]:
        return [t for t in (self.team1, self.team2) if t is not None]

    @property
    def complete(self) -> bool:
        return self.team1 is not None and self.team2 is not None


def pick_least_loaded(
    candidates: Sequence[Team],
    loads: dict[str, int],
    load_cap: int,
    rng: random.Random,
) -> Optional[Team]:
    """Choose a minimum-load team under the cap, uniformly among ties."""
    eligible = [t for t in candidates if load_of(loads, t.team_id) < load_cap]
    if not eligible:
        return None
    min_load = min(load_of(loads, t.team_id) for t in eligible)
    best = [t for t in eligible if load_of(loads, t.team_id) == min_load]
    return rng.choice(best)


class CandidateSelector:
    """Selects testing teams for a project from the roster.

    Usage:
        selector = CandidateSelector(load_cap=2)
        result = selector.select(project, teams, loads, rng=random.Random("seed"))
        if result.team1 is not None:
            loads = result.loads
    """

    def __init__(self, load_cap: int = 2) -> None:
        self._load_cap = load_cap

    @property
    def load_cap(self) -> int:
        return self._load_cap

    def select(
        self,
        project: Project,
        teams: Sequence[Team],
        loads: dict[str, int],
        rng: Optional[random.Random] = None,
    ) -> SelectionResult:
        """Select up to two testing teams for a project.

        The input index is not modified; the returned result carries a
        copy with the chosen teams incremented.
        """
        rng = rng or random.Random()
        local = dict(loads)
        owner_id = project.owner_team_id
        project_subgroup = _subgroup_of(owner_id, teams)

        base = [
            t for t in teams
            if t.team_id != owner_id and load_of(local, t.team_id) < self._load_cap
        ]

        team1 = self._first_non_empty(
            [
                lambda t: t.subgroup != project_subgroup,
                lambda t: True,
            ],
            base, local, rng,
        )
        if team1 is None:
            return SelectionResult(team1=None, team2=None, loads=local)

        local[team1.team_id] = load_of(local, team1.team_id) + 1

        remaining = [
            t for t in base
            if t.team_id != team1.team_id
            and load_of(local, t.team_id) < self._load_cap
        ]
        team2 = self._first_non_empty(
            [
                lambda t: t.subgroup != project_subgroup and t.subgroup != team1.subgroup,
                lambda t: t.subgroup != project_subgroup,
                lambda t: True,
            ],
            remaining, local, rng,
        )
        if team2 is not None:
            local[team2.team_id] = load_of(local, team2.team_id) + 1

        return SelectionResult(team1=team1, team2=team2, loads=local)

    def _first_non_empty(
        self,
        tiers: list[Callable[[Team], bool]],
        pool: list[Team],
        loads: dict[str, int],
        rng: random.Random,
    ) -> Optional[Team]:
        """Walk preference tiers in order; stop at the first that yields a team."""
        for accept in tiers:
            chosen = pick_least_loaded(
                [t for t in pool if accept(t)], loads, self._load_cap, rng,
            )
            if chosen is not None:
                return chosen
        return None


def _subgroup_of(team_id: str, teams: Sequence[Team]) -> Optional[str]:
    for t in teams:
        if t.team_id == team_id:
            return t.subgroup
    return None
