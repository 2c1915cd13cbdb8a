"""Tests for the assignment matcher — proves batch-wide load cap and outcomes."""

import pytest

from peertest.matching.load_index import compute_team_loads
from peertest.matching.matcher import (
    AssignmentMatcher,
    MatchResult,
    OutcomeKind,
    ProjectOutcome,
)
from peertest.matching.selector import CandidateSelector
from peertest.models.assignment import ProposedAssignment
from peertest.models.team import Project, Team


def _teams(n: int) -> list[Team]:
    return [
        Team(team_id=f"T{i}", name=f"Team {i}", subgroup="1A" if i % 2 else "1B")
        for i in range(1, n + 1)
    ]


def _projects(owners: list[str]) -> list[Project]:
    return [
        Project(project_id=f"P{i}", owner_team_id=owner)
        for i, owner in enumerate(owners, 1)
    ]


@pytest.fixture
def matcher() -> AssignmentMatcher:
    return AssignmentMatcher(CandidateSelector(load_cap=2), min_recommended_teams=3)


class TestBatch:
    def test_load_cap_holds_across_batch(self, matcher: AssignmentMatcher) -> None:
        teams = _teams(6)
        projects = _projects([t.team_id for t in teams] * 2)  # 12 projects, 12 slots
        result = matcher.match(projects, teams, {}, seed="batch")

        proposed = [
            ProposedAssignment(o.project_id, tid, o.owner_team_id)
            for o in result.outcomes
            for tid in o.team_ids
        ]
        loads = compute_team_loads(proposed)
        assert all(load <= 2 for load in loads.values())
        assert loads == result.loads

    def test_no_self_testing(self, matcher: AssignmentMatcher) -> None:
        teams = _teams(5)
        projects = _projects([t.team_id for t in teams])
        result = matcher.match(projects, teams, {}, seed="self")
        for outcome in result.outcomes:
            assert outcome.owner_team_id not in outcome.team_ids

    def test_existing_loads_respected(self, matcher: AssignmentMatcher) -> None:
        teams = _teams(4)
        projects = _projects(["T1"])
        result = matcher.match(projects, teams, {"T2": 2, "T4": 2}, seed="x")
        assert result.outcomes[0].team_ids == ("T3",)
        assert result.outcomes[0].kind == OutcomeKind.PARTIAL

    def test_input_loads_not_modified(self, matcher: AssignmentMatcher) -> None:
        loads = {"T2": 1}
        matcher.match(_projects(["T1"]), _teams(4), loads, seed="x")
        assert loads == {"T2": 1}

    def test_exhausted_roster_fails_remaining_projects(self, matcher: AssignmentMatcher) -> None:
        teams = _teams(3)
        projects = _projects(["T1", "T2", "T3", "T1"])
        result = matcher.match(projects, teams, {}, seed="x")
        # 3 teams x cap 2 = 6 slots for 8 requested.
        assert sum(len(o.team_ids) for o in result.outcomes) <= 6
        assert result.count(OutcomeKind.FAILED) + result.count(OutcomeKind.PARTIAL) >= 1

    def test_summary_covers_every_project(self, matcher: AssignmentMatcher) -> None:
        teams = _teams(4)
        projects = _projects(["T1", "T2", "T3", "T4", "T1"])
        summary = matcher.match(projects, teams, {}, seed="s").summary()
        assert sum(summary.values()) == 5
        assert set(summary) == {"fully_assigned", "partially_assigned", "failed"}

    def test_same_seed_same_batch(self, matcher: AssignmentMatcher) -> None:
        teams = _teams(8)
        projects = _projects([t.team_id for t in teams])
        first = matcher.match(projects, teams, {}, seed="repeat")
        second = matcher.match(projects, teams, {}, seed="repeat")
        assert first.outcomes == second.outcomes


class TestWarnings:
    def test_small_roster_warns(self, matcher: AssignmentMatcher) -> None:
        result = matcher.match(_projects(["T1"]), _teams(2), {}, seed="x")
        assert len(result.warnings) == 1
        assert "3 teams" in result.warnings[0]

    def test_adequate_roster_no_warning(self, matcher: AssignmentMatcher) -> None:
        result = matcher.match(_projects(["T1"]), _teams(3), {}, seed="x")
        assert result.warnings == []


class TestOutcome:
    def test_kinds(self) -> None:
        assert ProjectOutcome("P1", "T1", ("T2", "T3")).kind == OutcomeKind.FULL
        assert ProjectOutcome("P1", "T1", ("T2",)).kind == OutcomeKind.PARTIAL
        assert ProjectOutcome("P1", "T1").kind == OutcomeKind.FAILED

    def test_empty_result_summary(self) -> None:
        assert MatchResult().summary() == {
            "fully_assigned": 0,
            "partially_assigned": 0,
            "failed": 0,
        }
