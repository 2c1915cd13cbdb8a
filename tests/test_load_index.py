"""Tests for the team load index — proves what counts toward a team's load."""

from typing import Optional

from peertest.matching.load_index import compute_team_loads, load_of
from peertest.models.assignment import Assignment, ProposedAssignment, WorkflowStatus


def _durable(
    aid: str,
    project: str,
    tester: str,
    workflow: WorkflowStatus = WorkflowStatus.ASSIGNED,
    lock: Optional[str] = None,
) -> Assignment:
    return Assignment(
        assignment_id=aid,
        project_id=project,
        testing_team_id=tester,
        owner_team_id="OWNER",
        workflow_status=workflow,
        locked_by_report_id=lock,
    )


def _proposed(project: str, tester: str) -> ProposedAssignment:
    return ProposedAssignment(project_id=project, testing_team_id=tester, owner_team_id="OWNER")


class TestComputeTeamLoads:
    def test_empty(self) -> None:
        assert compute_team_loads([]) == {}

    def test_counts_per_testing_team(self) -> None:
        loads = compute_team_loads([
            _durable("A1", "P1", "T2"),
            _durable("A2", "P2", "T2"),
            _durable("A3", "P2", "T3"),
        ])
        assert loads == {"T2": 2, "T3": 1}

    def test_completed_do_not_count(self) -> None:
        loads = compute_team_loads([
            _durable("A1", "P1", "T2", workflow=WorkflowStatus.COMPLETED),
            _durable("A2", "P2", "T2"),
        ])
        assert loads == {"T2": 1}

    def test_locked_still_count(self) -> None:
        loads = compute_team_loads([_durable("A1", "P1", "T2", lock="LR-1")])
        assert loads == {"T2": 1}

    def test_exclude_project(self) -> None:
        items = [
            _durable("A1", "P1", "T2"),
            _durable("A2", "P2", "T2"),
        ]
        assert compute_team_loads(items, exclude_project_id="P1") == {"T2": 1}

    def test_proposals_count(self) -> None:
        loads = compute_team_loads([
            _durable("A1", "P1", "T2"),
            _proposed("P2", "T2"),
            _proposed("P2", "T3"),
        ])
        assert loads == {"T2": 2, "T3": 1}

    def test_missing_tester_is_ignored(self) -> None:
        loads = compute_team_loads([_durable("A1", "P1", ""), _proposed("P2", "")])
        assert loads == {}


class TestLoadOf:
    def test_unknown_team_has_zero_load(self) -> None:
        assert load_of({"T2": 1}, "T9") == 0

    def test_known_team(self) -> None:
        assert load_of({"T2": 1}, "T2") == 1
