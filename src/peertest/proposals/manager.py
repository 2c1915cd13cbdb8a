"""Proposal/confirmation transaction manager.

Bridges matcher output to durable assignments:
- propose: hold a batch as a draft; nothing durable changes.
- reroll / edit_proposal: change one project's proposal inside the draft.
- confirm_all: write each project's proposal as its own atomic batch.
- cancel: discard the draft.
- manual_assign / reassign: single-project writes outside the batch flow.

Every write re-validates against live durable state inside the same
store transaction that performs it: the load cap, no self-testing and
distinct teams. A proposal computed earlier is never trusted as-is.

Per-project atomicity: a project's assignment set is replaced by
delete-then-create within one batch, so no reader ever sees it half
updated. Failures of one project in confirm_all do not roll back others.
"""

from __future__ import annotations

import random
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import structlog

from peertest.errors import (
    AssignmentError,
    CapacityError,
    ConflictError,
    ValidationError,
)
from peertest.matching.load_index import compute_team_loads, load_of
from peertest.matching.matcher import MatchResult
from peertest.matching.selector import CandidateSelector
from peertest.models.assignment import Assignment, ProposedAssignment, WorkflowStatus
from peertest.models.team import Project
from peertest.persistence.state_store import StateStore, Transaction
from peertest.proposals.draft import ProposalDraft, ProposalLease

logger = structlog.get_logger()

# Marker accepted by reassign() for "leave this slot empty".
NONE = "NONE"


@dataclass(frozen=True)
class ProjectFailure:
    """Why one project in a confirmed draft was not written.

    team_id and slot are set for capacity failures so the caller can
    tell which of the two testing teams was full.
    """
    reason: str
    error_kind: str
    team_id: Optional[str] = None
    slot: Optional[int] = None

    @staticmethod
    def from_error(e: AssignmentError) -> ProjectFailure:
        if isinstance(e, CapacityError):
            return ProjectFailure(str(e), e.kind, team_id=e.team_id, slot=e.slot)
        return ProjectFailure(str(e), e.kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "error_kind": self.error_kind,
            "team_id": self.team_id,
            "slot": self.slot,
        }


@dataclass
class ConfirmationReport:
    """Per-project outcome of confirming a draft."""
    draft_id: str
    succeeded: list[str] = field(default_factory=list)
    failures: dict[str, ProjectFailure] = field(default_factory=dict)

    @property
    def succeeded_count(self) -> int:
        return len(self.succeeded)

    @property
    def failed_count(self) -> int:
        return len(self.failures)


class AssignmentManager:
    """Governs which proposed assignments become durable.

    Usage:
        manager = AssignmentManager(store, CandidateSelector(load_cap=2))
        draft = manager.propose(matcher.match(...))
        manager.reroll(project_id, seed="again")
        report = manager.confirm_all(draft.draft_id)
    """

    def __init__(
        self,
        store: StateStore,
        selector: CandidateSelector,
        lease: Optional[ProposalLease] = None,
    ) -> None:
        self._store = store
        self._selector = selector
        self._lease = lease or ProposalLease()
        self._draft: Optional[ProposalDraft] = None
        self._draft_counter = 0
        self._lock = threading.RLock()

    @property
    def draft(self) -> Optional[ProposalDraft]:
        return self._draft

    @property
    def lease(self) -> ProposalLease:
        return self._lease

    def is_pending(self, project_id: str) -> bool:
        """True if the outstanding draft holds a proposal for project_id."""
        draft = self._draft
        return draft is not None and project_id in draft.proposals

    # ------------------------------------------------------------------
    # Draft lifecycle
    # ------------------------------------------------------------------

    def propose(self, match: MatchResult) -> ProposalDraft:
        """Hold a matcher batch as the outstanding draft.

        Projects the matcher could not assign get no proposal. If no
        project got one, the returned draft is empty and no lease is
        taken.

        Raises ConflictError if a draft is already outstanding.
        """
        with self._lock:
            self._draft_counter += 1
            draft = ProposalDraft(
                draft_id=f"DRAFT-{self._draft_counter:04d}",
                created_utc=datetime.now(timezone.utc),
                summary=match.summary(),
            )
            for outcome in match.outcomes:
                if not outcome.team_ids:
                    continue
                draft.proposals[outcome.project_id] = [
                    ProposedAssignment(
                        project_id=outcome.project_id,
                        testing_team_id=tid,
                        owner_team_id=outcome.owner_team_id,
                    )
                    for tid in outcome.team_ids
                ]
            if draft.is_empty:
                self._lease.ensure_free("generate proposals")
                return draft

            self._lease.acquire(draft.draft_id)
            self._draft = draft
            logger.info(
                "Proposals held",
                draft_id=draft.draft_id,
                projects=len(draft.proposals),
                **draft.summary,
            )
            return draft

    def reroll(self, project_id: str, seed: Optional[str] = None) -> list[ProposedAssignment]:
        """Re-select testers for one proposed project.

        The load index counts durable assignments plus every other
        proposal in the draft, excluding this project's own entries, so
        the reroll cannot push a team over the cap the draft relies on.
        """
        with self._lock:
            draft = self._require_draft_for(project_id)
            project = self._require_project(self._store, project_id)

            loads = compute_team_loads(
                list(self._store.list_assignments()) + draft.all_proposals(project_id),
                exclude_project_id=project_id,
            )
            rng = random.Random()
            if seed is not None:
                rng.seed(seed)
            selection = self._selector.select(project, self._store.list_teams(), loads, rng=rng)
            if selection.team1 is None:
                raise CapacityError(
                    f"No available teams with capacity to reassign project {project_id}"
                )

            proposals = [
                ProposedAssignment(
                    project_id=project_id,
                    testing_team_id=t.team_id,
                    owner_team_id=project.owner_team_id,
                )
                for t in selection.teams
            ]
            draft.proposals[project_id] = proposals
            logger.info(
                "Proposal rerolled",
                draft_id=draft.draft_id,
                project_id=project_id,
                teams=[p.testing_team_id for p in proposals],
            )
            return proposals

    def edit_proposal(
        self,
        project_id: str,
        team1_id: str,
        team2_id: Optional[str] = None,
    ) -> list[ProposedAssignment]:
        """Replace one project's proposal by hand.

        Capacity is not checked here; it is re-validated at confirmation.
        """
        with self._lock:
            draft = self._require_draft_for(project_id)
            project = self._require_project(self._store, project_id)
            team_ids = _present([team1_id, team2_id])
            if not team_ids:
                raise ValidationError("At least one team is required")
            self._validate_teams(self._store, project, team_ids)

            proposals = [
                ProposedAssignment(
                    project_id=project_id,
                    testing_team_id=tid,
                    owner_team_id=project.owner_team_id,
                )
                for tid in team_ids
            ]
            draft.proposals[project_id] = proposals
            logger.info(
                "Proposal edited",
                draft_id=draft.draft_id,
                project_id=project_id,
                teams=team_ids,
            )
            return proposals

    def confirm_all(self, draft_id: Optional[str] = None) -> ConfirmationReport:
        """Write every proposal in the draft, one atomic batch per project.

        The draft is released afterwards whatever the per-project
        outcomes; failed projects simply remain unassigned.
        """
        with self._lock:
            draft = self._draft
            if draft is None:
                raise ConflictError("No pending proposals to confirm")
            if draft_id is not None and draft_id != draft.draft_id:
                raise ConflictError(
                    f"Draft {draft_id} is not the pending draft ({draft.draft_id})"
                )

            report = ConfirmationReport(draft_id=draft.draft_id)
            for project_id, proposals in draft.proposals.items():
                team_ids = [p.testing_team_id for p in proposals]
                try:
                    self._commit_assignments(project_id, team_ids)
                    report.succeeded.append(project_id)
                except AssignmentError as e:
                    report.failures[project_id] = ProjectFailure.from_error(e)
                    logger.warning(
                        "Proposal confirmation failed",
                        draft_id=draft.draft_id,
                        project_id=project_id,
                        error=str(e),
                    )

            self._discard_draft()
            logger.info(
                "Proposals confirmed",
                draft_id=draft.draft_id,
                succeeded=report.succeeded_count,
                failed=report.failed_count,
            )
            return report

    def cancel(self) -> int:
        """Discard the outstanding draft, if any.

        Returns the number of projects whose proposals were dropped.
        Safe to call repeatedly.
        """
        with self._lock:
            draft = self._draft
            if draft is None:
                return 0
            self._discard_draft()
            logger.info("Proposals cancelled", draft_id=draft.draft_id, projects=len(draft.proposals))
            return len(draft.proposals)

    # ------------------------------------------------------------------
    # Single-project writes
    # ------------------------------------------------------------------

    def manual_assign(self, project_id: str, team1_id: str, team2_id: str) -> list[Assignment]:
        """Assign two named teams to an unassigned project.

        Both teams must be under the cap in live durable state; there is
        no fallback to a single team.
        """
        with self._lock:
            self._lease.ensure_free("assign manually")
            if not team1_id or not team2_id:
                raise ValidationError("Please select a project and two different teams")
            return self._commit_assignments(
                project_id, [team1_id, team2_id], require_unassigned=True,
            )

    def reassign(
        self,
        project_id: str,
        team1_id: Optional[str],
        team2_id: Optional[str],
    ) -> list[Assignment]:
        """Replace an assigned project's testers with 0, 1 or 2 teams.

        None, "" or NONE clears a slot. Refused while any draft is
        outstanding, anywhere in the system.
        """
        with self._lock:
            self._lease.ensure_free("reassign a project")
            return self._commit_assignments(
                project_id, _present([team1_id, team2_id]), require_assigned=True,
            )

    def mark_complete(self, assignment_id: str) -> Assignment:
        """Record that a testing team finished its assignment.

        Refused while the assignment is locked by a link report.
        """
        with self._store.transaction() as txn:
            assignment = txn.get_assignment(assignment_id)
            if assignment is None:
                raise ValidationError(f"Assignment not found: {assignment_id}")
            if not assignment.is_active:
                raise ConflictError(f"Assignment {assignment_id} is already completed")
            if assignment.is_locked:
                raise ConflictError(
                    f"Testing on assignment {assignment_id} is locked by link report "
                    f"{assignment.locked_by_report_id}"
                )
            completed = replace(
                assignment,
                workflow_status=WorkflowStatus.COMPLETED,
                completed_utc=datetime.now(timezone.utc),
            )
            txn.put_assignment(completed)

        logger.info(
            "Assignment completed",
            assignment_id=assignment_id,
            project_id=completed.project_id,
        )
        return completed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _commit_assignments(
        self,
        project_id: str,
        team_ids: list[str],
        require_unassigned: bool = False,
        require_assigned: bool = False,
    ) -> list[Assignment]:
        """Validate against live state and replace the project's assignments.

        Validation, the capacity check, and the delete-then-create writes
        happen inside one store transaction.
        """
        with self._store.transaction() as txn:
            project = self._require_project(txn, project_id)
            self._validate_teams(txn, project, team_ids)

            existing = txn.list_assignments(project_id=project_id)
            if require_unassigned and existing:
                raise ConflictError(f"Project {project_id} is already assigned")
            if require_assigned and not existing:
                raise ConflictError(
                    f"Project {project_id} has no confirmed assignments to replace"
                )

            self._check_capacity(txn, project_id, team_ids)

            for a in existing:
                txn.delete_assignment(a.assignment_id)
            # A project blocked by a broken link stays uniformly blocked.
            active = txn.active_report(project_id)
            lock_id = active.report_id if active is not None else None
            created = [
                txn.create_assignment(
                    project_id=project_id,
                    testing_team_id=tid,
                    owner_team_id=project.owner_team_id,
                    locked_by_report_id=lock_id,
                )
                for tid in team_ids
            ]

        logger.info(
            "Assignments written",
            project_id=project_id,
            replaced=len(existing),
            teams=team_ids,
            locked=lock_id is not None,
        )
        return created

    def _check_capacity(self, txn: Transaction, project_id: str, team_ids: Sequence[str]) -> None:
        cap = self._selector.load_cap
        loads = compute_team_loads(txn.list_assignments(), exclude_project_id=project_id)
        for slot, tid in enumerate(team_ids, 1):
            load = load_of(loads, tid)
            if load >= cap:
                raise CapacityError.at_cap(tid, slot, load, cap)
            loads[tid] = load + 1

    @staticmethod
    def _validate_teams(view, project: Project, team_ids: Sequence[str]) -> None:
        if len(set(team_ids)) != len(team_ids):
            raise ValidationError("You cannot assign the same team twice")
        for tid in team_ids:
            if tid == project.owner_team_id:
                raise ValidationError("A team cannot test its own project")
            if view.get_team(tid) is None:
                raise ValidationError(f"Team not found: {tid}")

    @staticmethod
    def _require_project(view, project_id: str) -> Project:
        project = view.get_project(project_id)
        if project is None:
            raise ValidationError(f"Project not found: {project_id}")
        return project

    def _require_draft_for(self, project_id: str) -> ProposalDraft:
        draft = self._draft
        if draft is None:
            raise ConflictError("No pending proposals")
        if project_id not in draft.proposals:
            raise ConflictError(f"Project {project_id} has no pending proposal")
        return draft

    def _discard_draft(self) -> None:
        draft = self._draft
        if draft is not None:
            self._lease.release(draft.draft_id)
        self._draft = None


def _present(team_ids: Sequence[Optional[str]]) -> list[str]:
    """Drop empty slots (None, "" or the NONE marker)."""
    return [tid for tid in team_ids if tid and tid != NONE]
