"""Peer-test service — unified facade for the assignment engine.

This is the primary interface for programmatic access. It orchestrates:
- Batch proposals (generate, reroll, edit, confirm, cancel)
- Single-project writes (manual assignment, reassignment, completion)
- Link reports (report, replacement link, approve, decline)
- Audit trail (one event per committed operation)
- Notifications (fire-and-forget after link report transitions)

All operations return a ServiceResult. Rejected operations never change
durable state; their ServiceResult carries the error text and an
error_kind ("validation", "capacity", "conflict" or "atomicity").
Failures that happen after a durable commit (audit append, notice
delivery) are reported as warnings, not as failures.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from peertest.errors import (
    AssignmentError,
    CapacityError,
    ConflictError,
    ValidationError,
)
from peertest.links.workflow import LinkReportWorkflow, TransitionResult
from peertest.matching.load_index import compute_team_loads
from peertest.matching.matcher import AssignmentMatcher
from peertest.matching.selector import CandidateSelector
from peertest.models.assignment import (
    Assignment,
    ProjectStatus,
    derive_project_status,
)
from peertest.models.link_report import LinkReport
from peertest.models.team import Project, Team
from peertest.notify.notifier import (
    LoggingNotifier,
    Notice,
    Notifier,
    build_closure_notices,
    build_report_notices,
)
from peertest.persistence.event_log import EventKind, EventLog, EventRecord
from peertest.persistence.state_store import StateStore, Transaction
from peertest.policy.resolver import PolicyResolver
from peertest.proposals.draft import ProposalDraft
from peertest.proposals.manager import AssignmentManager

logger = structlog.get_logger()


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


class PeerTestService:
    """Unified peer-testing facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = PeerTestService(resolver)

        # Directory
        service.register_team("T1", "Alpha", "1A", leader_email="a@x.edu")
        service.register_project("P1", "T1", title="Shop")

        # Batch assignment
        result = service.generate_proposals(seed="round-1")
        service.reroll_proposal("P1")
        service.confirm_proposals(result.data["draft_id"])

        # Link reports
        result = service.report_link(assignment_id, "T2", "502 on load")
        service.submit_replacement_link(result.data["report_id"], "T1", url)
        service.approve_link(result.data["report_id"], "faculty-1")

    Persistence (optional):
        service = PeerTestService(resolver, store=StateStore(path),
                                  event_log=EventLog(log_path))
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        store: Optional[StateStore] = None,
        event_log: Optional[EventLog] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self._resolver = resolver
        self._store = store or StateStore()
        self._event_log = event_log
        self._notifier = notifier or LoggingNotifier()

        policy = resolver.assignment_policy()
        self._selector = CandidateSelector(load_cap=policy.load_cap)
        self._matcher = AssignmentMatcher(
            self._selector,
            min_recommended_teams=policy.min_recommended_teams,
        )
        self._manager = AssignmentManager(self._store, self._selector)
        self._workflow = LinkReportWorkflow(
            self._store,
            allowed_schemes=resolver.allowed_url_schemes(),
            max_description_length=resolver.max_description_length(),
            is_pending=self._manager.is_pending,
        )
        self._event_counter = event_log.count if event_log is not None else 0

    @property
    def store(self) -> StateStore:
        return self._store

    # ------------------------------------------------------------------
    # Directory
    # ------------------------------------------------------------------

    def register_team(
        self,
        team_id: str,
        name: str,
        subgroup: str,
        leader_email: Optional[str] = None,
    ) -> ServiceResult:
        """Add or replace a team in the roster."""
        if not team_id or not subgroup:
            return ServiceResult(
                success=False,
                errors=["team_id and subgroup are required"],
                data={"error_kind": "validation"},
            )
        try:
            self._store.put_team(Team(
                team_id=team_id,
                name=name or team_id,
                subgroup=subgroup,
                leader_email=leader_email,
            ))
        except AssignmentError as e:
            return _failure(e)
        return ServiceResult(success=True, data={"team_id": team_id})

    def register_project(
        self,
        project_id: str,
        owner_team_id: str,
        title: str = "",
        deployed_link: str = "",
    ) -> ServiceResult:
        """Add a submitted project, or update one already registered.

        An update keeps the stored title and deployed link unless new
        ones are given. The owner of a project that already has testing
        teams cannot change. Its deployed link cannot change while a
        link report is unresolved; the report workflow owns that link.
        """
        if not project_id:
            return ServiceResult(
                success=False,
                errors=["project_id is required"],
                data={"error_kind": "validation"},
            )
        try:
            with self._store.transaction() as txn:
                if txn.get_team(owner_team_id) is None:
                    raise ValidationError(f"Team not found: {owner_team_id}")
                existing = txn.get_project(project_id)
                if existing is not None:
                    _check_project_update(txn, existing, owner_team_id, deployed_link)
                    title = title or existing.title
                    deployed_link = deployed_link or existing.deployed_link
                txn.put_project(Project(
                    project_id=project_id,
                    owner_team_id=owner_team_id,
                    title=title,
                    deployed_link=deployed_link,
                ))
        except AssignmentError as e:
            return _failure(e)
        return ServiceResult(
            success=True,
            data={"project_id": project_id, "updated": existing is not None},
        )

    def get_team(self, team_id: str) -> Optional[Team]:
        return self._store.get_team(team_id)

    def get_project(self, project_id: str) -> Optional[Project]:
        return self._store.get_project(project_id)

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return self._store.get_assignment(assignment_id)

    def list_assignments(self, project_id: Optional[str] = None) -> list[Assignment]:
        return self._store.list_assignments(project_id=project_id)

    # ------------------------------------------------------------------
    # Batch proposals
    # ------------------------------------------------------------------

    @property
    def pending_proposals(self) -> Optional[ProposalDraft]:
        return self._manager.draft

    def generate_proposals(self, seed: Optional[str] = None) -> ServiceResult:
        """Propose two testing teams for every unassigned project.

        Nothing durable changes. The returned draft must be confirmed
        or cancelled before another batch, a manual assignment or a
        reassignment can run.
        """
        try:
            self._manager.lease.ensure_free("generate proposals")
        except AssignmentError as e:
            return _failure(e)

        projects = self._store.list_unassigned_projects()
        if not projects:
            return ServiceResult(
                success=False,
                errors=["No unassigned projects to assign"],
                data={"error_kind": "validation"},
            )
        teams = self._store.list_teams()
        loads = compute_team_loads(self._store.list_assignments())
        match = self._matcher.match(projects, teams, loads, seed=seed)
        for warning in match.warnings:
            logger.warning("Small roster", detail=warning)

        try:
            draft = self._manager.propose(match)
        except AssignmentError as e:
            return _failure(e)

        data: dict[str, Any] = {
            "draft_id": draft.draft_id if not draft.is_empty else None,
            "proposals": {pid: draft.team_ids(pid) for pid in draft.project_ids},
            "failed_projects": [
                o.project_id for o in match.outcomes if not o.team_ids
            ],
            "warnings": list(match.warnings),
            **match.summary(),
        }
        if draft.is_empty:
            return ServiceResult(
                success=False,
                errors=["No project could be assigned; every team is at capacity"],
                data={"error_kind": "capacity", **data},
            )

        self._attach_warning(data, self._record_event(
            EventKind.PROPOSALS_CREATED,
            "operator",
            {
                "draft_id": draft.draft_id,
                "seed": seed,
                "proposals": data["proposals"],
                **match.summary(),
            },
        ))
        return ServiceResult(success=True, data=data)

    def reroll_proposal(self, project_id: str, seed: Optional[str] = None) -> ServiceResult:
        """Re-select testers for one project in the pending draft."""
        try:
            proposals = self._manager.reroll(project_id, seed=seed)
        except AssignmentError as e:
            return _failure(e)
        team_ids = [p.testing_team_id for p in proposals]
        data: dict[str, Any] = {"project_id": project_id, "team_ids": team_ids}
        self._attach_warning(data, self._record_event(
            EventKind.PROPOSAL_REROLLED,
            "operator",
            {"project_id": project_id, "team_ids": team_ids, "seed": seed},
        ))
        return ServiceResult(success=True, data=data)

    def edit_proposal(
        self,
        project_id: str,
        team1_id: str,
        team2_id: Optional[str] = None,
    ) -> ServiceResult:
        """Replace one project's pending proposal by hand."""
        try:
            proposals = self._manager.edit_proposal(project_id, team1_id, team2_id)
        except AssignmentError as e:
            return _failure(e)
        team_ids = [p.testing_team_id for p in proposals]
        data: dict[str, Any] = {"project_id": project_id, "team_ids": team_ids}
        self._attach_warning(data, self._record_event(
            EventKind.PROPOSAL_EDITED,
            "operator",
            {"project_id": project_id, "team_ids": team_ids},
        ))
        return ServiceResult(success=True, data=data)

    def confirm_proposals(self, draft_id: Optional[str] = None) -> ServiceResult:
        """Write the pending draft, one atomic batch per project.

        Succeeds whenever the draft was processed. Per-project failures
        are listed in data["failures"] (reason and error_kind, plus
        team_id and slot of the full team for capacity failures); those projects
        stay unassigned.
        """
        try:
            report = self._manager.confirm_all(draft_id)
        except AssignmentError as e:
            return _failure(e)
        failures = {pid: f.to_dict() for pid, f in report.failures.items()}
        data: dict[str, Any] = {
            "draft_id": report.draft_id,
            "succeeded": report.succeeded_count,
            "failed": report.failed_count,
            "confirmed_projects": list(report.succeeded),
            "failures": failures,
        }
        self._attach_warning(data, self._record_event(
            EventKind.PROPOSALS_CONFIRMED,
            "operator",
            {
                "draft_id": report.draft_id,
                "confirmed_projects": list(report.succeeded),
                "failures": failures,
            },
        ))
        return ServiceResult(success=True, data=data)

    def cancel_proposals(self) -> ServiceResult:
        """Discard the pending draft. Succeeds even when none is pending."""
        draft = self._manager.draft
        dropped = self._manager.cancel()
        data: dict[str, Any] = {"cancelled": dropped}
        if draft is not None:
            self._attach_warning(data, self._record_event(
                EventKind.PROPOSALS_CANCELLED,
                "operator",
                {"draft_id": draft.draft_id, "projects": dropped},
            ))
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Single-project writes
    # ------------------------------------------------------------------

    def manual_assign(self, project_id: str, team1_id: str, team2_id: str) -> ServiceResult:
        """Assign two named teams to an unassigned project."""
        try:
            created = self._manager.manual_assign(project_id, team1_id, team2_id)
        except AssignmentError as e:
            return _failure(e)
        return self._assignment_result(EventKind.MANUAL_ASSIGNMENT, project_id, created)

    def reassign(
        self,
        project_id: str,
        team1_id: Optional[str],
        team2_id: Optional[str],
    ) -> ServiceResult:
        """Replace an assigned project's testers with 0, 1 or 2 teams."""
        try:
            created = self._manager.reassign(project_id, team1_id, team2_id)
        except AssignmentError as e:
            return _failure(e)
        return self._assignment_result(EventKind.PROJECT_REASSIGNED, project_id, created)

    def mark_assignment_complete(self, assignment_id: str) -> ServiceResult:
        """Record that the testing team finished; refused while locked."""
        try:
            completed = self._manager.mark_complete(assignment_id)
        except AssignmentError as e:
            return _failure(e)
        data: dict[str, Any] = {
            "assignment_id": assignment_id,
            "project_id": completed.project_id,
            "project_status": self.project_status(completed.project_id).value,
        }
        self._attach_warning(data, self._record_event(
            EventKind.ASSIGNMENT_COMPLETED,
            completed.testing_team_id,
            {"assignment_id": assignment_id, "project_id": completed.project_id},
        ))
        return ServiceResult(success=True, data=data)

    # ------------------------------------------------------------------
    # Link reports
    # ------------------------------------------------------------------

    def report_link(
        self,
        assignment_id: str,
        reporting_team_id: str,
        description: str,
    ) -> ServiceResult:
        """A testing team reports the project's deployed link broken.

        Locks every active assignment of the project and notifies the
        owning team's leader and the faculty contact.
        """
        try:
            result = self._workflow.report(assignment_id, reporting_team_id, description)
        except AssignmentError as e:
            return _failure(e)

        report = result.report
        data = self._report_data(result)
        self._attach_warning(data, self._record_event(
            EventKind.LINK_REPORTED,
            reporting_team_id,
            {
                "report_id": report.report_id,
                "project_id": report.project_id,
                "assignment_id": assignment_id,
                "locked": data["affected_assignments"],
            },
        ))

        project = self._store.get_project(report.project_id)
        owner = self._store.get_team(report.uploading_team_id)
        notices = build_report_notices(
            report,
            description.strip(),
            project,
            owner,
            self._store.get_team(reporting_team_id),
            self._teams_of(result.affected),
            self._faculty_email(owner),
        )
        self._attach_warning(data, self._dispatch(notices))
        return ServiceResult(success=True, data=data)

    def submit_replacement_link(self, report_id: str, team_id: str, new_url: str) -> ServiceResult:
        """The owning team proposes a working link for an open report."""
        try:
            result = self._workflow.submit_replacement_link(report_id, team_id, new_url)
        except AssignmentError as e:
            return _failure(e)
        data = self._report_data(result)
        self._attach_warning(data, self._record_event(
            EventKind.REPLACEMENT_LINK_SUBMITTED,
            team_id,
            {
                "report_id": report_id,
                "project_id": result.report.project_id,
                "proposed_url": result.report.proposed_url,
            },
        ))
        return ServiceResult(success=True, data=data)

    def approve_link(self, report_id: str, approver_id: str) -> ServiceResult:
        """Faculty approves the replacement link; testing resumes."""
        try:
            result = self._workflow.approve(report_id, approver_id)
        except AssignmentError as e:
            return _failure(e)

        report = result.report
        data = self._report_data(result)
        data["deployed_link"] = report.proposed_url
        self._attach_warning(data, self._record_event(
            EventKind.LINK_APPROVED,
            approver_id,
            {
                "report_id": report_id,
                "project_id": report.project_id,
                "deployed_link": report.proposed_url,
                "unlocked": data["affected_assignments"],
            },
        ))

        owner = self._store.get_team(report.uploading_team_id)
        notices = build_closure_notices(
            report,
            self._store.get_project(report.project_id),
            owner,
            self._teams_of(result.affected),
            self._faculty_email(owner),
        )
        self._attach_warning(data, self._dispatch(notices))
        return ServiceResult(success=True, data=data)

    def decline_link(self, report_id: str, approver_id: str, reason: str) -> ServiceResult:
        """Faculty rejects the replacement link with a reason."""
        try:
            result = self._workflow.decline(report_id, approver_id, reason)
        except AssignmentError as e:
            return _failure(e)
        data = self._report_data(result)
        self._attach_warning(data, self._record_event(
            EventKind.LINK_DECLINED,
            approver_id,
            {"report_id": report_id, "project_id": result.report.project_id},
        ))
        return ServiceResult(success=True, data=data)

    def get_link_report(self, report_id: str) -> Optional[LinkReport]:
        return self._store.get_report(report_id)

    def list_link_reports(self, project_id: str) -> list[LinkReport]:
        """Every report for a project, oldest first, with full history."""
        reports = self._store.list_reports(project_id=project_id)
        return sorted(reports, key=lambda r: r.report_id)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def project_status(self, project_id: str) -> ProjectStatus:
        return derive_project_status(
            self._store.list_assignments(project_id=project_id),
            self._store.active_report(project_id) is not None,
        )

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        projects = self._store.list_projects()
        assignments = self._store.list_assignments()
        reports = self._store.list_reports()
        draft = self._manager.draft
        return {
            "version": self._resolver.version,
            "teams": len(self._store.list_teams()),
            "projects": {
                "total": len(projects),
                "by_status": dict(Counter(
                    self.project_status(p.project_id).value for p in projects
                )),
            },
            "assignments": {
                "total": len(assignments),
                "by_status": dict(Counter(a.status.value for a in assignments)),
            },
            "link_reports": {
                "total": len(reports),
                "by_state": dict(Counter(r.state.value for r in reports)),
            },
            "pending_proposals": {
                "draft_id": draft.draft_id if draft else None,
                "projects": len(draft.proposals) if draft else 0,
            },
            "events": self._event_log.count if self._event_log is not None else 0,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _assignment_result(
        self,
        kind: EventKind,
        project_id: str,
        created: list[Assignment],
    ) -> ServiceResult:
        team_ids = [a.testing_team_id for a in created]
        data: dict[str, Any] = {
            "project_id": project_id,
            "assignment_ids": [a.assignment_id for a in created],
            "team_ids": team_ids,
            "locked": any(a.is_locked for a in created),
        }
        self._attach_warning(data, self._record_event(
            kind, "operator", {"project_id": project_id, "team_ids": team_ids},
        ))
        return ServiceResult(success=True, data=data)

    @staticmethod
    def _report_data(result: TransitionResult) -> dict[str, Any]:
        report = result.report
        return {
            "report_id": report.report_id,
            "project_id": report.project_id,
            "state": report.state.value,
            "affected_assignments": [a.assignment_id for a in result.affected],
        }

    def _teams_of(self, assignments: list[Assignment]) -> list[Team]:
        teams = []
        for a in assignments:
            team = self._store.get_team(a.testing_team_id)
            if team is not None:
                teams.append(team)
        return teams

    def _faculty_email(self, owner: Optional[Team]) -> Optional[str]:
        if owner is None:
            return None
        return self._resolver.faculty_contacts().get(owner.subgroup)

    def _dispatch(self, notices: list[Notice]) -> Optional[str]:
        """Send notices; the state change stands whatever happens here.

        Returns a warning string if any notice failed, else None.
        """
        failed = []
        for notice in notices:
            try:
                self._notifier.send(notice)
            except Exception as e:  # noqa: BLE001
                logger.warning(
                    "Notice delivery failed",
                    recipient=notice.recipient,
                    report_id=notice.report_id,
                    error=str(e),
                )
                failed.append(notice.recipient)
        if failed:
            return f"Notification failure for: {', '.join(failed)}"
        return None

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record_event(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
    ) -> Optional[str]:
        """Append an audit event. Returns error string or None.

        Called after the durable commit, so a failure here cannot be
        rolled back; the caller reports it as a warning.
        """
        if self._event_log is None:
            return None
        try:
            self._event_log.append(EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
            ))
        except (ValueError, OSError) as e:
            logger.warning("Event log failure", event_kind=kind.value, error=str(e))
            return f"Event log failure: {e}"
        return None

    @staticmethod
    def _attach_warning(data: dict[str, Any], warning: Optional[str]) -> None:
        if warning:
            data.setdefault("warnings", []).append(warning)


def _failure(e: AssignmentError) -> ServiceResult:
    data: dict[str, Any] = {"error_kind": e.kind}
    if isinstance(e, CapacityError) and e.team_id is not None:
        data["team_id"] = e.team_id
        data["slot"] = e.slot
    return ServiceResult(success=False, errors=[str(e)], data=data)


def _check_project_update(
    view: Transaction,
    existing: Project,
    owner_team_id: str,
    deployed_link: str,
) -> None:
    project_id = existing.project_id
    if owner_team_id != existing.owner_team_id:
        testers = {a.testing_team_id for a in view.list_assignments(project_id=project_id)}
        if owner_team_id in testers:
            raise ValidationError(
                f"Team {owner_team_id} is testing project {project_id} "
                f"and cannot become its owner"
            )
        if testers:
            raise ConflictError(
                f"Project {project_id} already has testing teams; its owner cannot change"
            )
    active = view.active_report(project_id)
    if active is not None and deployed_link and deployed_link != existing.deployed_link:
        raise ConflictError(
            f"Link report {active.report_id} is open for project {project_id}; "
            f"submit the new link through it"
        )
