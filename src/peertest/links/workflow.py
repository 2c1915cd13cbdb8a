"""Link report workflow — applies report transitions and their side effects.

Each transition is one store transaction:
- report: create the report (with its first log entry) and lock every
  active assignment of the project.
- submit_replacement_link: record the owner's proposed URL.
- approve: replace the project's deployed link, close the report, and
  unlock every assignment of the project that is locked at that moment.
- decline: clear the proposed URL and record the reason.

The unlock set is queried inside the approval transaction rather than
remembered from report time, so assignments added while the report was
open (by reassignment) are unlocked too.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

import structlog

from peertest.errors import ConflictError, ValidationError
from peertest.links.state_machine import LinkReportStateMachine
from peertest.models.assignment import Assignment
from peertest.models.link_report import (
    LinkReport,
    LinkReportState,
    ReportAction,
    ReportLogEntry,
)
from peertest.persistence.state_store import StateStore, Transaction

logger = structlog.get_logger()


@dataclass(frozen=True)
class TransitionResult:
    """A committed report transition and the assignments it touched."""
    report: LinkReport
    affected: list[Assignment] = field(default_factory=list)


class LinkReportWorkflow:
    """Drives link reports through their lifecycle.

    Usage:
        workflow = LinkReportWorkflow(store, allowed_schemes={"https"})
        opened = workflow.report(assignment_id, "T2", "Site returns 502")
        workflow.submit_replacement_link(opened.report.report_id, "T1", url)
        closed = workflow.approve(opened.report.report_id, "faculty-1")
    """

    def __init__(
        self,
        store: StateStore,
        allowed_schemes: Iterable[str] = ("http", "https"),
        max_description_length: int = 2000,
        is_pending: Optional[Callable[[str], bool]] = None,
    ) -> None:
        self._store = store
        self._allowed_schemes = set(allowed_schemes)
        self._max_description_length = max_description_length
        self._is_pending = is_pending or (lambda project_id: False)

    def report(
        self,
        assignment_id: str,
        reporting_team_id: str,
        description: str,
    ) -> TransitionResult:
        """(start) → OPEN: a testing team reports the deployed link broken."""
        description = self._require_text(description, "description")

        with self._store.transaction() as txn:
            assignment = txn.get_assignment(assignment_id)
            if assignment is None:
                raise ValidationError(f"Assignment not found: {assignment_id}")
            if assignment.testing_team_id != reporting_team_id:
                raise ValidationError(
                    f"Team {reporting_team_id} is not the testing team "
                    f"on assignment {assignment_id}"
                )
            if not assignment.is_active:
                raise ConflictError(f"Assignment {assignment_id} is already completed")

            project_id = assignment.project_id
            if self._is_pending(project_id):
                raise ConflictError(
                    f"Project {project_id} has unconfirmed proposals; "
                    f"confirm or cancel them first"
                )
            existing = txn.active_report(project_id)
            if existing is not None:
                raise ConflictError(
                    f"Project {project_id} already has an unresolved link report "
                    f"({existing.report_id}, {existing.state.value})"
                )

            project = txn.get_project(project_id)
            uploading_team_id = (
                project.owner_team_id if project is not None else assignment.owner_team_id
            )
            report = txn.create_report(
                project_id=project_id,
                uploading_team_id=uploading_team_id,
                reporting_team_id=reporting_team_id,
                source_assignment_id=assignment_id,
                first_entry=ReportLogEntry(
                    timestamp_utc=_now(),
                    action=ReportAction.CREATED,
                    description=description,
                    actor_id=reporting_team_id,
                ),
            )
            locked = [
                replace(a, locked_by_report_id=report.report_id)
                for a in txn.list_assignments(project_id=project_id, include_completed=False)
            ]
            for a in locked:
                txn.put_assignment(a)

        logger.info(
            "Link reported",
            report_id=report.report_id,
            project_id=project_id,
            reporting_team_id=reporting_team_id,
            locked=len(locked),
        )
        return TransitionResult(report=report, affected=locked)

    def submit_replacement_link(
        self,
        report_id: str,
        team_id: str,
        new_url: str,
    ) -> TransitionResult:
        """OPEN/DECLINED → PENDING_APPROVAL: the owner proposes a new URL."""
        new_url = self._require_url(new_url)

        with self._store.transaction() as txn:
            report = self._require_report(txn, report_id)
            if team_id != report.uploading_team_id:
                raise ValidationError(
                    f"Only the uploading team ({report.uploading_team_id}) "
                    f"can submit a replacement link"
                )
            self._check_transition(report, LinkReportState.PENDING_APPROVAL)
            updated = replace(
                report,
                state=LinkReportState.PENDING_APPROVAL,
                proposed_url=new_url,
                log=report.with_entry(ReportLogEntry(
                    timestamp_utc=_now(),
                    action=ReportAction.LINK_SUBMITTED,
                    description=new_url,
                    actor_id=team_id,
                )),
            )
            txn.put_report(updated)

        logger.info("Replacement link submitted", report_id=report_id, project_id=report.project_id)
        return TransitionResult(report=updated)

    def approve(self, report_id: str, approver_id: str) -> TransitionResult:
        """PENDING_APPROVAL → CLOSED: apply the new link and unlock testing.

        The link update, the report closure and the unlock of every
        currently locked assignment are one atomic batch.
        """
        with self._store.transaction() as txn:
            report = self._require_report(txn, report_id)
            self._check_transition(report, LinkReportState.CLOSED)
            if not report.proposed_url:
                raise ValidationError(f"Link report {report_id} has no proposed URL")
            project = txn.get_project(report.project_id)
            if project is None:
                raise ValidationError(f"Project not found: {report.project_id}")

            now = _now()
            txn.put_project(replace(project, deployed_link=report.proposed_url))
            closed = replace(
                report,
                state=LinkReportState.CLOSED,
                closed_utc=now,
                log=report.with_entry(ReportLogEntry(
                    timestamp_utc=now,
                    action=ReportAction.APPROVED,
                    description=report.proposed_url,
                    actor_id=approver_id,
                )),
            )
            txn.put_report(closed)
            unlocked = [
                replace(a, locked_by_report_id=None)
                for a in txn.list_assignments(project_id=report.project_id, locked_only=True)
            ]
            for a in unlocked:
                txn.put_assignment(a)

        logger.info(
            "Link approved",
            report_id=report_id,
            project_id=report.project_id,
            unlocked=len(unlocked),
        )
        return TransitionResult(report=closed, affected=unlocked)

    def decline(self, report_id: str, approver_id: str, reason: str) -> TransitionResult:
        """PENDING_APPROVAL → DECLINED: reject the proposed URL with a reason.

        Assignments stay locked; the owner may resubmit.
        """
        reason = self._require_text(reason, "reason")

        with self._store.transaction() as txn:
            report = self._require_report(txn, report_id)
            self._check_transition(report, LinkReportState.DECLINED)
            declined = replace(
                report,
                state=LinkReportState.DECLINED,
                proposed_url=None,
                log=report.with_entry(ReportLogEntry(
                    timestamp_utc=_now(),
                    action=ReportAction.DECLINED,
                    description=reason,
                    actor_id=approver_id,
                )),
            )
            txn.put_report(declined)

        logger.info("Link declined", report_id=report_id, project_id=report.project_id)
        return TransitionResult(report=declined)

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_report(txn: Transaction, report_id: str) -> LinkReport:
        report = txn.get_report(report_id)
        if report is None:
            raise ValidationError(f"Link report not found: {report_id}")
        return report

    @staticmethod
    def _check_transition(report: LinkReport, target: LinkReportState) -> None:
        errors = LinkReportStateMachine.validate(report, target)
        if errors:
            raise ConflictError("; ".join(errors))

    def _require_text(self, value: str, name: str) -> str:
        text = (value or "").strip()
        if not text:
            raise ValidationError(f"A {name} is required")
        if len(text) > self._max_description_length:
            raise ValidationError(
                f"The {name} exceeds {self._max_description_length} characters"
            )
        return text

    def _require_url(self, value: str) -> str:
        url = (value or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in self._allowed_schemes or not parsed.netloc:
            raise ValidationError(
                f"Invalid replacement link: {url!r} "
                f"(expected {', '.join(sorted(self._allowed_schemes))} URL)"
            )
        return url


def _now() -> datetime:
    return datetime.now(timezone.utc)
