"""Notifications for link report transitions.

Delivery is fire-and-forget: notices are sent after the state change has
committed, and a failed delivery never undoes it. The default notifier
writes notices to the structured log; deployments plug in an e-mail
sender by subclassing Notifier.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from peertest.models.link_report import LinkReport
from peertest.models.team import Project, Team

logger = structlog.get_logger()


class NoticeKind(str, enum.Enum):
    LINK_REPORTED = "link_reported"
    LINK_RESTORED = "link_restored"


@dataclass(frozen=True)
class Notice:
    """One message to one recipient."""
    kind: NoticeKind
    audience: str  # "uploader", "faculty" or "tester"
    recipient: str
    subject: str
    body: str
    project_id: str
    report_id: str


class Notifier:
    """Delivery collaborator. Subclasses implement send()."""

    def send(self, notice: Notice) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    """Writes each notice to the structured log instead of sending it."""

    def send(self, notice: Notice) -> None:
        logger.info(
            "Notice",
            kind=notice.kind.value,
            audience=notice.audience,
            recipient=notice.recipient,
            subject=notice.subject,
            project_id=notice.project_id,
            report_id=notice.report_id,
        )


def _team_line(team: Team) -> str:
    return f"{team.name} (Subgroup: {team.subgroup})"


def _project_name(project: Optional[Project], report: LinkReport) -> str:
    if project is not None and project.title:
        return project.title
    return report.project_id


def build_report_notices(
    report: LinkReport,
    description: str,
    project: Optional[Project],
    owner: Optional[Team],
    reporter: Optional[Team],
    affected: Sequence[Team],
    faculty_email: Optional[str],
) -> list[Notice]:
    """Notices for a newly opened report: owner's leader and faculty.

    Recipients without an address are skipped.
    """
    name = _project_name(project, report)
    notices: list[Notice] = []

    if owner is not None and owner.leader_email:
        notices.append(Notice(
            kind=NoticeKind.LINK_REPORTED,
            audience="uploader",
            recipient=owner.leader_email,
            subject=f"Action required: deployed link reported for {name}",
            body=(
                f"A testing team reported that the deployed link for {name} "
                f"is not working.\n\nIssue description:\n{description}\n\n"
                f"Please submit a working link so testing can resume."
            ),
            project_id=report.project_id,
            report_id=report.report_id,
        ))
    else:
        logger.warning("No uploader address; skipping uploader notice", report_id=report.report_id)

    if faculty_email:
        affected_lines = "\n".join(f"- {_team_line(t)}" for t in affected) or "- none"
        notices.append(Notice(
            kind=NoticeKind.LINK_REPORTED,
            audience="faculty",
            recipient=faculty_email,
            subject=f"[URGENT] Project Report Filed: {name}",
            body=(
                f"A new project link report has been filed for your review.\n\n"
                f"Project: {name}\n"
                f"Uploading team: {_team_line(owner) if owner else report.uploading_team_id}\n"
                f"Reporting team: {_team_line(reporter) if reporter else report.reporting_team_id}\n\n"
                f"Issue description:\n{description}\n\n"
                f"Testing is locked for:\n{affected_lines}"
            ),
            project_id=report.project_id,
            report_id=report.report_id,
        ))
    else:
        logger.warning("No faculty contact; skipping faculty notice", report_id=report.report_id)

    return notices


def build_closure_notices(
    report: LinkReport,
    project: Optional[Project],
    owner: Optional[Team],
    testers: Sequence[Team],
    faculty_email: Optional[str],
) -> list[Notice]:
    """Notices for an approved report: testing resumes on the new link."""
    name = _project_name(project, report)
    link = report.proposed_url or ""
    body = (
        f"The replacement link for {name} has been approved: {link}\n"
        f"Testing is unlocked and may resume."
    )
    recipients: list[tuple[str, str]] = []
    if owner is not None and owner.leader_email:
        recipients.append(("uploader", owner.leader_email))
    if faculty_email:
        recipients.append(("faculty", faculty_email))
    for team in testers:
        if team.leader_email:
            recipients.append(("tester", team.leader_email))

    return [
        Notice(
            kind=NoticeKind.LINK_RESTORED,
            audience=audience,
            recipient=address,
            subject=f"Link approved: {name}",
            body=body,
            project_id=report.project_id,
            report_id=report.report_id,
        )
        for audience, address in recipients
    ]
