"""Link report models — a tester's report that a deployed link is broken.

Lifecycle:
    OPEN → PENDING_APPROVAL (owner submits replacement URL)
    PENDING_APPROVAL → CLOSED (approved; project link replaced, testing unlocked)
    PENDING_APPROVAL → DECLINED (rejected with a reason)
    DECLINED → PENDING_APPROVAL (owner resubmits)

CLOSED is terminal and retained for audit. At most one non-CLOSED report
exists per project.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


class LinkReportState(str, enum.Enum):
    OPEN = "OPEN"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    DECLINED = "DECLINED"
    CLOSED = "CLOSED"


class ReportAction(str, enum.Enum):
    """Log entry actions, in the wording operators see."""
    CREATED = "Report Created by Tester"
    LINK_SUBMITTED = "New Link Submitted"
    APPROVED = "Approved by Faculty"
    DECLINED = "Declined by Faculty"


@dataclass(frozen=True)
class ReportLogEntry:
    """One timestamped entry in a report's append-only history."""
    timestamp_utc: datetime
    action: ReportAction
    description: str = ""
    actor_id: str = ""


@dataclass(frozen=True)
class LinkReport:
    """A broken-link report against a project.

    The log is a tuple: every transition produces a new report with the
    previous log plus one entry, so history accumulates across repeated
    submit/decline rounds.
    """
    report_id: str
    project_id: str
    uploading_team_id: str
    reporting_team_id: str
    source_assignment_id: str
    state: LinkReportState = LinkReportState.OPEN
    proposed_url: Optional[str] = None
    created_utc: Optional[datetime] = None
    closed_utc: Optional[datetime] = None
    log: tuple[ReportLogEntry, ...] = field(default_factory=tuple)

    @property
    def is_resolved(self) -> bool:
        return self.state == LinkReportState.CLOSED

    def with_entry(self, entry: ReportLogEntry) -> tuple[ReportLogEntry, ...]:
        """Return the log extended by one entry."""
        return self.log + (entry,)
