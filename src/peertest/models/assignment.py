"""Assignment, proposed assignment, and derived status models.

An assignment pairs a project with one testing team. Two orthogonal
fields describe it:
- workflow status: ASSIGNED or COMPLETED (the testing work itself)
- lock: the id of the link report currently blocking it, or None

The single label shown to operators (ASSIGNED / LINK_REPORTED /
COMPLETED) is derived from both, so a link-report transition can never
overwrite testing progress and a completion can never clear a lock.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional


class WorkflowStatus(str, enum.Enum):
    """Testing progress of a single assignment."""
    ASSIGNED = "ASSIGNED"
    COMPLETED = "COMPLETED"


class AssignmentStatus(str, enum.Enum):
    """Combined display label for an assignment."""
    ASSIGNED = "ASSIGNED"
    LINK_REPORTED = "LINK_REPORTED"
    COMPLETED = "COMPLETED"


class ProjectStatus(str, enum.Enum):
    """Derived lifecycle label for a project."""
    UNASSIGNED = "UNASSIGNED"
    ASSIGNED = "ASSIGNED"
    COMPLETED = "COMPLETED"
    BLOCKED_LINK = "BLOCKED_LINK"


@dataclass(frozen=True)
class Assignment:
    """A durable testing obligation.

    owner_team_id is denormalised from the project for convenience.
    """
    assignment_id: str
    project_id: str
    testing_team_id: str
    owner_team_id: str
    workflow_status: WorkflowStatus = WorkflowStatus.ASSIGNED
    locked_by_report_id: Optional[str] = None
    assigned_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None

    @property
    def is_locked(self) -> bool:
        return self.locked_by_report_id is not None

    @property
    def is_active(self) -> bool:
        """Active assignments count toward a team's load."""
        return self.workflow_status != WorkflowStatus.COMPLETED

    @property
    def status(self) -> AssignmentStatus:
        if self.workflow_status == WorkflowStatus.COMPLETED:
            return AssignmentStatus.COMPLETED
        if self.is_locked:
            return AssignmentStatus.LINK_REPORTED
        return AssignmentStatus.ASSIGNED


@dataclass(frozen=True)
class ProposedAssignment:
    """A not-yet-durable candidate assignment held in a proposal draft."""
    project_id: str
    testing_team_id: str
    owner_team_id: str
    is_proposed: bool = True


def derive_project_status(
    assignments: Iterable[Assignment],
    has_unresolved_report: bool,
) -> ProjectStatus:
    """Derive a project's status from its assignments and report state.

    BLOCKED_LINK wins while a report is unresolved. COMPLETED requires at
    least one assignment and every assignment completed.
    """
    if has_unresolved_report:
        return ProjectStatus.BLOCKED_LINK
    items = list(assignments)
    if not items:
        return ProjectStatus.UNASSIGNED
    if all(a.workflow_status == WorkflowStatus.COMPLETED for a in items):
        return ProjectStatus.COMPLETED
    return ProjectStatus.ASSIGNED
