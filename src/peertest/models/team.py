"""Team and project records.

Teams and projects are owned by external directories (registration and
submission flows). This engine only reads them, apart from the project's
deployed link, which is replaced when a link report is approved.

Invariant enforced elsewhere: a project's owning team never tests it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Team:
    """A student team in the roster.

    The subgroup label drives the diversity preference when choosing
    testing teams: testers are preferably drawn from other subgroups.
    """
    team_id: str
    name: str
    subgroup: str
    leader_email: Optional[str] = None


@dataclass(frozen=True)
class Project:
    """A submitted project awaiting or undergoing peer testing.

    Project status is not stored here; it is derived from the project's
    assignments and link reports (see models.assignment.derive_project_status).
    """
    project_id: str
    owner_team_id: str
    title: str = ""
    deployed_link: str = ""
