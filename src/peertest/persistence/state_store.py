"""State store — document storage for teams, projects, assignments and
link reports, with atomic multi-record write batches.

All writes go through a transaction:

    with store.transaction() as txn:
        locked = txn.list_assignments(project_id="P-1", locked_only=True)
        for a in locked:
            txn.put_assignment(replace(a, locked_by_report_id=None))

Reads inside the block see committed state plus the writes staged so
far. On clean exit the whole batch is persisted and published at once;
if the block raises, or persisting fails, nothing is applied. The
store's lock is held for the whole block, so the set read inside a
transaction cannot change before its writes land.

With a storage path, state is kept as a single JSON file, written to a
temporary sibling and moved into place. Without one, the store is
in-memory only.
"""

from __future__ import annotations

import json
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

import structlog

from peertest.errors import BatchWriteError
from peertest.models.assignment import Assignment, WorkflowStatus
from peertest.models.link_report import (
    LinkReport,
    LinkReportState,
    ReportAction,
    ReportLogEntry,
)
from peertest.models.team import Project, Team

logger = structlog.get_logger()

_TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class _DocumentView:
    """Read-side queries shared by the store and its transactions."""

    _teams: dict[str, Team]
    _projects: dict[str, Project]
    _assignments: dict[str, Assignment]
    _reports: dict[str, LinkReport]

    # -- teams ---------------------------------------------------------

    def get_team(self, team_id: str) -> Optional[Team]:
        return self._teams.get(team_id)

    def list_teams(self) -> list[Team]:
        return list(self._teams.values())

    # -- projects ------------------------------------------------------

    def get_project(self, project_id: str) -> Optional[Project]:
        return self._projects.get(project_id)

    def list_projects(self) -> list[Project]:
        return list(self._projects.values())

    def list_unassigned_projects(self) -> list[Project]:
        """Projects with no durable assignment at all."""
        assigned = {a.project_id for a in self._assignments.values()}
        return [p for p in self._projects.values() if p.project_id not in assigned]

    # -- assignments ---------------------------------------------------

    def get_assignment(self, assignment_id: str) -> Optional[Assignment]:
        return self._assignments.get(assignment_id)

    def list_assignments(
        self,
        project_id: Optional[str] = None,
        testing_team_id: Optional[str] = None,
        include_completed: bool = True,
        locked_only: bool = False,
    ) -> list[Assignment]:
        result = []
        for a in self._assignments.values():
            if project_id is not None and a.project_id != project_id:
                continue
            if testing_team_id is not None and a.testing_team_id != testing_team_id:
                continue
            if not include_completed and not a.is_active:
                continue
            if locked_only and not a.is_locked:
                continue
            result.append(a)
        return result

    # -- link reports --------------------------------------------------

    def get_report(self, report_id: str) -> Optional[LinkReport]:
        return self._reports.get(report_id)

    def list_reports(self, project_id: Optional[str] = None) -> list[LinkReport]:
        return [
            r for r in self._reports.values()
            if project_id is None or r.project_id == project_id
        ]

    def active_report(self, project_id: str) -> Optional[LinkReport]:
        """The unresolved (non-CLOSED) report for a project, if any."""
        for r in self._reports.values():
            if r.project_id == project_id and not r.is_resolved:
                return r
        return None


class Transaction(_DocumentView):
    """A staged write batch over a snapshot of the store.

    Records are immutable, so staging replaces entries in shallow copies
    of the store's maps; the store's own maps are untouched until commit.
    """

    def __init__(self, store: StateStore) -> None:
        self._teams = dict(store._teams)
        self._projects = dict(store._projects)
        self._assignments = dict(store._assignments)
        self._reports = dict(store._reports)
        self._counters = dict(store._counters)
        self.write_count = 0

    def _next_id(self, key: str, prefix: str) -> str:
        self._counters[key] = self._counters.get(key, 0) + 1
        return f"{prefix}-{self._counters[key]:06d}"

    def put_team(self, team: Team) -> None:
        self._teams[team.team_id] = team
        self.write_count += 1

    def put_project(self, project: Project) -> None:
        self._projects[project.project_id] = project
        self.write_count += 1

    def create_assignment(
        self,
        project_id: str,
        testing_team_id: str,
        owner_team_id: str,
        locked_by_report_id: Optional[str] = None,
    ) -> Assignment:
        assignment = Assignment(
            assignment_id=self._next_id("assignment", "ASG"),
            project_id=project_id,
            testing_team_id=testing_team_id,
            owner_team_id=owner_team_id,
            locked_by_report_id=locked_by_report_id,
            assigned_utc=_now(),
        )
        self._assignments[assignment.assignment_id] = assignment
        self.write_count += 1
        return assignment

    def put_assignment(self, assignment: Assignment) -> None:
        if assignment.assignment_id not in self._assignments:
            raise KeyError(f"Assignment not found: {assignment.assignment_id}")
        self._assignments[assignment.assignment_id] = assignment
        self.write_count += 1

    def delete_assignment(self, assignment_id: str) -> None:
        del self._assignments[assignment_id]
        self.write_count += 1

    def create_report(
        self,
        project_id: str,
        uploading_team_id: str,
        reporting_team_id: str,
        source_assignment_id: str,
        first_entry: ReportLogEntry,
    ) -> LinkReport:
        report = LinkReport(
            report_id=self._next_id("report", "LR"),
            project_id=project_id,
            uploading_team_id=uploading_team_id,
            reporting_team_id=reporting_team_id,
            source_assignment_id=source_assignment_id,
            state=LinkReportState.OPEN,
            created_utc=first_entry.timestamp_utc,
            log=(first_entry,),
        )
        self._reports[report.report_id] = report
        self.write_count += 1
        return report

    def put_report(self, report: LinkReport) -> None:
        if report.report_id not in self._reports:
            raise KeyError(f"Link report not found: {report.report_id}")
        self._reports[report.report_id] = report
        self.write_count += 1


class StateStore(_DocumentView):
    """JSON file-based document store with atomic write batches.

    Usage:
        store = StateStore(Path("data/peertest_state.json"))
        with store.transaction() as txn:
            txn.put_team(Team("T1", "Alpha", "1A"))

        # On recovery:
        store = StateStore(Path("data/peertest_state.json"))
        teams = store.list_teams()

    Thread-safety: every transaction holds the store lock from first
    read to commit, giving single-writer semantics.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._path = storage_path
        self._lock = threading.RLock()
        self._teams: dict[str, Team] = {}
        self._projects: dict[str, Project] = {}
        self._assignments: dict[str, Assignment] = {}
        self._reports: dict[str, LinkReport] = {}
        self._counters: dict[str, int] = {}
        if storage_path is not None and storage_path.exists():
            self._load()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Open an atomic write batch; see module docstring."""
        with self._lock:
            txn = Transaction(self)
            yield txn
            self._commit(txn)

    def put_team(self, team: Team) -> None:
        """Register or replace a team (team-directory collaborator)."""
        with self.transaction() as txn:
            txn.put_team(team)

    # ------------------------------------------------------------------
    # Commit and file persistence
    # ------------------------------------------------------------------

    def _commit(self, txn: Transaction) -> None:
        if txn.write_count == 0:
            return
        state = _serialize(
            txn._teams, txn._projects, txn._assignments, txn._reports, txn._counters,
        )
        try:
            self._persist(state)
        except OSError as e:
            logger.error("Write batch failed", writes=txn.write_count, error=str(e))
            raise BatchWriteError(f"Write batch failed: {e}") from e
        self._teams = txn._teams
        self._projects = txn._projects
        self._assignments = txn._assignments
        self._reports = txn._reports
        self._counters = txn._counters
        logger.debug("Write batch committed", writes=txn.write_count)

    def _persist(self, state: dict[str, Any]) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(state, f, indent=2, sort_keys=True, ensure_ascii=False)
        os.replace(tmp, self._path)

    def _load(self) -> None:
        with self._path.open("r", encoding="utf-8") as f:
            state = json.load(f)
        for data in state.get("teams", []):
            team = Team(
                team_id=data["team_id"],
                name=data["name"],
                subgroup=data["subgroup"],
                leader_email=data.get("leader_email"),
            )
            self._teams[team.team_id] = team
        for data in state.get("projects", []):
            project = Project(
                project_id=data["project_id"],
                owner_team_id=data["owner_team_id"],
                title=data.get("title", ""),
                deployed_link=data.get("deployed_link", ""),
            )
            self._projects[project.project_id] = project
        for data in state.get("assignments", []):
            assignment = Assignment(
                assignment_id=data["assignment_id"],
                project_id=data["project_id"],
                testing_team_id=data["testing_team_id"],
                owner_team_id=data["owner_team_id"],
                workflow_status=WorkflowStatus(data["workflow_status"]),
                locked_by_report_id=data.get("locked_by_report_id"),
                assigned_utc=_parse_ts(data.get("assigned_utc")),
                completed_utc=_parse_ts(data.get("completed_utc")),
            )
            self._assignments[assignment.assignment_id] = assignment
        for data in state.get("link_reports", []):
            report = LinkReport(
                report_id=data["report_id"],
                project_id=data["project_id"],
                uploading_team_id=data["uploading_team_id"],
                reporting_team_id=data["reporting_team_id"],
                source_assignment_id=data["source_assignment_id"],
                state=LinkReportState(data["state"]),
                proposed_url=data.get("proposed_url"),
                created_utc=_parse_ts(data.get("created_utc")),
                closed_utc=_parse_ts(data.get("closed_utc")),
                log=tuple(
                    ReportLogEntry(
                        timestamp_utc=_parse_ts(e["timestamp_utc"]),
                        action=ReportAction(e["action"]),
                        description=e.get("description", ""),
                        actor_id=e.get("actor_id", ""),
                    )
                    for e in data.get("log", [])
                ),
            )
            self._reports[report.report_id] = report
        self._counters = dict(state.get("counters", {}))


def _serialize(
    teams: dict[str, Team],
    projects: dict[str, Project],
    assignments: dict[str, Assignment],
    reports: dict[str, LinkReport],
    counters: dict[str, int],
) -> dict[str, Any]:
    return {
        "teams": [
            {
                "team_id": t.team_id,
                "name": t.name,
                "subgroup": t.subgroup,
                "leader_email": t.leader_email,
            }
            for t in teams.values()
        ],
        "projects": [
            {
                "project_id": p.project_id,
                "owner_team_id": p.owner_team_id,
                "title": p.title,
                "deployed_link": p.deployed_link,
            }
            for p in projects.values()
        ],
        "assignments": [
            {
                "assignment_id": a.assignment_id,
                "project_id": a.project_id,
                "testing_team_id": a.testing_team_id,
                "owner_team_id": a.owner_team_id,
                "workflow_status": a.workflow_status.value,
                "locked_by_report_id": a.locked_by_report_id,
                "assigned_utc": _format_ts(a.assigned_utc),
                "completed_utc": _format_ts(a.completed_utc),
            }
            for a in assignments.values()
        ],
        "link_reports": [
            {
                "report_id": r.report_id,
                "project_id": r.project_id,
                "uploading_team_id": r.uploading_team_id,
                "reporting_team_id": r.reporting_team_id,
                "source_assignment_id": r.source_assignment_id,
                "state": r.state.value,
                "proposed_url": r.proposed_url,
                "created_utc": _format_ts(r.created_utc),
                "closed_utc": _format_ts(r.closed_utc),
                "log": [
                    {
                        "timestamp_utc": _format_ts(e.timestamp_utc),
                        "action": e.action.value,
                        "description": e.description,
                        "actor_id": e.actor_id,
                    }
                    for e in r.log
                ],
            }
            for r in reports.values()
        ],
        "counters": dict(counters),
    }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(ts: Optional[datetime]) -> Optional[str]:
    return ts.strftime(_TS_FORMAT) if ts else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)
